"""Prometheus metrics for workflow engine observability.

Metrics are exposed at the `/metrics` endpoint in Prometheus format.

Metrics Defined:
- workflow_transitions_total: Counter of transition attempts by event and
  outcome (applied, rejected, conflict, noop)
- workflow_audit_failures_total: Counter of swallowed audit write failures
- workflow_transition_duration_seconds: Histogram of engine call latency

Source:
- src/workflow_engine/state/engine.py (outcome reporting)
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


logger = logging.getLogger(__name__)


# Transition outcomes used as the "outcome" label
OUTCOME_APPLIED = "applied"
OUTCOME_REJECTED = "rejected"
OUTCOME_CONFLICT = "conflict"
OUTCOME_NOOP = "noop"

TRANSITION_OUTCOMES = (
    OUTCOME_APPLIED,
    OUTCOME_REJECTED,
    OUTCOME_CONFLICT,
    OUTCOME_NOOP,
)


# Engine calls are two or three store round-trips; buckets cover 1ms to 10s
DEFAULT_DURATION_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    10.0,
)


class WorkflowMetrics:
    """Container for all workflow engine Prometheus metrics.

    Supports custom registries for testing.

    Metrics:
        transitions_total: Counter of transition attempts.
            Labels: event, outcome
        audit_failures_total: Counter of audit writes that failed and were
            swallowed.
        transition_duration_seconds: Histogram of transition latency.
            Labels: event

    Example:
        >>> metrics = WorkflowMetrics(registry=CollectorRegistry())
        >>> metrics.record_transition("ICP_COMPLETED", OUTCOME_APPLIED, 0.004)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize workflow metrics.

        Args:
            registry: Optional Prometheus registry. If None, uses the
                      default REGISTRY. Pass a custom registry for testing.
        """
        self.registry = registry or REGISTRY

        self.transitions_total = Counter(
            "workflow_transitions_total",
            "Total number of workflow transition attempts",
            labelnames=["event", "outcome"],
            registry=self.registry,
        )

        self.audit_failures_total = Counter(
            "workflow_audit_failures_total",
            "Total number of audit records that could not be written",
            registry=self.registry,
        )

        self.transition_duration_seconds = Histogram(
            "workflow_transition_duration_seconds",
            "Time spent in the transition engine in seconds",
            labelnames=["event"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

    def record_transition(
        self,
        event: str,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Record the outcome of one transition attempt.

        Args:
            event: The event value that was attempted.
            outcome: One of TRANSITION_OUTCOMES.
            duration_seconds: Engine latency for the call, if measured.
        """
        if outcome not in TRANSITION_OUTCOMES:
            logger.warning("Unknown transition outcome: %s", outcome)
            return
        self.transitions_total.labels(event=event, outcome=outcome).inc()
        if duration_seconds is not None:
            self.transition_duration_seconds.labels(event=event).observe(
                duration_seconds
            )

    def record_audit_failure(self) -> None:
        """Record an audit write that failed and was swallowed."""
        self.audit_failures_total.inc()


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get or create the workflow metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    target_registry = registry or REGISTRY
    return generate_latest(target_registry)
