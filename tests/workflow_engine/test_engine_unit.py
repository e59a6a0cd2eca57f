"""Unit tests for the WorkflowEngine.

Covers the fatal paths (missing workflow, invalid rollback target, vanished
row), reconciliation after a stale write, best-effort auditing and the
metrics reported for each outcome.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry

from src.workflow_engine.audit import (
    AuditSinkType,
    CompositeAuditRecorder,
    InMemoryAuditRecorder,
    NullAuditRecorder,
    create_audit_recorder,
)
from src.workflow_engine.metrics import WorkflowMetrics
from src.workflow_engine.state import (
    DatabaseError,
    InMemoryWorkflowRepository,
    InvalidRollbackTargetError,
    TransitionOptions,
    TransitionResult,
    WorkflowEngine,
    WorkflowEvent,
    WorkflowNotFoundError,
    WorkflowState,
    WorkflowVanishedError,
)
from tests.workflow_engine.helpers import (
    StaleWriteRepository,
    VanishingRepository,
    run_async,
    setup_workflow_at_state,
)


def _sample(registry: CollectorRegistry, name: str, **labels) -> float:
    value = registry.get_sample_value(name, labels or None)
    return value or 0.0


class SlowAuditRecorder(InMemoryAuditRecorder):
    async def record(self, record):
        await asyncio.sleep(10)


# ---------------------------------------------------------------------------
# Creation and reads
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_starts_at_first_stage(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await engine.create(
                "org-1", created_by="user-1", payload={"domain": "example.com"}
            )

            assert workflow.state == WorkflowState.STEP_1_ICP
            assert workflow.organization_id == "org-1"
            assert workflow.created_by == "user-1"
            assert workflow.payload == {"domain": "example.com"}
            assert await engine.get(workflow.id) == workflow

        run_async(test())

    def test_create_uses_explicit_id(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await engine.create("org-1", workflow_id="wf-42")
            assert workflow.id == "wf-42"

        run_async(test())

    def test_create_rejects_empty_organization(self):
        engine = WorkflowEngine(InMemoryWorkflowRepository())
        with pytest.raises(ValueError):
            run_async(engine.create(""))

    def test_get_missing_workflow_returns_none(self):
        engine = WorkflowEngine(InMemoryWorkflowRepository())
        assert run_async(engine.get("missing")) is None

    def test_get_current_state_missing_raises(self):
        engine = WorkflowEngine(InMemoryWorkflowRepository())
        with pytest.raises(WorkflowNotFoundError) as exc_info:
            run_async(engine.get_current_state("missing"))
        assert exc_info.value.workflow_id == "missing"

    def test_list_by_state_filters_by_organization(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            a = await engine.create("org-a")
            b = await engine.create("org-b")
            advanced = await setup_workflow_at_state(
                engine, WorkflowState.STEP_3_SEEDS, "org-a"
            )

            at_start = await engine.list_by_state(WorkflowState.STEP_1_ICP)
            assert {w.id for w in at_start} == {a.id, b.id}

            only_a = await engine.list_by_state(WorkflowState.STEP_1_ICP, "org-a")
            assert [w.id for w in only_a] == [a.id]

            seeds = await engine.list_by_state(WorkflowState.STEP_3_SEEDS)
            assert [w.id for w in seeds] == [advanced.id]

        run_async(test())


# ---------------------------------------------------------------------------
# Transition guards
# ---------------------------------------------------------------------------


class TestTransitionGuards:
    def test_missing_workflow_raises(self):
        engine = WorkflowEngine(InMemoryWorkflowRepository())
        with pytest.raises(WorkflowNotFoundError):
            run_async(engine.transition("missing", WorkflowEvent.ICP_COMPLETED))

    def test_reset_without_target_raises(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await setup_workflow_at_state(
                engine, WorkflowState.STEP_5_FILTERING
            )
            with pytest.raises(InvalidRollbackTargetError) as exc_info:
                await engine.transition(workflow.id, WorkflowEvent.HUMAN_RESET)
            assert exc_info.value.target is None
            assert (
                await engine.get_current_state(workflow.id)
                == WorkflowState.STEP_5_FILTERING
            )

        run_async(test())

    @pytest.mark.parametrize(
        "target",
        [
            WorkflowState.STEP_8_SUBTOPICS,
            WorkflowState.STEP_9_ARTICLES,
            WorkflowState.COMPLETED,
        ],
    )
    def test_reset_to_non_resettable_target_raises(self, target):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await setup_workflow_at_state(
                engine, WorkflowState.STEP_9_ARTICLES
            )
            with pytest.raises(InvalidRollbackTargetError) as exc_info:
                await engine.transition(
                    workflow.id,
                    WorkflowEvent.HUMAN_RESET,
                    TransitionOptions(rollback_target=target),
                )
            assert exc_info.value.target == target
            assert (
                await engine.get_current_state(workflow.id)
                == WorkflowState.STEP_9_ARTICLES
            )

        run_async(test())

    def test_reset_from_terminal_state_is_rejected_not_raised(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await setup_workflow_at_state(engine, WorkflowState.COMPLETED)

            result = await engine.transition(
                workflow.id,
                WorkflowEvent.HUMAN_RESET,
                TransitionOptions(rollback_target=WorkflowState.STEP_3_SEEDS),
            )
            assert result == TransitionResult.rejected(WorkflowState.COMPLETED)

            # Terminal check runs before target validation
            result = await engine.transition(
                workflow.id, WorkflowEvent.HUMAN_RESET
            )
            assert result.ok is False

        run_async(test())

    def test_reset_forward_is_rejected(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await setup_workflow_at_state(
                engine, WorkflowState.STEP_2_COMPETITORS
            )
            result = await engine.transition(
                workflow.id,
                WorkflowEvent.HUMAN_RESET,
                TransitionOptions(rollback_target=WorkflowState.STEP_6_CLUSTERING),
            )
            assert result.ok is False
            assert result.next_state == WorkflowState.STEP_2_COMPETITORS

        run_async(test())

    def test_rollback_target_ignored_for_ordinary_events(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await engine.create("org-1")
            result = await engine.transition(
                workflow.id,
                WorkflowEvent.ICP_COMPLETED,
                TransitionOptions(rollback_target=WorkflowState.STEP_1_ICP),
            )
            assert result.applied
            assert result.next_state == WorkflowState.STEP_2_COMPETITORS

        run_async(test())


# ---------------------------------------------------------------------------
# Worked examples
# ---------------------------------------------------------------------------


class TestExamples:
    def test_completion_event_applies_once(self):
        async def test():
            engine = WorkflowEngine(InMemoryWorkflowRepository())
            workflow = await engine.create("org-1")

            first = await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            assert first == TransitionResult(
                ok=True,
                applied=True,
                previous_state=WorkflowState.STEP_1_ICP,
                next_state=WorkflowState.STEP_2_COMPETITORS,
            )

            second = await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            assert second == TransitionResult(
                ok=False,
                applied=False,
                previous_state=WorkflowState.STEP_2_COMPETITORS,
                next_state=WorkflowState.STEP_2_COMPETITORS,
            )

        run_async(test())

    def test_rollback_from_subtopics_to_seeds(self):
        async def test():
            recorder = InMemoryAuditRecorder()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(), audit_recorder=recorder
            )
            workflow = await setup_workflow_at_state(
                engine, WorkflowState.STEP_8_SUBTOPICS
            )
            options = TransitionOptions(
                rollback_target=WorkflowState.STEP_3_SEEDS, triggered_by="reviewer-7"
            )

            first = await engine.transition(
                workflow.id, WorkflowEvent.HUMAN_RESET, options
            )
            assert first.ok and first.applied
            assert first.previous_state == WorkflowState.STEP_8_SUBTOPICS
            assert first.next_state == WorkflowState.STEP_3_SEEDS

            second = await engine.transition(
                workflow.id, WorkflowEvent.HUMAN_RESET, options
            )
            assert second.ok is True
            assert second.applied is False

            last = recorder.records[-1]
            assert last.event == WorkflowEvent.HUMAN_RESET
            assert last.triggered_by == "reviewer-7"
            assert last.previous_state == WorkflowState.STEP_8_SUBTOPICS
            assert last.next_state == WorkflowState.STEP_3_SEEDS

        run_async(test())


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconciliation:
    def test_stale_write_reports_unchanged_state(self):
        async def test():
            repo = StaleWriteRepository()
            recorder = InMemoryAuditRecorder()
            engine = WorkflowEngine(repo, audit_recorder=recorder)
            workflow = await engine.create("org-1")

            result = await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)

            assert result == TransitionResult.rejected(WorkflowState.STEP_1_ICP)
            assert repo.write_attempts == 1
            assert recorder.records == []

        run_async(test())

    def test_vanished_workflow_raises(self):
        async def test():
            engine = WorkflowEngine(VanishingRepository())
            workflow = await engine.create("org-1")

            with pytest.raises(WorkflowVanishedError) as exc_info:
                await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            assert exc_info.value.workflow_id == workflow.id
            assert exc_info.value.expected_state == WorkflowState.STEP_1_ICP

        run_async(test())

    def test_database_errors_propagate(self):
        repo = MagicMock()
        repo.get_state = AsyncMock(side_effect=DatabaseError("connection refused"))
        engine = WorkflowEngine(repo)

        with pytest.raises(DatabaseError):
            run_async(engine.transition("wf-1", WorkflowEvent.ICP_COMPLETED))

    def test_no_write_for_rejected_event(self):
        repo = MagicMock()
        repo.get_state = AsyncMock(return_value=WorkflowState.STEP_4_LONGTAILS)
        repo.compare_and_set_state = AsyncMock()
        engine = WorkflowEngine(repo)

        result = run_async(engine.transition("wf-1", WorkflowEvent.ICP_COMPLETED))

        assert result.ok is False
        repo.compare_and_set_state.assert_not_called()

    def test_no_write_for_noop_reset(self):
        repo = MagicMock()
        repo.get_state = AsyncMock(return_value=WorkflowState.STEP_4_LONGTAILS)
        repo.compare_and_set_state = AsyncMock()
        engine = WorkflowEngine(repo)

        result = run_async(
            engine.transition(
                "wf-1",
                WorkflowEvent.HUMAN_RESET,
                TransitionOptions(rollback_target=WorkflowState.STEP_4_LONGTAILS),
            )
        )

        assert result.ok is True
        assert result.applied is False
        repo.compare_and_set_state.assert_not_called()

    def test_conditional_write_uses_read_state(self):
        repo = MagicMock()
        repo.get_state = AsyncMock(return_value=WorkflowState.STEP_6_CLUSTERING)
        repo.compare_and_set_state = AsyncMock(
            return_value=WorkflowState.STEP_7_VALIDATION
        )
        engine = WorkflowEngine(repo)

        run_async(engine.transition("wf-1", WorkflowEvent.CLUSTERING_COMPLETED))

        repo.compare_and_set_state.assert_awaited_once_with(
            "wf-1",
            WorkflowState.STEP_6_CLUSTERING,
            WorkflowState.STEP_7_VALIDATION,
        )


# ---------------------------------------------------------------------------
# Auditing
# ---------------------------------------------------------------------------


class TestAuditing:
    def test_audit_failure_does_not_fail_transition(self, caplog):
        async def test():
            recorder = NullAuditRecorder()
            recorder.record = AsyncMock(side_effect=DatabaseError("audit down"))
            registry = CollectorRegistry()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                audit_recorder=recorder,
                metrics=WorkflowMetrics(registry=registry),
            )
            workflow = await engine.create("org-1")

            with caplog.at_level(logging.ERROR):
                result = await engine.transition(
                    workflow.id, WorkflowEvent.ICP_COMPLETED
                )

            assert result.applied
            assert (
                await engine.get_current_state(workflow.id)
                == WorkflowState.STEP_2_COMPETITORS
            )
            assert "Failed to record workflow transition" in caplog.text
            assert _sample(registry, "workflow_audit_failures_total") == 1.0

        run_async(test())

    def test_audit_timeout_does_not_fail_transition(self):
        async def test():
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                audit_recorder=SlowAuditRecorder(),
                audit_timeout_seconds=0.01,
            )
            workflow = await engine.create("org-1")

            result = await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            assert result.applied

        run_async(test())

    def test_only_applied_transitions_are_recorded(self):
        async def test():
            recorder = InMemoryAuditRecorder()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(), audit_recorder=recorder
            )
            workflow = await engine.create("org-1")

            await engine.transition(workflow.id, WorkflowEvent.SEEDS_APPROVED)
            await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)

            records = await engine.history(workflow.id)
            assert len(records) == 1
            assert records[0].event == WorkflowEvent.ICP_COMPLETED
            assert records[0].triggered_by is None

        run_async(test())

    def test_history_without_readable_recorder_is_empty(self):
        async def test():
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(), audit_recorder=NullAuditRecorder()
            )
            workflow = await engine.create("org-1")
            await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            assert await engine.history(workflow.id) == []

        run_async(test())

    def test_failing_sink_in_factory_composite_is_counted(self, caplog):
        async def test():
            # The database sink is never connected, so every record fails
            recorder = create_audit_recorder(
                [AuditSinkType.DATABASE, AuditSinkType.LOGGING, AuditSinkType.MEMORY],
                database_url="postgresql://localhost/db",
            )
            assert isinstance(recorder, CompositeAuditRecorder)
            memory = recorder.recorders[2]
            registry = CollectorRegistry()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                audit_recorder=recorder,
                metrics=WorkflowMetrics(registry=registry),
            )
            workflow = await engine.create("org-1")

            with caplog.at_level(logging.ERROR):
                result = await engine.transition(
                    workflow.id, WorkflowEvent.ICP_COMPLETED
                )

            assert result.applied
            assert _sample(registry, "workflow_audit_failures_total") == 1.0
            assert "Failed to record workflow transition" in caplog.text
            assert len(memory.records) == 1

        run_async(test())

    def test_hanging_sink_does_not_block_other_sinks(self):
        async def test():
            memory = InMemoryAuditRecorder()
            registry = CollectorRegistry()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                audit_recorder=CompositeAuditRecorder([SlowAuditRecorder(), memory]),
                metrics=WorkflowMetrics(registry=registry),
                audit_timeout_seconds=0.05,
            )
            workflow = await engine.create("org-1")

            result = await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)

            assert result.applied
            assert len(memory.records) == 1
            assert memory.records[0].workflow_id == workflow.id
            assert _sample(registry, "workflow_audit_failures_total") == 1.0

        run_async(test())

    def test_caller_cancellation_does_not_drop_audit_write(self):
        async def test():
            started = asyncio.Event()
            release = asyncio.Event()
            finished = asyncio.Event()

            class GatedAuditRecorder(InMemoryAuditRecorder):
                async def record(self, record):
                    started.set()
                    await release.wait()
                    await super().record(record)
                    finished.set()

            recorder = GatedAuditRecorder()
            registry = CollectorRegistry()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                audit_recorder=recorder,
                metrics=WorkflowMetrics(registry=registry),
            )
            workflow = await engine.create("org-1")

            call = asyncio.ensure_future(
                engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            )
            await started.wait()
            call.cancel()
            with pytest.raises(asyncio.CancelledError):
                await call

            assert (
                await engine.get_current_state(workflow.id)
                == WorkflowState.STEP_2_COMPETITORS
            )

            release.set()
            await asyncio.wait_for(finished.wait(), timeout=1)

            assert len(recorder.records) == 1
            assert _sample(registry, "workflow_audit_failures_total") == 0.0

        run_async(test())


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    def test_outcomes_are_counted(self):
        async def test():
            registry = CollectorRegistry()
            engine = WorkflowEngine(
                InMemoryWorkflowRepository(),
                metrics=WorkflowMetrics(registry=registry),
            )
            workflow = await engine.create("org-1")

            await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            await engine.transition(workflow.id, WorkflowEvent.ICP_COMPLETED)
            await engine.transition(
                workflow.id,
                WorkflowEvent.HUMAN_RESET,
                TransitionOptions(rollback_target=WorkflowState.STEP_2_COMPETITORS),
            )
            return registry

        registry = run_async(test())

        assert _sample(
            registry,
            "workflow_transitions_total",
            event="ICP_COMPLETED",
            outcome="applied",
        ) == 1.0
        assert _sample(
            registry,
            "workflow_transitions_total",
            event="ICP_COMPLETED",
            outcome="rejected",
        ) == 1.0
        assert _sample(
            registry,
            "workflow_transitions_total",
            event="HUMAN_RESET",
            outcome="noop",
        ) == 1.0
        assert _sample(
            registry,
            "workflow_transition_duration_seconds_count",
            event="ICP_COMPLETED",
        ) == 2.0

    def test_conflict_is_counted(self):
        async def test():
            registry = CollectorRegistry()
            repo = MagicMock()
            repo.get_state = AsyncMock(
                side_effect=[
                    WorkflowState.STEP_1_ICP,
                    WorkflowState.STEP_2_COMPETITORS,
                ]
            )
            repo.compare_and_set_state = AsyncMock(return_value=None)
            engine = WorkflowEngine(repo, metrics=WorkflowMetrics(registry=registry))

            result = await engine.transition("wf-1", WorkflowEvent.ICP_COMPLETED)
            assert result.next_state == WorkflowState.STEP_2_COMPETITORS
            return registry

        registry = run_async(test())
        assert _sample(
            registry,
            "workflow_transitions_total",
            event="ICP_COMPLETED",
            outcome="conflict",
        ) == 1.0
