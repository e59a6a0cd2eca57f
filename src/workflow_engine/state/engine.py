"""Workflow transition engine.

This module implements the WorkflowEngine, the sole mutation entry point
for workflow state. Stage workers and the human-approval flow call
transition() and nothing else to change a workflow's state.

The engine uses optimistic concurrency and never holds a lock across its
read-decide-write sequence:

1. Read the current state.
2. Decide the next state from the registry (or the rollback target).
3. Conditionally write it, only if the state is still the one read.
4. On a miss, re-read and report what actually happened.

Expected non-success outcomes (illegal event, lost race, idempotent no-op)
are returned as TransitionResult values. Only caller input errors and
infrastructure failures are raised. Retry policy belongs to the caller.

The engine depends on a WorkflowRepository for persistence
(repository.py, memory.py) and, optionally, on an AuditRecorder
(audit/recorder.py) whose failures are logged and swallowed.
"""

import asyncio
import functools
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

from src.workflow_engine.metrics import (
    OUTCOME_APPLIED,
    OUTCOME_CONFLICT,
    OUTCOME_NOOP,
    OUTCOME_REJECTED,
    WorkflowMetrics,
)
from src.workflow_engine.state.models import (
    INITIAL_STATE,
    TransitionOptions,
    TransitionRecord,
    TransitionResult,
    Workflow,
    WorkflowEvent,
    WorkflowState,
)
from src.workflow_engine.state.registry import (
    is_resettable_state,
    is_terminal_state,
    next_state,
    stage_index,
)

if TYPE_CHECKING:
    from src.workflow_engine.audit.recorder import AuditRecorder


logger = logging.getLogger(__name__)


class WorkflowEngineError(Exception):
    """Base class for errors raised by the workflow engine."""


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when the requested workflow does not exist.

    Attributes:
        workflow_id: The workflow ID that was not found.
    """

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class InvalidRollbackTargetError(WorkflowEngineError):
    """Raised when HUMAN_RESET names a missing or non-resettable target.

    Attributes:
        workflow_id: The workflow the rollback was requested for.
        target: The requested target, possibly None.
    """

    def __init__(self, workflow_id: str, target: Optional[Any]):
        self.workflow_id = workflow_id
        self.target = target
        if target is None:
            message = f"HUMAN_RESET for workflow {workflow_id} requires a rollback target"
        else:
            value = target.value if isinstance(target, WorkflowState) else target
            message = f"Invalid rollback target for workflow {workflow_id}: {value}"
        super().__init__(message)


class WorkflowVanishedError(WorkflowEngineError):
    """Raised when a workflow disappears between the write and the re-read.

    The engine cannot tell the caller what the current state is, so it
    fails loudly instead of reporting an ambiguous result.

    Attributes:
        workflow_id: The workflow that vanished.
        expected_state: The state the engine read before writing.
    """

    def __init__(self, workflow_id: str, expected_state: WorkflowState):
        self.workflow_id = workflow_id
        self.expected_state = expected_state
        super().__init__(
            f"Workflow {workflow_id} vanished during transition from "
            f"{expected_state.value}"
        )


@runtime_checkable
class WorkflowRepository(Protocol):
    """Protocol defining the persistence interface used by the engine.

    The PostgreSQL implementation is in repository.py and the in-memory one
    in memory.py. compare_and_set_state() must be atomic per workflow.
    """

    async def save(self, workflow: Workflow) -> None:
        """Insert a new workflow."""
        ...

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get a workflow by ID, or None."""
        ...

    async def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        """Read a workflow's current state, or None if it does not exist."""
        ...

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected_state: WorkflowState,
        new_state: WorkflowState,
    ) -> Optional[WorkflowState]:
        """Write new_state only if the current state is expected_state.

        Returns:
            The persisted state after the write, or None if nothing matched.
        """
        ...

    async def list_by_state(
        self,
        state: WorkflowState,
        organization_id: Optional[str] = None,
    ) -> List[Workflow]:
        """List workflows currently in a state."""
        ...


class WorkflowEngine:
    """Optimistic-concurrency state machine for content workflows.

    Any number of callers may invoke transition() concurrently for the same
    or different workflows. For one workflow, the repository's conditional
    write is the only serialization point: exactly one racing caller's write
    lands, and every loser is told the state the winner produced.

    Attributes:
        repository: The workflow repository.
        audit_recorder: Optional best-effort audit sink.
        metrics: Optional Prometheus metrics.
        audit_timeout_seconds: Upper bound on how long a committed
            transition waits for its audit write.

    Example:
        >>> engine = WorkflowEngine(InMemoryWorkflowRepository())
        >>> workflow = await engine.create("org-1", created_by="user-1")
        >>> result = await engine.transition(
        ...     workflow.id, WorkflowEvent.ICP_COMPLETED
        ... )
        >>> result.applied
        True
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        audit_recorder: Optional["AuditRecorder"] = None,
        metrics: Optional[WorkflowMetrics] = None,
        audit_timeout_seconds: Optional[float] = None,
    ):
        self.repository = repository
        self.audit_recorder = audit_recorder
        self.metrics = metrics
        self.audit_timeout_seconds = audit_timeout_seconds
        # Audit writes that may outlive a cancelled caller
        self._audit_tasks: Set["asyncio.Future[Any]"] = set()

    async def create(
        self,
        organization_id: str,
        created_by: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> Workflow:
        """Create a workflow in the first stage.

        Args:
            organization_id: Owning organization.
            created_by: Creating user, if any.
            payload: Initial opaque stage data.
            workflow_id: Explicit ID; a UUID4 is generated when omitted.

        Raises:
            ValueError: If organization_id is empty.
            DatabaseError: If persistence fails.
        """
        if not organization_id:
            raise ValueError("organization_id cannot be empty")

        now = datetime.now(timezone.utc)
        workflow = Workflow(
            id=workflow_id or str(uuid.uuid4()),
            state=INITIAL_STATE,
            organization_id=organization_id,
            created_by=created_by,
            payload=payload or {},
            created_at=now,
            updated_at=now,
        )

        logger.info(
            "Creating workflow",
            extra={
                "workflow_id": workflow.id,
                "organization_id": organization_id,
                "state": workflow.state.value,
            },
        )

        await self.repository.save(workflow)
        return workflow

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get a workflow by ID, or None."""
        return await self.repository.get(workflow_id)

    async def get_current_state(self, workflow_id: str) -> WorkflowState:
        """Read the current state of a workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        state = await self.repository.get_state(workflow_id)
        if state is None:
            raise WorkflowNotFoundError(workflow_id)
        return state

    async def list_by_state(
        self,
        state: WorkflowState,
        organization_id: Optional[str] = None,
    ) -> List[Workflow]:
        """List workflows in a state, optionally for one organization."""
        return await self.repository.list_by_state(state, organization_id)

    async def history(self, workflow_id: str) -> List[TransitionRecord]:
        """Return the audit trail for a workflow, oldest first.

        Returns an empty list when no readable audit recorder is configured.
        """
        if self.audit_recorder is None or not self.audit_recorder.readable:
            return []
        return await self.audit_recorder.list_for_workflow(workflow_id)

    async def transition(
        self,
        workflow_id: str,
        event: WorkflowEvent,
        options: Optional[TransitionOptions] = None,
    ) -> TransitionResult:
        """Apply an event to a workflow.

        Args:
            workflow_id: The workflow to transition.
            event: The event to apply.
            options: rollback_target (required for HUMAN_RESET) and
                     triggered_by (None for automated events).

        Returns:
            The outcome. ``ok`` is False when the event is not legal from
            the current state or when another caller won a race; in the
            latter case next_state is the state the winner produced.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            InvalidRollbackTargetError: If HUMAN_RESET has no target or a
                target outside RESETTABLE_STATES.
            WorkflowVanishedError: If the workflow disappears between the
                conditional write and the re-read.
            DatabaseError: If the store fails or times out.

        Cancellation of the caller propagates as usual. If it arrives while
        the audit write for an applied transition is pending, the new state
        is already committed and the audit write still completes; a
        cancelled caller must re-read the state.
        """
        options = options or TransitionOptions()
        started = time.perf_counter()

        read_state = await self.repository.get_state(workflow_id)
        if read_state is None:
            raise WorkflowNotFoundError(workflow_id)

        target = self._decide(workflow_id, read_state, event, options)

        if target is None:
            logger.warning(
                "Transition not allowed from current state",
                extra={
                    "workflow_id": workflow_id,
                    "event": event.value,
                    "from_state": read_state.value,
                },
            )
            self._observe(event, OUTCOME_REJECTED, started)
            return TransitionResult.rejected(read_state)

        if target == read_state:
            logger.info(
                "Transition is a no-op",
                extra={
                    "workflow_id": workflow_id,
                    "event": event.value,
                    "from_state": read_state.value,
                },
            )
            self._observe(event, OUTCOME_NOOP, started)
            return TransitionResult(
                ok=True,
                previous_state=read_state,
                next_state=read_state,
                applied=False,
            )

        persisted = await self.repository.compare_and_set_state(
            workflow_id, read_state, target
        )

        if persisted is not None:
            logger.info(
                "Workflow transition applied",
                extra={
                    "workflow_id": workflow_id,
                    "event": event.value,
                    "from_state": read_state.value,
                    "to_state": target.value,
                    "triggered_by": options.triggered_by,
                },
            )
            await self._record(
                TransitionRecord(
                    workflow_id=workflow_id,
                    previous_state=read_state,
                    event=event,
                    next_state=target,
                    triggered_by=options.triggered_by,
                )
            )
            self._observe(event, OUTCOME_APPLIED, started)
            return TransitionResult(
                ok=True,
                previous_state=read_state,
                next_state=target,
                applied=True,
            )

        # Zero rows matched: find out what the store holds now
        latest = await self.repository.get_state(workflow_id)
        if latest is None:
            logger.error(
                "Workflow vanished during transition",
                extra={
                    "workflow_id": workflow_id,
                    "event": event.value,
                    "from_state": read_state.value,
                },
            )
            raise WorkflowVanishedError(workflow_id, read_state)

        logger.warning(
            "Conditional write lost; reporting current state",
            extra={
                "workflow_id": workflow_id,
                "event": event.value,
                "from_state": read_state.value,
                "to_state": latest.value,
            },
        )
        self._observe(event, OUTCOME_CONFLICT, started)
        return TransitionResult.rejected(read_state, latest)

    def _decide(
        self,
        workflow_id: str,
        current: WorkflowState,
        event: WorkflowEvent,
        options: TransitionOptions,
    ) -> Optional[WorkflowState]:
        """Compute the target state, or None when the event is not legal."""
        if is_terminal_state(current):
            return None

        if event != WorkflowEvent.HUMAN_RESET:
            return next_state(current, event)

        target = options.rollback_target
        if target is None or not is_resettable_state(target):
            raise InvalidRollbackTargetError(workflow_id, target)

        # A reset may only rewind
        if stage_index(target) > stage_index(current):
            return None
        return target

    async def _record(self, record: TransitionRecord) -> None:
        """Write an audit record without letting it affect the transition.

        The write runs as a shielded task: cancelling the caller after the
        state has been committed does not abort it. Failures and timeouts
        are logged and counted by _audit_finished, never raised here.
        """
        if self.audit_recorder is None:
            return

        write = self.audit_recorder.record(record)
        if self.audit_timeout_seconds is not None:
            write = asyncio.wait_for(write, timeout=self.audit_timeout_seconds)
        task = asyncio.ensure_future(write)
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)
        task.add_done_callback(functools.partial(self._audit_finished, record))

        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.done():
                logger.warning(
                    "Caller cancelled after commit; audit write continues",
                    extra={
                        "workflow_id": record.workflow_id,
                        "event": record.event.value,
                    },
                )
            raise
        except Exception:
            # Reported by _audit_finished
            return

    def _audit_finished(
        self, record: TransitionRecord, task: "asyncio.Future[Any]"
    ) -> None:
        if task.cancelled():
            error: BaseException = asyncio.CancelledError()
        else:
            error = task.exception()
            if error is None:
                return
        logger.error(
            "Failed to record workflow transition",
            extra={
                "workflow_id": record.workflow_id,
                "event": record.event.value,
                "error": str(error) or type(error).__name__,
            },
        )
        if self.metrics is not None:
            self.metrics.record_audit_failure()

    def _observe(self, event: WorkflowEvent, outcome: str, started: float) -> None:
        if self.metrics is not None:
            self.metrics.record_transition(
                event.value, outcome, time.perf_counter() - started
            )
