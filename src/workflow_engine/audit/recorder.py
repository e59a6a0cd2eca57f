"""Audit recorder implementations for the workflow transition trail.

This module defines the AuditRecorder interface and its sinks:

- PostgresAuditRecorder: Append-only inserts into workflow_transitions
- InMemoryAuditRecorder: List-backed trail for local development and tests
- LoggingAuditRecorder: Writes each record as a structured log entry
- CompositeAuditRecorder: Fans records out to several sinks
- NullAuditRecorder: Discards records

Audit writes are best-effort. The engine records only after a transition
has been committed, and a failing recorder never fails, retries or undoes
that transition. The audit store lives in its own failure domain and needs
no coordination with the workflow row.

Source:
- migrations/001_workflow_state.sql (workflow_transitions table)
- src/workflow_engine/state/models.py (TransitionRecord)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

import asyncpg

from src.workflow_engine.state.models import (
    TransitionRecord,
    WorkflowEvent,
    WorkflowState,
)
from src.workflow_engine.state.repository import DatabaseError


logger = logging.getLogger(__name__)


class AuditSinkType(str, Enum):
    """Audit sinks that can be enabled through configuration.

    Attributes:
        DATABASE: Append records to the workflow_transitions table.
        LOGGING: Emit records as structured log entries.
        MEMORY: Keep records in process memory (development only).
    """

    DATABASE = "database"
    LOGGING = "logging"
    MEMORY = "memory"


class AuditRecordError(Exception):
    """Raised when one or more sinks of a composite recorder failed.

    Attributes:
        workflow_id: The workflow whose record was being written.
        failures: (recorder type name, exception) per failed sink.
    """

    def __init__(self, workflow_id: str, failures: List[Tuple[str, Exception]]):
        self.workflow_id = workflow_id
        self.failures = failures
        details = ", ".join(f"{name}: {error}" for name, error in failures)
        super().__init__(
            f"Failed to record transition for {workflow_id} to "
            f"{len(failures)} sink(s): {details}"
        )


class AuditRecorder(ABC):
    """Abstract base class for audit recorders.

    Implementations should be:
    - Append-only: records are never updated or deleted
    - Async-safe: record() is called from concurrent engine calls
    - Honest: record() raises on failure; the engine decides to swallow it

    Recorders that can serve the read path set ``readable`` and override
    list_for_workflow().
    """

    readable: bool = False

    @abstractmethod
    async def record(self, record: TransitionRecord) -> None:
        """Append a transition record.

        Args:
            record: The committed transition to record.
        """
        pass

    async def list_for_workflow(self, workflow_id: str) -> List[TransitionRecord]:
        """Return the audit trail for a workflow, oldest first.

        Recorders that cannot read back their records return an empty list.
        """
        return []

    async def connect(self) -> None:
        """Acquire resources needed before the first record."""
        pass

    async def close(self) -> None:
        """Release resources held by the recorder."""
        pass


class PostgresAuditRecorder(AuditRecorder):
    """PostgreSQL audit recorder backed by the workflow_transitions table.

    The recorder owns its own connection pool so that an unavailable audit
    database cannot starve the workflow repository of connections.

    Example:
        >>> async with PostgresAuditRecorder("postgresql://...") as recorder:
        ...     await recorder.record(record)
    """

    readable = True

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
        command_timeout: Optional[float] = None,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected."""
        if self._pool is None:
            raise DatabaseError("Audit store is not connected")
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Audit connection pool already initialized")
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            logger.info("Audit PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect audit recorder to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect audit recorder to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Audit PostgreSQL connection pool closed")

    async def __aenter__(self) -> "PostgresAuditRecorder":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def record(self, record: TransitionRecord) -> None:
        """Insert the record into workflow_transitions.

        Raises:
            DatabaseError: If the insert fails.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO workflow_transitions (
                        workflow_id,
                        previous_state,
                        event,
                        next_state,
                        triggered_by,
                        created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    record.workflow_id,
                    record.previous_state.value,
                    record.event.value,
                    record.next_state.value,
                    record.triggered_by,
                    record.timestamp,
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(
                f"Failed to record workflow transition: {e}",
                original_error=e,
            ) from e

    async def list_for_workflow(self, workflow_id: str) -> List[TransitionRecord]:
        """Fetch the audit trail for a workflow ordered by commit time.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT
                        workflow_id,
                        previous_state,
                        event,
                        next_state,
                        triggered_by,
                        created_at
                    FROM workflow_transitions
                    WHERE workflow_id = $1
                    ORDER BY created_at ASC, id ASC
                    """,
                    workflow_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read workflow audit trail",
                extra={"workflow_id": workflow_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to read workflow audit trail: {e}",
                original_error=e,
            ) from e

        records = []
        for row in rows:
            timestamp = row["created_at"]
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            records.append(
                TransitionRecord(
                    workflow_id=str(row["workflow_id"]),
                    previous_state=WorkflowState(row["previous_state"]),
                    event=WorkflowEvent(row["event"]),
                    next_state=WorkflowState(row["next_state"]),
                    triggered_by=row["triggered_by"],
                    timestamp=timestamp,
                )
            )
        return records


class InMemoryAuditRecorder(AuditRecorder):
    """Audit recorder that keeps records in a process-local list."""

    readable = True

    def __init__(self) -> None:
        self._records: List[TransitionRecord] = []

    @property
    def records(self) -> List[TransitionRecord]:
        """All recorded transitions (copy)."""
        return list(self._records)

    async def record(self, record: TransitionRecord) -> None:
        self._records.append(record)

    async def list_for_workflow(self, workflow_id: str) -> List[TransitionRecord]:
        return [r for r in self._records if r.workflow_id == workflow_id]


class LoggingAuditRecorder(AuditRecorder):
    """Audit recorder that writes records as structured log entries.

    Suitable for log aggregation systems; every field of the record is
    attached to the log entry as extra context.

    Example:
        >>> recorder = LoggingAuditRecorder()
        >>> await recorder.record(record)
        # Logs: INFO - Workflow transition: step_1_icp -> step_2_competitors for wf-1
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def record(self, record: TransitionRecord) -> None:
        self._logger.info(
            "Workflow transition: %s -> %s for %s",
            record.previous_state.value,
            record.next_state.value,
            record.workflow_id,
            extra=record.to_log_dict(),
        )


class CompositeAuditRecorder(AuditRecorder):
    """Audit recorder that delegates to multiple child recorders.

    Children record concurrently and independently: a failure in one sink
    does not prevent the others from recording, and is re-raised as an
    AuditRecordError once every child has finished. Reads are served by the
    first readable child.
    """

    def __init__(self, recorders: Optional[List[AuditRecorder]] = None):
        self._recorders: List[AuditRecorder] = recorders or []

    @property
    def recorders(self) -> List[AuditRecorder]:
        """Child recorders (read-only copy)."""
        return list(self._recorders)

    @property
    def readable(self) -> bool:  # type: ignore[override]
        return any(r.readable for r in self._recorders)

    def add_recorder(self, recorder: AuditRecorder) -> None:
        self._recorders.append(recorder)

    async def record(self, record: TransitionRecord) -> None:
        """Record to every child concurrently.

        Every child runs to completion before any failure is reported, so a
        failing or hanging sink never keeps a record out of the others.

        Raises:
            AuditRecordError: If one or more children failed.
        """
        outcomes = await asyncio.gather(
            *(recorder.record(record) for recorder in self._recorders),
            return_exceptions=True,
        )

        failures = []
        for recorder, outcome in zip(self._recorders, outcomes):
            if not isinstance(outcome, Exception):
                continue
            logger.warning(
                "Failed to record transition to %s: %s",
                type(recorder).__name__,
                str(outcome),
                extra={
                    "recorder_type": type(recorder).__name__,
                    "workflow_id": record.workflow_id,
                    "error": str(outcome),
                },
            )
            failures.append((type(recorder).__name__, outcome))

        if failures:
            raise AuditRecordError(record.workflow_id, failures)

    async def list_for_workflow(self, workflow_id: str) -> List[TransitionRecord]:
        for recorder in self._recorders:
            if recorder.readable:
                return await recorder.list_for_workflow(workflow_id)
        return []

    async def connect(self) -> None:
        for recorder in self._recorders:
            await recorder.connect()

    async def close(self) -> None:
        for recorder in self._recorders:
            try:
                await recorder.close()
            except Exception as e:
                logger.error(
                    "Failed to close audit recorder %s: %s",
                    type(recorder).__name__,
                    str(e),
                )


class NullAuditRecorder(AuditRecorder):
    """Audit recorder that discards all records."""

    async def record(self, record: TransitionRecord) -> None:
        pass


def create_audit_recorder(
    sink_types: Optional[List[AuditSinkType]] = None,
    database_url: Optional[str] = None,
    command_timeout: Optional[float] = None,
    logger_name: Optional[str] = None,
) -> AuditRecorder:
    """Factory function to create audit recorders based on configuration.

    A single requested sink is returned directly; several are wrapped in a
    CompositeAuditRecorder. DATABASE is skipped with a warning when no
    database_url is configured.

    Args:
        sink_types: Sinks to enable. If None or empty, returns a
                    LoggingAuditRecorder.
        database_url: PostgreSQL connection string for the DATABASE sink.
        command_timeout: Per-statement timeout for the DATABASE sink.
        logger_name: Optional logger name for the LOGGING sink.

    Returns:
        An AuditRecorder configured for the requested sinks. A
        PostgresAuditRecorder still needs connect() before use.

    Example:
        >>> recorder = create_audit_recorder([AuditSinkType.LOGGING])
        >>> isinstance(recorder, LoggingAuditRecorder)
        True
    """
    if not sink_types:
        return LoggingAuditRecorder(logger_name=logger_name)

    recorders: List[AuditRecorder] = []

    for sink_type in sink_types:
        if sink_type == AuditSinkType.DATABASE:
            if not database_url:
                logger.warning(
                    "Database audit sink requested without database_url, skipping"
                )
                continue
            recorders.append(
                PostgresAuditRecorder(database_url, command_timeout=command_timeout)
            )
        elif sink_type == AuditSinkType.LOGGING:
            recorders.append(LoggingAuditRecorder(logger_name=logger_name))
        elif sink_type == AuditSinkType.MEMORY:
            recorders.append(InMemoryAuditRecorder())
        else:
            logger.warning("Unknown audit sink type: %s, skipping", sink_type)

    if not recorders:
        return LoggingAuditRecorder(logger_name=logger_name)

    if len(recorders) == 1:
        return recorders[0]

    return CompositeAuditRecorder(recorders)
