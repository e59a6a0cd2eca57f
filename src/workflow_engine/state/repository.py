"""PostgreSQL repository for workflow state persistence.

This module implements the WorkflowRepository protocol using asyncpg for
async PostgreSQL access. It provides:
- Connection pooling for production use
- Point reads of a workflow and of its state alone
- A conditional state update that only lands when the expected current
  state still matches (the single serialization point for transitions)

No lock is ever held across the engine's read-decide-write sequence. The
conditional UPDATE ... WHERE state = $expected RETURNING state is atomic per
row, so whichever caller's write lands first wins and every other caller
sees zero affected rows.

Source:
- migrations/001_workflow_state.sql (schema definition)
- src/workflow_engine/state/engine.py (WorkflowRepository protocol)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from src.workflow_engine.state.models import Workflow, WorkflowState


logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """The workflow or audit store failed or timed out.

    Always fatal to the current call: neither the engine nor the HTTP layer
    retries it, and it is never turned into a TransitionResult.
    ``original_error`` keeps the asyncpg (or timeout) exception.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decode_payload(raw: Any) -> Dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, str):
        return json.loads(raw)
    return dict(raw)


class PostgresWorkflowRepository:
    """Workflow store on the content_workflows table.

    compare_and_set_state() is the one write that changes a workflow's
    state; save() only inserts new rows. command_timeout bounds every
    statement, and an expired statement surfaces as DatabaseError.

    Example:
        >>> async with PostgresWorkflowRepository(url, command_timeout=5) as repo:
        ...     await repo.compare_and_set_state(
        ...         workflow_id, WorkflowState.STEP_1_ICP,
        ...         WorkflowState.STEP_2_COMPETITORS,
        ...     )
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        command_timeout: Optional[float] = None,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DatabaseError("Workflow store is not connected")
        return self._pool

    async def connect(self) -> None:
        """Open the pool; a second call is a logged no-op.

        Raises:
            DatabaseError: If the pool cannot be created.
        """
        if self._pool is not None:
            logger.warning("Workflow store pool already open")
            return

        logger.info(
            "Opening workflow store pool",
            extra={
                "min_pool_size": self.min_pool_size,
                "max_pool_size": self.max_pool_size,
                "command_timeout": self.command_timeout,
            },
        )
        try:
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
        except Exception as e:
            logger.error(
                "Could not open workflow store pool",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Could not open workflow store pool: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("Workflow store pool closed")

    async def __aenter__(self) -> "PostgresWorkflowRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    def _row_to_workflow(self, row: Any) -> Workflow:
        return Workflow(
            id=str(row["id"]),
            state=WorkflowState(row["state"]),
            organization_id=str(row["organization_id"]),
            created_by=row["created_by"],
            payload=_decode_payload(row["payload"]),
            created_at=_as_utc(row["created_at"]),
            updated_at=_as_utc(row["updated_at"]),
        )

    async def save(self, workflow: Workflow) -> None:
        """Insert a new workflow.

        Only used by the creation flow; state changes go through
        compare_and_set_state().

        Raises:
            DatabaseError: If the workflow already exists or the insert fails.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO content_workflows (
                        id,
                        state,
                        organization_id,
                        created_by,
                        payload,
                        created_at,
                        updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    workflow.id,
                    workflow.state.value,
                    workflow.organization_id,
                    workflow.created_by,
                    json.dumps(workflow.payload),
                    workflow.created_at,
                    workflow.updated_at,
                )

            logger.info(
                "Saved workflow",
                extra={
                    "workflow_id": workflow.id,
                    "state": workflow.state.value,
                },
            )

        except DatabaseError:
            raise
        except asyncpg.UniqueViolationError as e:
            logger.error(
                "Workflow already exists",
                extra={"workflow_id": workflow.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Workflow already exists: {workflow.id}",
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(
                "Failed to save workflow",
                extra={"workflow_id": workflow.id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save workflow: {e}",
                original_error=e,
            ) from e

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get a workflow by ID.

        Returns:
            The workflow if found, None otherwise.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT
                        id,
                        state,
                        organization_id,
                        created_by,
                        payload,
                        created_at,
                        updated_at
                    FROM content_workflows
                    WHERE id = $1
                    """,
                    workflow_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get workflow",
                extra={"workflow_id": workflow_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get workflow: {e}",
                original_error=e,
            ) from e

        if row is None:
            return None
        return self._row_to_workflow(row)

    async def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        """Read only the current state of a workflow.

        Returns:
            The current state, or None if the workflow does not exist.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                raw_state = await conn.fetchval(
                    "SELECT state FROM content_workflows WHERE id = $1",
                    workflow_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to read workflow state",
                extra={"workflow_id": workflow_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to read workflow state: {e}",
                original_error=e,
            ) from e

        if raw_state is None:
            return None
        return WorkflowState(raw_state)

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected_state: WorkflowState,
        new_state: WorkflowState,
    ) -> Optional[WorkflowState]:
        """Conditionally move a workflow from expected_state to new_state.

        The update only matches the row when its state is still
        expected_state. State and updated_at change together or not at all.

        Returns:
            The persisted state after the write, or None when no row matched
            (the workflow moved on or no longer exists).

        Raises:
            DatabaseError: If the update fails for any other reason.
        """
        try:
            async with self.pool.acquire() as conn:
                raw_state = await conn.fetchval(
                    """
                    UPDATE content_workflows
                    SET
                        state = $3,
                        updated_at = $4
                    WHERE id = $1 AND state = $2
                    RETURNING state
                    """,
                    workflow_id,
                    expected_state.value,
                    new_state.value,
                    datetime.now(timezone.utc),
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to update workflow state",
                extra={"workflow_id": workflow_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update workflow state: {e}",
                original_error=e,
            ) from e

        if raw_state is None:
            logger.warning(
                "Conditional state update matched no rows",
                extra={
                    "workflow_id": workflow_id,
                    "expected_state": expected_state.value,
                    "new_state": new_state.value,
                },
            )
            return None
        return WorkflowState(raw_state)

    async def list_by_state(
        self,
        state: WorkflowState,
        organization_id: Optional[str] = None,
    ) -> List[Workflow]:
        """List workflows currently in a given state.

        Args:
            state: The state to filter by.
            organization_id: Optionally restrict to one organization.

        Raises:
            DatabaseError: If the query fails.
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT
                        id,
                        state,
                        organization_id,
                        created_by,
                        payload,
                        created_at,
                        updated_at
                    FROM content_workflows
                    WHERE state = $1
                      AND ($2::text IS NULL OR organization_id = $2)
                    ORDER BY created_at ASC
                    """,
                    state.value,
                    organization_id,
                )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to list workflows by state",
                extra={"state": state.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list workflows by state: {e}",
                original_error=e,
            ) from e

        logger.debug(
            "Listed workflows by state",
            extra={"state": state.value, "count": len(rows)},
        )
        return [self._row_to_workflow(row) for row in rows]

    async def health_check(self) -> bool:
        """Check if the database connection is healthy.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False
