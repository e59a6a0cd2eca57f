"""In-memory workflow repository.

Satisfies the WorkflowRepository protocol without a database. Used when no
database_url is configured (local development) and by the test suite.

The conditional state update is serialized with an asyncio.Lock held only
for the compare-and-set itself, reproducing the row-level atomicity the
PostgreSQL repository gets from its conditional UPDATE.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

from src.workflow_engine.state.models import Workflow, WorkflowState


class InMemoryWorkflowRepository:
    """Process-local workflow store."""

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._lock = asyncio.Lock()

    async def save(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    async def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        workflow = self._workflows.get(workflow_id)
        return workflow.state if workflow is not None else None

    async def compare_and_set_state(
        self,
        workflow_id: str,
        expected_state: WorkflowState,
        new_state: WorkflowState,
    ) -> Optional[WorkflowState]:
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None or workflow.state != expected_state:
                return None
            self._workflows[workflow_id] = workflow.model_copy(
                update={
                    "state": new_state,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            return new_state

    async def list_by_state(
        self,
        state: WorkflowState,
        organization_id: Optional[str] = None,
    ) -> List[Workflow]:
        return [
            workflow
            for workflow in self._workflows.values()
            if workflow.state == state
            and (organization_id is None or workflow.organization_id == organization_id)
        ]

    async def health_check(self) -> bool:
        return True

    def clear(self) -> None:
        """Remove all workflows."""
        self._workflows.clear()
