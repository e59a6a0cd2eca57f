"""Shared helpers for workflow engine tests."""

import asyncio
from typing import Optional

from src.workflow_engine.state import (
    INITIAL_STATE,
    TRANSITIONS,
    InMemoryWorkflowRepository,
    Workflow,
    WorkflowEngine,
    WorkflowState,
)


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


async def setup_workflow_at_state(
    engine: WorkflowEngine,
    target_state: WorkflowState,
    organization_id: str = "org-1",
    workflow_id: Optional[str] = None,
) -> Workflow:
    """Create a workflow and advance it through the pipeline to target_state.

    Uses each stage's completion event, so it works against any repository.
    """
    workflow = await engine.create(organization_id, workflow_id=workflow_id)
    state = INITIAL_STATE
    while state != target_state:
        ((event, following),) = TRANSITIONS[state].items()
        result = await engine.transition(workflow.id, event)
        assert result.applied and result.next_state == following
        state = following
    return workflow


class InterleavingRepository:
    """Repository wrapper that lines up concurrent readers.

    The first ``readers`` calls to get_state() each block until all of them
    have read, so every racing engine call decides from the same state
    before any of them writes. Later reads pass straight through.
    """

    def __init__(self, inner: InMemoryWorkflowRepository, readers: int = 2):
        self._inner = inner
        self._readers = readers
        self._arrived = 0
        self._all_read = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        state = await self._inner.get_state(workflow_id)
        if self._arrived < self._readers:
            self._arrived += 1
            if self._arrived == self._readers:
                self._all_read.set()
            await self._all_read.wait()
        return state


class StaleWriteRepository(InMemoryWorkflowRepository):
    """Repository whose conditional write never matches.

    Models a write that affected zero rows although the state did not move.
    """

    def __init__(self) -> None:
        super().__init__()
        self.write_attempts = 0

    async def compare_and_set_state(self, workflow_id, expected_state, new_state):
        self.write_attempts += 1
        return None


class VanishingRepository(InMemoryWorkflowRepository):
    """Repository that deletes the workflow instead of updating it."""

    async def compare_and_set_state(self, workflow_id, expected_state, new_state):
        self._workflows.pop(workflow_id, None)
        return None
