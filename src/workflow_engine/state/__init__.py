"""Workflow state machine and persistence.

This package manages content workflows through their pipeline stages:
- step_1_icp → step_2_competitors → step_3_seeds → step_4_longtails
- → step_5_filtering → step_6_clustering → step_7_validation
- → step_8_subtopics → step_9_articles → completed

State is persisted to PostgreSQL and changed only through a conditional
(optimistic) write, so concurrent workers can never both advance the same
workflow.
"""

from src.workflow_engine.state.models import (
    INITIAL_STATE,
    RESETTABLE_STATES,
    STAGE_SEQUENCE,
    TERMINAL_STATE,
    TRANSITIONS,
    TransitionOptions,
    TransitionRecord,
    TransitionResult,
    Workflow,
    WorkflowEvent,
    WorkflowState,
)
from src.workflow_engine.state.registry import (
    allowed_events,
    can_transition,
    is_resettable_state,
    is_terminal_state,
    is_valid_state,
    next_state,
    stage_index,
)
from src.workflow_engine.state.engine import (
    InvalidRollbackTargetError,
    WorkflowEngine,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowRepository,
    WorkflowVanishedError,
)
from src.workflow_engine.state.repository import (
    DatabaseError,
    PostgresWorkflowRepository,
)
from src.workflow_engine.state.memory import InMemoryWorkflowRepository

__all__ = [
    # Models
    "INITIAL_STATE",
    "RESETTABLE_STATES",
    "STAGE_SEQUENCE",
    "TERMINAL_STATE",
    "TRANSITIONS",
    "TransitionOptions",
    "TransitionRecord",
    "TransitionResult",
    "Workflow",
    "WorkflowEvent",
    "WorkflowState",
    # Registry
    "allowed_events",
    "can_transition",
    "is_resettable_state",
    "is_terminal_state",
    "is_valid_state",
    "next_state",
    "stage_index",
    # Engine
    "InvalidRollbackTargetError",
    "WorkflowEngine",
    "WorkflowEngineError",
    "WorkflowNotFoundError",
    "WorkflowRepository",
    "WorkflowVanishedError",
    # Repositories
    "DatabaseError",
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
]
