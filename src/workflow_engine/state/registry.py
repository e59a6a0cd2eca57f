"""Transition validator over the static state registry.

Pure, total functions answering "is this event legal from this state?" and
"what events are legal from this state?". None of them raise: unknown or
illegal inputs produce False, None or an empty set, which callers treat as a
normal "no transition" outcome.

The authoritative check is always repeated inside
WorkflowEngine.transition(); these helpers are advisory for UI and
orchestration layers.
"""

from typing import FrozenSet, Optional, Union

from src.workflow_engine.state.models import (
    RESETTABLE_STATES,
    STAGE_SEQUENCE,
    TERMINAL_STATE,
    TRANSITIONS,
    WorkflowEvent,
    WorkflowState,
)


def allowed_events(state: WorkflowState) -> FrozenSet[WorkflowEvent]:
    """Return every event with a registry entry from ``state``.

    HUMAN_RESET is never included because its target is not fixed by the
    registry.

    Example:
        >>> allowed_events(WorkflowState.STEP_1_ICP)
        frozenset({<WorkflowEvent.ICP_COMPLETED: 'ICP_COMPLETED'>})
        >>> allowed_events(WorkflowState.COMPLETED)
        frozenset()
    """
    return frozenset(TRANSITIONS.get(state, {}).keys())


def can_transition(state: WorkflowState, event: WorkflowEvent) -> bool:
    """Check whether the registry defines ``(state, event) -> next state``."""
    return next_state(state, event) is not None


def next_state(
    state: WorkflowState,
    event: WorkflowEvent,
) -> Optional[WorkflowState]:
    """Look up the state ``event`` carries ``state`` to.

    Returns:
        The next state, or None when no transition is defined.
    """
    return TRANSITIONS.get(state, {}).get(event)


def is_valid_state(candidate: Union[WorkflowState, str, None]) -> bool:
    """Check membership in the closed state enumeration.

    Accepts enum members or their raw string values.

    Example:
        >>> is_valid_state("step_3_seeds")
        True
        >>> is_valid_state("step_4_longtails_running")
        False
    """
    if isinstance(candidate, WorkflowState):
        return True
    try:
        WorkflowState(candidate)
    except ValueError:
        return False
    return True


def is_terminal_state(state: WorkflowState) -> bool:
    """Check whether ``state`` is the terminal sink."""
    return state == TERMINAL_STATE


def is_resettable_state(candidate: Union[WorkflowState, str, None]) -> bool:
    """Check whether ``candidate`` is an allowed HUMAN_RESET target."""
    if not is_valid_state(candidate):
        return False
    return WorkflowState(candidate) in RESETTABLE_STATES


def stage_index(state: WorkflowState) -> int:
    """Return the 1-based position of ``state`` in the pipeline.

    The terminal state sits one past the last stage.
    """
    if state == TERMINAL_STATE:
        return len(STAGE_SEQUENCE) + 1
    return STAGE_SEQUENCE.index(state) + 1
