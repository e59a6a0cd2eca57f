"""Progress projections of workflow state for display.

Pure, total mappings from WorkflowState to a percentage, a description and
a UI step number. They are consumed by read paths only and have no bearing
on transition legality. Completion is decided by comparing the state with
the terminal state (is_completed), never by looking at the percentage.
"""

from typing import Dict, Optional

from src.workflow_engine.state.models import (
    STAGE_SEQUENCE,
    TERMINAL_STATE,
    WorkflowState,
)
from src.workflow_engine.state.registry import stage_index


TOTAL_STEPS = len(STAGE_SEQUENCE)

STATE_DESCRIPTIONS: Dict[WorkflowState, str] = {
    WorkflowState.STEP_1_ICP: "Generating ideal customer profile",
    WorkflowState.STEP_2_COMPETITORS: "Analyzing competitors",
    WorkflowState.STEP_3_SEEDS: "Extracting seed keywords",
    WorkflowState.STEP_4_LONGTAILS: "Expanding long-tail keywords",
    WorkflowState.STEP_5_FILTERING: "Filtering keywords",
    WorkflowState.STEP_6_CLUSTERING: "Clustering topics",
    WorkflowState.STEP_7_VALIDATION: "Validating clusters",
    WorkflowState.STEP_8_SUBTOPICS: "Generating subtopics",
    WorkflowState.STEP_9_ARTICLES: "Generating articles",
    WorkflowState.COMPLETED: "Workflow completed",
}

STEP_LABELS = (
    "ICP Generation",
    "Competitor Analysis",
    "Seed Keywords",
    "Longtail Expansion",
    "Filtering",
    "Clustering",
    "Validation",
    "Subtopics",
    "Articles",
)


def percentage(state: WorkflowState) -> int:
    """Return display progress in [0, 100].

    Stage n of the nine-stage pipeline maps to n * 10; the terminal state
    maps to 100. The mapping is strictly increasing along the pipeline.

    Example:
        >>> percentage(WorkflowState.STEP_1_ICP)
        10
        >>> percentage(WorkflowState.COMPLETED)
        100
    """
    if state == TERMINAL_STATE:
        return 100
    return stage_index(state) * 100 // (TOTAL_STEPS + 1)


def description(state: WorkflowState) -> str:
    """Return a human-readable description of ``state``."""
    return STATE_DESCRIPTIONS[state]


def is_completed(state: WorkflowState) -> bool:
    """Check whether the workflow has reached the terminal state."""
    return state == TERMINAL_STATE


def step_number(state: WorkflowState) -> int:
    """Map a state to its 1-based UI step.

    The terminal state maps to the final step so navigation lands on the
    last page.
    """
    if state == TERMINAL_STATE:
        return TOTAL_STEPS
    return stage_index(state)


def step_label(step: int) -> str:
    """Return the label of a 1-based step, or "Unknown Step"."""
    if 1 <= step <= TOTAL_STEPS:
        return STEP_LABELS[step - 1]
    return "Unknown Step"


def can_access_step(state: WorkflowState, step: int) -> bool:
    """Check whether a user at ``state`` may open UI step ``step``.

    Only steps already reached are accessible.
    """
    return 1 <= step <= step_number(state)


def next_step(state: WorkflowState) -> Optional[int]:
    """Return the next UI step, or None at the final step or when completed."""
    if state == TERMINAL_STATE:
        return None
    upcoming = step_number(state) + 1
    return upcoming if upcoming <= TOTAL_STEPS else None


def previous_step(state: WorkflowState) -> Optional[int]:
    """Return the previous UI step, or None at the first step."""
    current = step_number(state)
    return current - 1 if current > 1 else None
