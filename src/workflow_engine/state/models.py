"""Workflow state machine models.

This module defines the data models for the content workflow state machine:
- WorkflowState: Closed enum of the ten canonical workflow states
- WorkflowEvent: Closed enum of stage-completion events plus HUMAN_RESET
- STAGE_SEQUENCE / TERMINAL_STATE: The ordered pipeline and its sink
- TRANSITIONS: The static (state, event) -> next state registry
- RESETTABLE_STATES: Allow-list of human rollback targets
- Workflow: The entity under control
- TransitionOptions / TransitionResult: Engine input and outcome

The state set is sealed: there are no per-stage running/failed sub-states and
no global failure state. A workflow is always in exactly one of these ten
states.

The models use Pydantic for validation, consistent with config.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WorkflowState(str, Enum):
    """Canonical states of a content workflow.

    Stage Flow:
        step_1_icp → step_2_competitors → step_3_seeds → step_4_longtails
        → step_5_filtering → step_6_clustering → step_7_validation
        → step_8_subtopics → step_9_articles → completed

    Each step_* state means "this stage's work is pending or in progress".
    COMPLETED is the only terminal state and has no outgoing transitions,
    including human rollback.

    Attributes:
        STEP_1_ICP: Ideal customer profile generation.
        STEP_2_COMPETITORS: Competitor analysis.
        STEP_3_SEEDS: Seed keyword extraction (human-approved).
        STEP_4_LONGTAILS: Long-tail keyword expansion.
        STEP_5_FILTERING: Keyword filtering.
        STEP_6_CLUSTERING: Topic clustering.
        STEP_7_VALIDATION: Cluster validation.
        STEP_8_SUBTOPICS: Subtopic generation (human-approved).
        STEP_9_ARTICLES: Article generation.
        COMPLETED: Pipeline finished; terminal.
    """

    STEP_1_ICP = "step_1_icp"
    STEP_2_COMPETITORS = "step_2_competitors"
    STEP_3_SEEDS = "step_3_seeds"
    STEP_4_LONGTAILS = "step_4_longtails"
    STEP_5_FILTERING = "step_5_filtering"
    STEP_6_CLUSTERING = "step_6_clustering"
    STEP_7_VALIDATION = "step_7_validation"
    STEP_8_SUBTOPICS = "step_8_subtopics"
    STEP_9_ARTICLES = "step_9_articles"
    COMPLETED = "completed"


class WorkflowEvent(str, Enum):
    """Events that drive workflow transitions.

    Every stage has exactly one completion event that carries the workflow
    to the next stage. HUMAN_RESET is the only event whose target is not
    fixed by the registry: the caller supplies it through
    TransitionOptions.rollback_target.
    """

    ICP_COMPLETED = "ICP_COMPLETED"
    COMPETITORS_COMPLETED = "COMPETITORS_COMPLETED"
    SEEDS_APPROVED = "SEEDS_APPROVED"
    LONGTAILS_COMPLETED = "LONGTAILS_COMPLETED"
    FILTERING_COMPLETED = "FILTERING_COMPLETED"
    CLUSTERING_COMPLETED = "CLUSTERING_COMPLETED"
    VALIDATION_COMPLETED = "VALIDATION_COMPLETED"
    SUBTOPICS_APPROVED = "SUBTOPICS_APPROVED"
    ARTICLES_COMPLETED = "ARTICLES_COMPLETED"
    HUMAN_RESET = "HUMAN_RESET"


# Ordered non-terminal stages. Never contains TERMINAL_STATE.
STAGE_SEQUENCE: Tuple[WorkflowState, ...] = (
    WorkflowState.STEP_1_ICP,
    WorkflowState.STEP_2_COMPETITORS,
    WorkflowState.STEP_3_SEEDS,
    WorkflowState.STEP_4_LONGTAILS,
    WorkflowState.STEP_5_FILTERING,
    WorkflowState.STEP_6_CLUSTERING,
    WorkflowState.STEP_7_VALIDATION,
    WorkflowState.STEP_8_SUBTOPICS,
    WorkflowState.STEP_9_ARTICLES,
)

TERMINAL_STATE: WorkflowState = WorkflowState.COMPLETED

INITIAL_STATE: WorkflowState = STAGE_SEQUENCE[0]


# Transition registry
#
# One completion event per stage, each carrying the workflow exactly one
# step forward. HUMAN_RESET is deliberately absent: rollback targets are not
# fixed per source state and are checked against RESETTABLE_STATES instead.
# COMPLETED has no entries.
TRANSITIONS: Mapping[WorkflowState, Mapping[WorkflowEvent, WorkflowState]] = {
    WorkflowState.STEP_1_ICP: {
        WorkflowEvent.ICP_COMPLETED: WorkflowState.STEP_2_COMPETITORS,
    },
    WorkflowState.STEP_2_COMPETITORS: {
        WorkflowEvent.COMPETITORS_COMPLETED: WorkflowState.STEP_3_SEEDS,
    },
    # Human gate: seeds must be approved before expansion
    WorkflowState.STEP_3_SEEDS: {
        WorkflowEvent.SEEDS_APPROVED: WorkflowState.STEP_4_LONGTAILS,
    },
    WorkflowState.STEP_4_LONGTAILS: {
        WorkflowEvent.LONGTAILS_COMPLETED: WorkflowState.STEP_5_FILTERING,
    },
    WorkflowState.STEP_5_FILTERING: {
        WorkflowEvent.FILTERING_COMPLETED: WorkflowState.STEP_6_CLUSTERING,
    },
    WorkflowState.STEP_6_CLUSTERING: {
        WorkflowEvent.CLUSTERING_COMPLETED: WorkflowState.STEP_7_VALIDATION,
    },
    WorkflowState.STEP_7_VALIDATION: {
        WorkflowEvent.VALIDATION_COMPLETED: WorkflowState.STEP_8_SUBTOPICS,
    },
    # Human gate: subtopics must be approved before article generation
    WorkflowState.STEP_8_SUBTOPICS: {
        WorkflowEvent.SUBTOPICS_APPROVED: WorkflowState.STEP_9_ARTICLES,
    },
    WorkflowState.STEP_9_ARTICLES: {
        WorkflowEvent.ARTICLES_COMPLETED: WorkflowState.COMPLETED,
    },
    WorkflowState.COMPLETED: {},
}


# Stages a human reviewer may rewind a workflow to.
RESETTABLE_STATES: FrozenSet[WorkflowState] = frozenset(
    {
        WorkflowState.STEP_1_ICP,
        WorkflowState.STEP_2_COMPETITORS,
        WorkflowState.STEP_3_SEEDS,
        WorkflowState.STEP_4_LONGTAILS,
        WorkflowState.STEP_5_FILTERING,
        WorkflowState.STEP_6_CLUSTERING,
        WorkflowState.STEP_7_VALIDATION,
    }
)


class Workflow(BaseModel):
    """A content workflow controlled by the state machine.

    The payload is owned by the stage workers and is never interpreted by
    the engine. The state field is only ever changed through
    WorkflowEngine.transition().

    Attributes:
        id: Unique workflow identifier.
        state: The current workflow state.
        organization_id: Owning organization.
        created_by: User who created the workflow, if any.
        payload: Opaque stage-produced data.
        created_at: When the workflow was created (UTC).
        updated_at: When the workflow was last updated (UTC).
    """

    id: str = Field(
        ...,
        min_length=1,
        description="Unique workflow identifier",
    )

    state: WorkflowState = Field(
        default=INITIAL_STATE,
        description="The current state of the workflow",
    )

    organization_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the owning organization",
    )

    created_by: Optional[str] = Field(
        default=None,
        description="Identifier of the user who created the workflow",
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque stage-produced data, not interpreted by the engine",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the workflow was created (UTC)",
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the workflow was last updated (UTC)",
    )


class TransitionRecord(BaseModel):
    """Immutable audit record of a committed workflow transition.

    Records are written by the audit recorders in audit/recorder.py. The
    engine only requests their creation and never depends on the write
    succeeding.

    Attributes:
        workflow_id: The workflow that transitioned.
        previous_state: The state before the transition.
        event: The event that was applied.
        next_state: The state after the transition.
        triggered_by: Actor who requested the transition. None for
            automated stage-completion events.
        timestamp: When the transition was committed (UTC).
    """

    model_config = ConfigDict(frozen=True)

    workflow_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the workflow that transitioned",
    )

    previous_state: WorkflowState = Field(
        ...,
        description="The workflow state before this transition",
    )

    event: WorkflowEvent = Field(
        ...,
        description="The event that was applied",
    )

    next_state: WorkflowState = Field(
        ...,
        description="The workflow state after this transition",
    )

    triggered_by: Optional[str] = Field(
        default=None,
        description="Actor who triggered the transition (None for automation)",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition was committed (UTC timezone)",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert the record to a flat dictionary for structured logging."""
        return {
            "workflow_id": self.workflow_id,
            "from_state": self.previous_state.value,
            "event": self.event.value,
            "to_state": self.next_state.value,
            "triggered_by": self.triggered_by,
            "timestamp": self.timestamp.isoformat(),
        }


class TransitionOptions(BaseModel):
    """Optional inputs to WorkflowEngine.transition().

    Attributes:
        rollback_target: Target state for HUMAN_RESET. Required for that
            event and ignored for every other event.
        triggered_by: Actor who requested the transition. None for
            automated stage-completion events.
    """

    model_config = ConfigDict(frozen=True)

    rollback_target: Optional[WorkflowState] = None
    triggered_by: Optional[str] = None


class TransitionResult(BaseModel):
    """Outcome of a transition attempt.

    A result is returned for every expected outcome: applied transitions,
    events that are not legal from the current state, lost races and
    idempotent no-ops. Callers must branch on ``ok`` and never assume
    success.

    Invariants:
        - applied implies ok
        - ok and previous_state != next_state implies applied

    Attributes:
        ok: Whether the requested transition holds after the call.
        previous_state: The state the engine read before deciding.
        next_state: The state the caller should now consider current.
        applied: Whether this call wrote a new state.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    previous_state: WorkflowState
    next_state: WorkflowState
    applied: bool

    @model_validator(mode="after")
    def check_consistency(self) -> "TransitionResult":
        """Reject results that would report an ambiguous outcome."""
        if self.applied and not self.ok:
            raise ValueError("applied result must be ok")
        if self.ok and self.previous_state != self.next_state and not self.applied:
            raise ValueError("ok result that changes state must be applied")
        return self

    @classmethod
    def rejected(
        cls,
        previous_state: WorkflowState,
        current_state: Optional[WorkflowState] = None,
    ) -> "TransitionResult":
        """Build a not-applied, not-ok result.

        Args:
            previous_state: The state the engine read.
            current_state: The latest persisted state, if it differs.
        """
        return cls(
            ok=False,
            previous_state=previous_state,
            next_state=current_state or previous_state,
            applied=False,
        )
