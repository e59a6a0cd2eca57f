"""Request and response models for the workflow HTTP API.

These models define the wire shape of the endpoints in main.py. Domain
objects from state/models.py are converted here so the HTTP contract does
not change when internal models gain fields.

The models use Pydantic for validation, consistent with the state models.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.workflow_engine import progress
from src.workflow_engine.state.models import (
    TransitionRecord,
    TransitionResult,
    Workflow,
    WorkflowEvent,
    WorkflowState,
)


class CreateWorkflowRequest(BaseModel):
    """Body of POST /workflows."""

    organization_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the owning organization",
    )

    created_by: Optional[str] = Field(
        default=None,
        description="Identifier of the creating user",
    )

    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Initial opaque stage data",
    )


class TransitionRequest(BaseModel):
    """Body of POST /workflows/{workflow_id}/transitions.

    Attributes:
        event: The event to apply.
        rollback_target: Target stage; required when event is HUMAN_RESET.
        triggered_by: Acting user; omit for automated stage completions.
    """

    event: WorkflowEvent = Field(
        ...,
        description="The event to apply",
    )

    rollback_target: Optional[WorkflowState] = Field(
        default=None,
        description="Target stage for HUMAN_RESET",
    )

    triggered_by: Optional[str] = Field(
        default=None,
        description="Actor requesting the transition",
    )


class ProgressResponse(BaseModel):
    """Display projection of a workflow state."""

    percentage: int = Field(..., ge=0, le=100)
    description: str
    step: int = Field(..., ge=1)
    step_label: str
    completed: bool

    @classmethod
    def from_state(cls, state: WorkflowState) -> "ProgressResponse":
        step = progress.step_number(state)
        return cls(
            percentage=progress.percentage(state),
            description=progress.description(state),
            step=step,
            step_label=progress.step_label(step),
            completed=progress.is_completed(state),
        )


class WorkflowResponse(BaseModel):
    """A workflow together with its progress projection."""

    id: str
    state: WorkflowState
    organization_id: str
    created_by: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    progress: ProgressResponse

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowResponse":
        return cls(
            id=workflow.id,
            state=workflow.state,
            organization_id=workflow.organization_id,
            created_by=workflow.created_by,
            payload=workflow.payload,
            created_at=workflow.created_at,
            updated_at=workflow.updated_at,
            progress=ProgressResponse.from_state(workflow.state),
        )


class WorkflowListResponse(BaseModel):
    workflows: List[WorkflowResponse]
    count: int


class StateResponse(BaseModel):
    workflow_id: str
    state: WorkflowState


class TransitionResponse(BaseModel):
    """Outcome of a transition attempt.

    Returned with status 200 for every outcome, including ``ok=false``.
    """

    workflow_id: str
    ok: bool
    applied: bool
    previous_state: WorkflowState
    next_state: WorkflowState

    @classmethod
    def from_result(
        cls, workflow_id: str, result: TransitionResult
    ) -> "TransitionResponse":
        return cls(
            workflow_id=workflow_id,
            ok=result.ok,
            applied=result.applied,
            previous_state=result.previous_state,
            next_state=result.next_state,
        )


class TransitionRecordResponse(BaseModel):
    previous_state: WorkflowState
    event: WorkflowEvent
    next_state: WorkflowState
    triggered_by: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_record(cls, record: TransitionRecord) -> "TransitionRecordResponse":
        return cls(
            previous_state=record.previous_state,
            event=record.event,
            next_state=record.next_state,
            triggered_by=record.triggered_by,
            timestamp=record.timestamp,
        )


class TransitionHistoryResponse(BaseModel):
    workflow_id: str
    transitions: List[TransitionRecordResponse]


class AllowedEventsResponse(BaseModel):
    """Events the registry accepts from a state.

    Advisory only: the state may change before a transition is attempted.
    HUMAN_RESET is never listed.
    """

    state: WorkflowState
    events: List[WorkflowEvent]
    terminal: bool
