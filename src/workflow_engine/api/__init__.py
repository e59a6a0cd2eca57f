"""HTTP request and response models for the workflow service."""

from src.workflow_engine.api.models import (
    AllowedEventsResponse,
    CreateWorkflowRequest,
    ProgressResponse,
    StateResponse,
    TransitionHistoryResponse,
    TransitionRecordResponse,
    TransitionRequest,
    TransitionResponse,
    WorkflowListResponse,
    WorkflowResponse,
)

__all__ = [
    "AllowedEventsResponse",
    "CreateWorkflowRequest",
    "ProgressResponse",
    "StateResponse",
    "TransitionHistoryResponse",
    "TransitionRecordResponse",
    "TransitionRequest",
    "TransitionResponse",
    "WorkflowListResponse",
    "WorkflowResponse",
]
