"""API request/response schemas."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from flowtrack.models import (
    Bottleneck,
    Event,
    EventType,
    StageAverage,
    Task,
    TimelineBucket,
    Workflow,
)


# ============================================================================
# Workflows
# ============================================================================


class StageSchema(BaseModel):
    """Workflow stage."""

    name: str = Field(..., min_length=1, description="Stage name, unique within the workflow")
    order: Optional[int] = Field(None, description="Position; defaults to list position")


class CreateWorkflowRequest(BaseModel):
    """Create workflow request."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    stages: list[StageSchema] = Field(..., min_length=1)


class ListWorkflowsResponse(BaseModel):
    workflows: list[Workflow]


# ============================================================================
# Tasks
# ============================================================================


class CreateTaskRequest(BaseModel):
    """Create task request."""

    workflow_id: UUID
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    initial_stage: Optional[str] = Field(
        None, description="Starting stage; defaults to the workflow's first stage"
    )


class UpdateTaskRequest(BaseModel):
    """Edit task title and/or description."""

    title: Optional[str] = None
    description: Optional[str] = None


class ChangeStageRequest(BaseModel):
    """Move a task to another stage."""

    to_stage: str = Field(..., min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ListTasksResponse(BaseModel):
    tasks: list[Task]


class TaskHistoryResponse(BaseModel):
    task_id: UUID
    events: list[Event]


# ============================================================================
# Events
# ============================================================================


class ListEventsResponse(BaseModel):
    events: list[Event]


class AppendEventRequest(BaseModel):
    """Raw event append (organization and user come from headers)."""

    event_type: EventType
    task_id: UUID
    workflow_id: UUID
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Analytics
# ============================================================================


class StageDurationsResponse(BaseModel):
    """Average dwell time per stage, plus how many events were skipped."""

    workflow_id: UUID
    stages: dict[str, StageAverage]
    skipped_events: int = 0
    clamped_samples: int = 0


class BottlenecksResponse(BaseModel):
    workflow_id: UUID
    bottlenecks: list[Bottleneck]


class TimelineResponse(BaseModel):
    group_by: str
    buckets: list[TimelineBucket]


# ============================================================================
# Health & Metrics
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    search_index: str
    mirror_pending: int = 0
    mirror_dead_letters: int = 0


class MetricsResponse(BaseModel):
    generated_at: datetime
    metrics: dict[str, Any]
