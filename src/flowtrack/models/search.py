"""Secondary index query models."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from flowtrack.models.enums import EventType, TaskStatus
from flowtrack.models.task import Task


class TaskSearchHit(BaseModel):
    """Task document returned by full-text search."""

    task_id: UUID
    workflow_id: UUID
    title: str
    description: Optional[str] = None
    current_stage: str
    status: TaskStatus
    score: Optional[float] = None
    highlights: dict[str, list[str]] = Field(default_factory=dict)

    @classmethod
    def from_task(cls, task: Task) -> "TaskSearchHit":
        return cls(
            task_id=task.task_id,
            workflow_id=task.workflow_id,
            title=task.title,
            description=task.description,
            current_stage=task.current_stage,
            status=task.status,
        )


class TaskSearchResult(BaseModel):
    """Search hits plus whether they came from the primary-store fallback."""

    hits: list[TaskSearchHit]
    degraded: bool = False


class EventSearchFilters(BaseModel):
    """Exact-match filters for indexed event search."""

    event_type: Optional[EventType] = None
    workflow_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    task_id: Optional[UUID] = None
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=10000)


class AggregationBucket(BaseModel):
    key: str
    count: int


class EventAggregations(BaseModel):
    """Server-side aggregations over indexed events."""

    event_type_counts: list[AggregationBucket] = Field(default_factory=list)
    stage_counts: list[AggregationBucket] = Field(default_factory=list)
    daily_timeline: list[AggregationBucket] = Field(default_factory=list)
