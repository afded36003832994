"""Task model - mutable projection of a work item's current state."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from flowtrack.models.enums import TaskStatus


class Task(BaseModel):
    """Current state of a task. History lives in the event log."""

    task_id: UUID
    organization_id: UUID
    workflow_id: UUID

    title: str
    description: Optional[str] = None

    # Always the to_stage of the task's latest stage-bearing event
    current_stage: str
    status: TaskStatus = TaskStatus.ACTIVE

    created_by: UUID
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    def is_completed(self) -> bool:
        return self.status.is_terminal()
