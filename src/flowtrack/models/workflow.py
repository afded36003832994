"""Workflow model - ordered stages a task moves through."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class Stage(BaseModel):
    """A named step in a workflow. Identity is the name."""

    name: str = Field(..., min_length=1)
    order: int


class Workflow(BaseModel):
    """Workflow definition scoped to one organization."""

    workflow_id: UUID
    organization_id: UUID
    name: str
    description: Optional[str] = None
    stages: list[Stage] = Field(default_factory=list)
    created_by: UUID
    created_at: datetime

    def ordered_stages(self) -> list[Stage]:
        return sorted(self.stages, key=lambda stage: stage.order)

    def initial_stage(self) -> Optional[str]:
        ordered = self.ordered_stages()
        return ordered[0].name if ordered else None

    def has_stage(self, name: str) -> bool:
        return any(stage.name == name for stage in self.stages)
