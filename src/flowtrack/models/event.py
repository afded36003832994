"""Event model - immutable record of one task transition."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from flowtrack.errors import ValidationError
from flowtrack.models.enums import EventType, SortOrder


REQUIRED_REFERENCES = ("organization_id", "user_id", "task_id", "workflow_id")


class Event(BaseModel):
    """Persisted domain event. Never updated or deleted."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID
    event_type: EventType
    organization_id: UUID
    user_id: UUID
    task_id: UUID
    workflow_id: UUID
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class NewEvent(BaseModel):
    """
    Event as submitted for appending.

    Reference fields are optional here so that missing ones can be reported
    together; `validated()` enforces them.
    """

    event_type: Optional[EventType] = None
    organization_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    task_id: Optional[UUID] = None
    workflow_id: Optional[UUID] = None
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "NewEvent":
        """Build from untyped input, raising FlowTrack's ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            raise ValidationError(f"Invalid event fields: {', '.join(fields)}", fields) from e

    def validated(self) -> "NewEvent":
        missing = [name for name in REQUIRED_REFERENCES if getattr(self, name) is None]
        if self.event_type is None:
            missing.insert(0, "event_type")
        if missing:
            raise ValidationError(f"Missing required event fields: {', '.join(missing)}", missing)
        return self


class EventFilters(BaseModel):
    """Optional equality filters for event queries (tenant passed separately)."""

    workflow_id: Optional[UUID] = None
    user_id: Optional[UUID] = None
    task_id: Optional[UUID] = None
    event_type: Optional[EventType] = None


class EventQueryOptions(BaseModel):
    """Time range, limit and ordering for event queries."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: Optional[int] = Field(default=None, ge=1)
    order: SortOrder = SortOrder.DESC
