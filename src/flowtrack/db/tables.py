"""SQLAlchemy table definitions."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import JSON, DateTime, Enum, Index, String, Text, TypeDecorator, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from flowtrack.db.base import Base
from flowtrack.models.enums import EventType, TaskStatus


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite stores naive)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; use timezone-aware UTC")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class WorkflowTable(Base):
    """Workflows table - stage definitions per organization."""

    __tablename__ = "workflows"

    organization_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    workflow_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # [{"name": ..., "order": ...}]
    stages: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)

    created_by: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_workflows_org_created", "organization_id", "created_at"),
    )


class TaskTable(Base):
    """Tasks table - current state of each work item."""

    __tablename__ = "tasks"

    organization_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    task_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    workflow_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_stage: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="taskstatus", values_callable=_enum_values),
        nullable=False,
        default=TaskStatus.ACTIVE,
    )

    created_by: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_tasks_org_status", "organization_id", "status"),
        Index("idx_tasks_org_workflow", "organization_id", "workflow_id", "created_at"),
    )


class EventTable(Base):
    """Events table - append-only task lifecycle log."""

    __tablename__ = "events"

    organization_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    event_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, name="eventtype", values_callable=_enum_values),
        nullable=False,
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    task_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    from_stage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    to_stage: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # "metadata" is reserved on declarative classes
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    __table_args__ = (
        Index("idx_events_org_time", "organization_id", "timestamp"),
        Index("idx_events_workflow", "organization_id", "workflow_id", "event_type", "timestamp"),
        Index("idx_events_task", "organization_id", "task_id", "timestamp"),
        Index("idx_events_type", "organization_id", "event_type", "timestamp"),
    )
