"""Database repositories for FlowTrack entities."""

from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncIterator, Callable, Iterable, Optional
from uuid import UUID, uuid4

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flowtrack.config import settings
from flowtrack.db.tables import EventTable, TaskTable, WorkflowTable
from flowtrack.errors import ValidationError
from flowtrack.models import (
    Event,
    EventFilters,
    EventQueryOptions,
    EventType,
    NewEvent,
    SortOrder,
    Stage,
    Task,
    TaskStatus,
    Workflow,
)
from flowtrack.observability.metrics import MetricName, labelled, metrics
from flowtrack.utils.time import ensure_utc, event_clock, utc_now


class EventRepository:
    """
    Append-only event store.

    There is no update or delete: events are immutable once
    written. Timestamps come from the injected clock at write time.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: Optional[int] = None,
    ):
        self.session = session
        self._clock = clock or event_clock
        self.batch_size = batch_size or settings.event_query_batch_size

    async def append(self, new_event: NewEvent | dict[str, Any]) -> Event:
        """Validate and persist one event."""
        if isinstance(new_event, dict):
            new_event = NewEvent.parse(new_event)
        new_event = new_event.validated()

        row = EventTable(
            organization_id=new_event.organization_id,
            event_id=uuid4(),
            event_type=new_event.event_type,
            user_id=new_event.user_id,
            task_id=new_event.task_id,
            workflow_id=new_event.workflow_id,
            from_stage=new_event.from_stage,
            to_stage=new_event.to_stage,
            timestamp=ensure_utc(self._clock()),
            event_metadata=dict(new_event.metadata),
        )
        self.session.add(row)
        await self.session.flush()

        metrics.inc_counter(MetricName.EVENTS_APPENDED)
        metrics.inc_counter(labelled(MetricName.EVENTS_APPENDED, new_event.event_type.value))
        return self._row_to_model(row)

    async def query(
        self,
        organization_id: UUID,
        filters: Optional[EventFilters] = None,
        options: Optional[EventQueryOptions] = None,
    ) -> AsyncIterator[Event]:
        """
        Stream events matching the filters.

        Rows are fetched lazily in keyset-paginated batches ordered by
        (timestamp, event_id), newest first unless options.order is ASC.
        """
        conditions = self._query_conditions(organization_id, filters, options)
        options = options or EventQueryOptions()
        descending = options.order == SortOrder.DESC

        if descending:
            ordering = (EventTable.timestamp.desc(), EventTable.event_id.desc())
        else:
            ordering = (EventTable.timestamp.asc(), EventTable.event_id.asc())

        remaining = options.limit
        cursor: Optional[tuple[datetime, UUID]] = None

        while True:
            batch_size = self.batch_size if remaining is None else min(self.batch_size, remaining)
            stmt = select(EventTable).where(*conditions)
            if cursor is not None:
                stmt = stmt.where(self._after_cursor(cursor, descending))
            stmt = stmt.order_by(*ordering).limit(batch_size)

            result = await self.session.execute(stmt)
            rows = list(result.scalars().all())

            for row in rows:
                yield self._row_to_model(row)

            if remaining is not None:
                remaining -= len(rows)
                if remaining <= 0:
                    return
            if len(rows) < batch_size:
                return
            cursor = (rows[-1].timestamp, rows[-1].event_id)

    async def list(
        self,
        organization_id: UUID,
        filters: Optional[EventFilters] = None,
        options: Optional[EventQueryOptions] = None,
    ) -> list[Event]:
        """Materialize `query()` into a list."""
        return [event async for event in self.query(organization_id, filters, options)]

    async def list_for_workflow(
        self,
        organization_id: UUID,
        workflow_id: UUID,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> list[Event]:
        """All events of one workflow, ordered by task then time."""
        query = select(EventTable).where(
            EventTable.organization_id == organization_id,
            EventTable.workflow_id == workflow_id,
        )
        if event_types is not None:
            query = query.where(EventTable.event_type.in_(list(event_types)))
        query = query.order_by(EventTable.task_id, EventTable.timestamp, EventTable.event_id)

        result = await self.session.execute(query)
        return [self._row_to_model(row) for row in result.scalars().all()]

    async def list_for_task(self, organization_id: UUID, task_id: UUID) -> list[Event]:
        """History of one task, oldest first."""
        result = await self.session.execute(
            select(EventTable)
            .where(
                EventTable.organization_id == organization_id,
                EventTable.task_id == task_id,
            )
            .order_by(EventTable.timestamp, EventTable.event_id)
        )
        return [self._row_to_model(row) for row in result.scalars().all()]

    async def count(
        self,
        organization_id: UUID,
        event_type: Optional[EventType] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        """Count events; `since` and `until` are inclusive."""
        query = select(func.count()).select_from(EventTable).where(
            EventTable.organization_id == organization_id
        )
        if event_type is not None:
            query = query.where(EventTable.event_type == event_type)
        if since is not None:
            query = query.where(EventTable.timestamp >= ensure_utc(since))
        if until is not None:
            query = query.where(EventTable.timestamp <= ensure_utc(until))

        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def completion_timestamps(
        self,
        organization_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[datetime]:
        """Timestamps of task_completed events within an inclusive range."""
        query = select(EventTable.timestamp).where(
            EventTable.organization_id == organization_id,
            EventTable.event_type == EventType.TASK_COMPLETED,
        )
        if start is not None:
            query = query.where(EventTable.timestamp >= ensure_utc(start))
        if end is not None:
            query = query.where(EventTable.timestamp <= ensure_utc(end))

        result = await self.session.execute(query.order_by(EventTable.timestamp))
        return list(result.scalars().all())

    def _query_conditions(
        self,
        organization_id: UUID,
        filters: Optional[EventFilters],
        options: Optional[EventQueryOptions],
    ) -> list[Any]:
        if organization_id is None:
            raise ValidationError("organization_id is required", ["organization_id"])

        conditions: list[Any] = [EventTable.organization_id == organization_id]

        if filters:
            if filters.workflow_id:
                conditions.append(EventTable.workflow_id == filters.workflow_id)
            if filters.user_id:
                conditions.append(EventTable.user_id == filters.user_id)
            if filters.task_id:
                conditions.append(EventTable.task_id == filters.task_id)
            if filters.event_type:
                conditions.append(EventTable.event_type == filters.event_type)

        if options:
            start = ensure_utc(options.start) if options.start else None
            end = ensure_utc(options.end) if options.end else None
            if start and end and start > end:
                raise ValidationError("start must not be after end", ["start", "end"])
            if start:
                conditions.append(EventTable.timestamp >= start)
            if end:
                conditions.append(EventTable.timestamp <= end)

        return conditions

    @staticmethod
    def _after_cursor(cursor: tuple[datetime, UUID], descending: bool) -> Any:
        timestamp, event_id = cursor
        if descending:
            return or_(
                EventTable.timestamp < timestamp,
                and_(EventTable.timestamp == timestamp, EventTable.event_id < event_id),
            )
        return or_(
            EventTable.timestamp > timestamp,
            and_(EventTable.timestamp == timestamp, EventTable.event_id > event_id),
        )

    def _row_to_model(self, row: EventTable) -> Event:
        return Event(
            event_id=row.event_id,
            event_type=row.event_type,
            organization_id=row.organization_id,
            user_id=row.user_id,
            task_id=row.task_id,
            workflow_id=row.workflow_id,
            from_stage=row.from_stage,
            to_stage=row.to_stage,
            timestamp=row.timestamp,
            metadata=row.event_metadata or {},
        )


class TaskRepository:
    """Repository for task records (current state only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        organization_id: UUID,
        workflow_id: UUID,
        title: str,
        current_stage: str,
        created_by: UUID,
        description: Optional[str] = None,
    ) -> Task:
        now = utc_now()
        row = TaskTable(
            organization_id=organization_id,
            task_id=uuid4(),
            workflow_id=workflow_id,
            title=title,
            description=description,
            current_stage=current_stage,
            status=TaskStatus.ACTIVE,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, organization_id: UUID, task_id: UUID) -> Task | None:
        result = await self.session.execute(
            select(TaskTable).where(
                TaskTable.organization_id == organization_id,
                TaskTable.task_id == task_id,
            )
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def get_for_update(self, organization_id: UUID, task_id: UUID) -> Task | None:
        """
        Fetch a task and lock its row until the transaction ends.

        Concurrent stage changes and completions of the same task serialize
        here, so each event's from_stage is the stage the task really left.
        """
        result = await self.session.execute(self._locking_query(organization_id, task_id))
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    @staticmethod
    def _locking_query(organization_id: UUID, task_id: UUID) -> Select:
        return (
            select(TaskTable)
            .where(
                TaskTable.organization_id == organization_id,
                TaskTable.task_id == task_id,
            )
            .with_for_update()
        )

    async def list(
        self,
        organization_id: UUID,
        workflow_id: Optional[UUID] = None,
        status: Optional[TaskStatus] = None,
        limit: int = 50,
    ) -> list[Task]:
        """List tasks, newest first."""
        query = select(TaskTable).where(TaskTable.organization_id == organization_id)
        if workflow_id:
            query = query.where(TaskTable.workflow_id == workflow_id)
        if status:
            query = query.where(TaskTable.status == status)

        query = query.order_by(TaskTable.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def count(self, organization_id: UUID, status: Optional[TaskStatus] = None) -> int:
        query = select(func.count()).select_from(TaskTable).where(
            TaskTable.organization_id == organization_id
        )
        if status:
            query = query.where(TaskTable.status == status)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def search_substring(self, organization_id: UUID, text: str, limit: int = 50) -> list[Task]:
        """Case-insensitive substring match on title or description."""
        result = await self.session.execute(
            select(TaskTable)
            .where(
                TaskTable.organization_id == organization_id,
                or_(
                    TaskTable.title.icontains(text, autoescape=True),
                    TaskTable.description.icontains(text, autoescape=True),
                ),
            )
            .order_by(TaskTable.created_at.desc())
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    async def set_stage(self, organization_id: UUID, task_id: UUID, stage: str) -> Task | None:
        return await self._update(organization_id, task_id, {"current_stage": stage})

    async def update_fields(
        self,
        organization_id: UUID,
        task_id: UUID,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task | None:
        values: dict[str, Any] = {}
        if title is not None:
            values["title"] = title
        if description is not None:
            values["description"] = description
        return await self._update(organization_id, task_id, values)

    async def mark_completed(
        self,
        organization_id: UUID,
        task_id: UUID,
        completed_at: Optional[datetime] = None,
    ) -> Task | None:
        return await self._update(
            organization_id,
            task_id,
            {"status": TaskStatus.COMPLETED, "completed_at": completed_at or utc_now()},
        )

    async def _update(
        self, organization_id: UUID, task_id: UUID, values: dict[str, Any]
    ) -> Task | None:
        values = {**values, "updated_at": utc_now()}
        await self.session.execute(
            update(TaskTable)
            .where(TaskTable.organization_id == organization_id, TaskTable.task_id == task_id)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return await self.get(organization_id, task_id)

    def _row_to_model(self, row: TaskTable) -> Task:
        return Task(
            task_id=row.task_id,
            organization_id=row.organization_id,
            workflow_id=row.workflow_id,
            title=row.title,
            description=row.description,
            current_stage=row.current_stage,
            status=row.status,
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )


class WorkflowRepository:
    """Repository for workflow definitions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        organization_id: UUID,
        name: str,
        stages: list[Stage],
        created_by: UUID,
        description: Optional[str] = None,
    ) -> Workflow:
        row = WorkflowTable(
            organization_id=organization_id,
            workflow_id=uuid4(),
            name=name,
            description=description,
            stages=[stage.model_dump() for stage in stages],
            created_by=created_by,
            created_at=utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._row_to_model(row)

    async def get(self, organization_id: UUID, workflow_id: UUID) -> Workflow | None:
        result = await self.session.execute(
            select(WorkflowTable).where(
                WorkflowTable.organization_id == organization_id,
                WorkflowTable.workflow_id == workflow_id,
            )
        )
        row = result.scalar_one_or_none()
        return self._row_to_model(row) if row else None

    async def list(self, organization_id: UUID, limit: int = 50) -> list[Workflow]:
        result = await self.session.execute(
            select(WorkflowTable)
            .where(WorkflowTable.organization_id == organization_id)
            .order_by(WorkflowTable.created_at.desc())
            .limit(limit)
        )
        return [self._row_to_model(r) for r in result.scalars().all()]

    def _row_to_model(self, row: WorkflowTable) -> Workflow:
        return Workflow(
            workflow_id=row.workflow_id,
            organization_id=row.organization_id,
            name=row.name,
            description=row.description,
            stages=[Stage.model_validate(stage) for stage in row.stages or []],
            created_by=row.created_by,
            created_at=row.created_at,
        )
