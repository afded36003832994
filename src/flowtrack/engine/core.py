"""FlowTrack core engine - task lifecycle, analytics and search operations."""

import logging
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from flowtrack.analytics import (
    DashboardAggregator,
    StageDurationReport,
    rank_bottlenecks,
    reconstruct_stage_durations,
)
from flowtrack.config import settings
from flowtrack.db.repositories import EventRepository, TaskRepository, WorkflowRepository
from flowtrack.errors import (
    IndexRequestError,
    IndexUnavailableError,
    InvalidStateTransition,
    TaskNotFound,
    ValidationError,
    WorkflowNotFound,
)
from flowtrack.models import (
    Bottleneck,
    DashboardStats,
    Event,
    EventAggregations,
    EventFilters,
    EventQueryOptions,
    EventSearchFilters,
    EventType,
    GroupBy,
    NewEvent,
    Stage,
    StageAverage,
    Task,
    TaskSearchHit,
    TaskSearchResult,
    TaskStatus,
    TimelineBucket,
    Workflow,
)
from flowtrack.observability.metrics import MetricName, metrics
from flowtrack.search.synchronizer import IndexSynchronizer
from flowtrack.utils.time import ensure_utc

logger = logging.getLogger(__name__)


class FlowTrackEngine:
    """
    Core engine implementing FlowTrack operations for one session.

    Each mutation writes the task record and its event in one transaction,
    commits, and only then hands both to the index synchronizer. Index
    trouble never fails a mutation.
    """

    def __init__(
        self,
        session: AsyncSession,
        synchronizer: Optional[IndexSynchronizer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.synchronizer = synchronizer
        self.events = EventRepository(session, clock=clock)
        self.tasks = TaskRepository(session)
        self.workflows = WorkflowRepository(session)
        self.dashboard = DashboardAggregator(self.tasks, self.events)

    async def _commit(self) -> None:
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _rollback_on_error(self, error: Exception) -> None:
        logger.debug(f"Rolling back after {type(error).__name__}: {error}")
        await self.session.rollback()

    def _mirror(self, task: Optional[Task], event: Optional[Event]) -> None:
        if self.synchronizer is None:
            return
        if task is not None:
            self.synchronizer.mirror_task(task)
        if event is not None:
            self.synchronizer.mirror_event(event)

    # =========================================================================
    # Workflows
    # =========================================================================

    async def create_workflow(
        self,
        organization_id: UUID,
        name: str,
        stages: list[Stage | str],
        created_by: UUID,
        description: Optional[str] = None,
    ) -> Workflow:
        """
        Create a workflow.

        Stages may be given as Stage objects or bare names; bare names are
        ordered by position.
        """
        if not name or not name.strip():
            raise ValidationError("Workflow name is required", ["name"])
        if not stages:
            raise ValidationError("Workflow needs at least one stage", ["stages"])

        if any(isinstance(stage, str) and not stage.strip() for stage in stages):
            raise ValidationError("Stage names must not be empty", ["stages"])
        normalized = [
            stage if isinstance(stage, Stage) else Stage(name=stage.strip(), order=position)
            for position, stage in enumerate(stages)
        ]
        names = [stage.name for stage in normalized]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate stage names: {', '.join(duplicates)}", ["stages"])

        workflow = await self.workflows.create(
            organization_id=organization_id,
            name=name.strip(),
            stages=normalized,
            created_by=created_by,
            description=description,
        )
        await self._commit()
        logger.info(f"Created workflow {workflow.workflow_id} with {len(normalized)} stages")
        return workflow

    async def get_workflow(self, organization_id: UUID, workflow_id: UUID) -> Workflow:
        workflow = await self.workflows.get(organization_id, workflow_id)
        if not workflow:
            raise WorkflowNotFound(str(workflow_id))
        return workflow

    async def list_workflows(
        self, organization_id: UUID, limit: Optional[int] = None
    ) -> list[Workflow]:
        limit = min(limit or settings.default_list_limit, settings.max_list_limit)
        return await self.workflows.list(organization_id, limit=limit)

    # =========================================================================
    # Tasks
    # =========================================================================

    async def create_task(
        self,
        organization_id: UUID,
        workflow_id: UUID,
        title: str,
        created_by: UUID,
        description: Optional[str] = None,
        initial_stage: Optional[str] = None,
    ) -> Task:
        """Create a task in the workflow's first stage (or `initial_stage`)."""
        if not title or not title.strip():
            raise ValidationError("Task title is required", ["title"])

        workflow = await self.get_workflow(organization_id, workflow_id)
        stage = initial_stage or workflow.initial_stage()
        if stage is None:
            raise ValidationError(f"Workflow {workflow_id} has no stages", ["workflow_id"])
        if not workflow.has_stage(stage):
            raise ValidationError(
                f"Stage '{stage}' is not part of workflow {workflow_id}", ["initial_stage"]
            )

        try:
            task = await self.tasks.create(
                organization_id=organization_id,
                workflow_id=workflow_id,
                title=title.strip(),
                current_stage=stage,
                created_by=created_by,
                description=description,
            )
            event = await self.events.append(
                NewEvent(
                    event_type=EventType.TASK_CREATED,
                    organization_id=organization_id,
                    user_id=created_by,
                    task_id=task.task_id,
                    workflow_id=workflow_id,
                    to_stage=stage,
                    metadata={"title": task.title},
                )
            )
        except Exception as e:
            await self._rollback_on_error(e)
            raise
        await self._commit()

        metrics.inc_counter(MetricName.TASKS_CREATED)
        self._mirror(task, event)
        return task

    async def get_task(self, organization_id: UUID, task_id: UUID) -> Task:
        task = await self.tasks.get(organization_id, task_id)
        if not task:
            raise TaskNotFound(str(task_id))
        return task

    async def _lock_task(self, organization_id: UUID, task_id: UUID) -> Task:
        task = await self.tasks.get_for_update(organization_id, task_id)
        if not task:
            raise TaskNotFound(str(task_id))
        return task

    async def list_tasks(
        self,
        organization_id: UUID,
        workflow_id: Optional[UUID] = None,
        status: Optional[TaskStatus | str] = None,
        limit: Optional[int] = None,
    ) -> list[Task]:
        """List tasks with optional filtering, newest first."""
        task_status = None
        if status:
            try:
                task_status = TaskStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown task status: {status}", ["status"]) from None
        limit = min(limit or settings.default_list_limit, settings.max_list_limit)
        return await self.tasks.list(
            organization_id, workflow_id=workflow_id, status=task_status, limit=limit
        )

    async def change_stage(
        self,
        organization_id: UUID,
        task_id: UUID,
        to_stage: str,
        user_id: UUID,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        """Move a task to another stage of its workflow."""
        try:
            task = await self._lock_task(organization_id, task_id)
            if task.is_completed():
                raise InvalidStateTransition(task.status.value, "change the stage of")

            workflow = await self.get_workflow(organization_id, task.workflow_id)
            if not workflow.has_stage(to_stage):
                raise ValidationError(
                    f"Stage '{to_stage}' is not part of workflow {workflow.workflow_id}",
                    ["to_stage"],
                )

            event = await self.events.append(
                NewEvent(
                    event_type=EventType.STAGE_CHANGED,
                    organization_id=organization_id,
                    user_id=user_id,
                    task_id=task_id,
                    workflow_id=task.workflow_id,
                    from_stage=task.current_stage,
                    to_stage=to_stage,
                    metadata=metadata or {},
                )
            )
            task = await self.tasks.set_stage(organization_id, task_id, to_stage)
        except Exception as e:
            await self._rollback_on_error(e)
            raise
        await self._commit()

        self._mirror(task, event)
        return task

    async def update_task(
        self,
        organization_id: UUID,
        task_id: UUID,
        user_id: UUID,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        """Edit title and/or description; records a task_updated event."""
        if title is None and description is None:
            raise ValidationError("Nothing to update", ["title", "description"])
        if title is not None and not title.strip():
            raise ValidationError("Task title must not be empty", ["title"])

        task = await self.get_task(organization_id, task_id)
        changed = [
            name
            for name, value in (("title", title), ("description", description))
            if value is not None
        ]

        try:
            event = await self.events.append(
                NewEvent(
                    event_type=EventType.TASK_UPDATED,
                    organization_id=organization_id,
                    user_id=user_id,
                    task_id=task_id,
                    workflow_id=task.workflow_id,
                    metadata={"fields": changed},
                )
            )
            task = await self.tasks.update_fields(
                organization_id,
                task_id,
                title=title.strip() if title is not None else None,
                description=description,
            )
        except Exception as e:
            await self._rollback_on_error(e)
            raise
        await self._commit()

        self._mirror(task, event)
        return task

    async def complete_task(self, organization_id: UUID, task_id: UUID, user_id: UUID) -> Task:
        """Complete a task in its current stage."""
        try:
            task = await self._lock_task(organization_id, task_id)
            if task.is_completed():
                raise InvalidStateTransition(task.status.value, "complete")

            event = await self.events.append(
                NewEvent(
                    event_type=EventType.TASK_COMPLETED,
                    organization_id=organization_id,
                    user_id=user_id,
                    task_id=task_id,
                    workflow_id=task.workflow_id,
                    from_stage=task.current_stage,
                    to_stage=task.current_stage,
                )
            )
            task = await self.tasks.mark_completed(
                organization_id, task_id, completed_at=event.timestamp
            )
        except Exception as e:
            await self._rollback_on_error(e)
            raise
        await self._commit()

        metrics.inc_counter(MetricName.TASKS_COMPLETED)
        self._mirror(task, event)
        return task

    async def task_history(self, organization_id: UUID, task_id: UUID) -> list[Event]:
        """All events of one task, oldest first."""
        await self.get_task(organization_id, task_id)
        return await self.events.list_for_task(organization_id, task_id)

    # =========================================================================
    # Events
    # =========================================================================

    async def append_event(self, new_event: NewEvent | dict[str, Any]) -> Event:
        """Append a raw event without touching any task record."""
        try:
            event = await self.events.append(new_event)
        except Exception as e:
            await self._rollback_on_error(e)
            raise
        await self._commit()
        self._mirror(None, event)
        return event

    def iter_events(
        self,
        organization_id: UUID,
        filters: Optional[EventFilters] = None,
        options: Optional[EventQueryOptions] = None,
    ) -> AsyncIterator[Event]:
        return self.events.query(organization_id, filters, options)

    async def query_events(
        self,
        organization_id: UUID,
        filters: Optional[EventFilters] = None,
        options: Optional[EventQueryOptions] = None,
    ) -> list[Event]:
        options = options or EventQueryOptions()
        if options.limit is None:
            options = options.model_copy(update={"limit": settings.max_list_limit})
        return await self.events.list(organization_id, filters, options)

    # =========================================================================
    # Analytics
    # =========================================================================

    async def stage_duration_report(
        self, organization_id: UUID, workflow_id: UUID
    ) -> StageDurationReport:
        events = await self.events.list_for_workflow(
            organization_id, workflow_id, event_types=EventType.transition_types()
        )
        return reconstruct_stage_durations(events)

    async def compute_stage_averages(
        self, organization_id: UUID, workflow_id: UUID
    ) -> dict[str, StageAverage]:
        """Average dwell hours per stage for one workflow."""
        report = await self.stage_duration_report(organization_id, workflow_id)
        return report.averages

    async def detect_bottlenecks(
        self, organization_id: UUID, workflow_id: UUID
    ) -> list[Bottleneck]:
        """Stages ranked slowest first."""
        return rank_bottlenecks(await self.compute_stage_averages(organization_id, workflow_id))

    async def get_dashboard_stats(
        self, organization_id: UUID, now: Optional[datetime] = None
    ) -> DashboardStats:
        return await self.dashboard.get_dashboard_stats(organization_id, now=now)

    async def get_completion_timeline(
        self,
        organization_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: GroupBy | str = GroupBy.DAY,
    ) -> list[TimelineBucket]:
        return await self.dashboard.get_completion_timeline(organization_id, start, end, group_by)

    # =========================================================================
    # Search
    # =========================================================================

    def _require_synchronizer(self) -> IndexSynchronizer:
        if self.synchronizer is None:
            raise IndexUnavailableError()
        return self.synchronizer

    async def search_tasks(
        self, organization_id: UUID, text: str, limit: Optional[int] = None
    ) -> TaskSearchResult:
        """
        Full-text task search.

        Falls back to a substring match on the primary store, flagged
        `degraded`, when the index cannot answer.
        """
        if not text or not text.strip():
            raise ValidationError("Search text is required", ["q"])
        text = text.strip()
        limit = min(limit or settings.default_list_limit, settings.max_list_limit)

        if self.synchronizer is not None:
            try:
                hits = await self.synchronizer.search_tasks(organization_id, text, limit=limit)
                return TaskSearchResult(hits=hits)
            except (IndexUnavailableError, IndexRequestError) as e:
                logger.warning(f"Task search falling back to primary store: {e}")

        metrics.inc_counter(MetricName.SEARCH_TASKS_DEGRADED)
        tasks = await self.tasks.search_substring(organization_id, text, limit=limit)
        return TaskSearchResult(hits=[TaskSearchHit.from_task(t) for t in tasks], degraded=True)

    async def search_events(
        self, organization_id: UUID, filters: Optional[EventSearchFilters] = None
    ) -> list[Event]:
        return await self._require_synchronizer().search_events(organization_id, filters)

    async def aggregate_events(
        self,
        organization_id: UUID,
        workflow_id: Optional[UUID] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EventAggregations:
        if start and end and ensure_utc(start) > ensure_utc(end):
            raise ValidationError("start must not be after end", ["start", "end"])
        return await self._require_synchronizer().aggregate(organization_id, workflow_id, start, end)
