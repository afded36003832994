"""REST API router."""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flowtrack import __version__
from flowtrack.api.deps import (
    get_engine,
    get_organization_id,
    get_synchronizer,
    get_user_id,
    verify_api_key,
)
from flowtrack.api.schemas import (
    AppendEventRequest,
    BottlenecksResponse,
    ChangeStageRequest,
    CreateTaskRequest,
    CreateWorkflowRequest,
    HealthResponse,
    ListEventsResponse,
    ListTasksResponse,
    ListWorkflowsResponse,
    MetricsResponse,
    StageDurationsResponse,
    TaskHistoryResponse,
    TimelineResponse,
    UpdateTaskRequest,
)
from flowtrack.engine import (
    FlowTrackEngine,
    FlowTrackError,
    IndexRequestError,
    IndexUnavailableError,
    NotFoundError,
    ValidationError,
)
from flowtrack.models import (
    DashboardStats,
    Event,
    EventAggregations,
    EventFilters,
    EventQueryOptions,
    EventSearchFilters,
    EventType,
    NewEvent,
    SortOrder,
    Stage,
    Task,
    TaskSearchResult,
    Workflow,
)
from flowtrack.observability.metrics import metrics
from flowtrack.search.synchronizer import IndexSynchronizer
from flowtrack.utils.time import utc_now

logger = logging.getLogger("flowtrack.api")

router = APIRouter(prefix="/v1", dependencies=[Depends(verify_api_key)])


def _http_error(e: FlowTrackError) -> HTTPException:
    """Map a FlowTrack error onto its HTTP status."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, IndexUnavailableError):
        return HTTPException(status_code=503, detail=e.message)
    if isinstance(e, IndexRequestError):
        return HTTPException(status_code=502, detail=e.message)
    logger.error(f"Unmapped FlowTrack error {e.code}: {e.message}")
    return HTTPException(status_code=500, detail=e.message)


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    engine: FlowTrackEngine = Depends(get_engine),
    synchronizer: Optional[IndexSynchronizer] = Depends(get_synchronizer),
):
    """Health check endpoint."""
    try:
        await engine.session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database = "unavailable"

    if synchronizer is None or not synchronizer.client.configured:
        search_index = "disabled"
    elif synchronizer.client.available:
        search_index = "connected"
    else:
        search_index = "unavailable"

    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        database=database,
        search_index=search_index,
        mirror_pending=synchronizer.pending if synchronizer else 0,
        mirror_dead_letters=len(synchronizer.dead_letters) if synchronizer else 0,
    )


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics():
    """In-process counters, gauges and histograms."""
    return MetricsResponse(generated_at=utc_now(), metrics=metrics.snapshot())


# ============================================================================
# Workflows
# ============================================================================


@router.post("/workflows", response_model=Workflow, status_code=201)
async def create_workflow(
    request: CreateWorkflowRequest,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Create a workflow with ordered stages."""
    stages = [
        Stage(name=stage.name, order=stage.order if stage.order is not None else position)
        for position, stage in enumerate(request.stages)
    ]
    try:
        return await engine.create_workflow(
            organization_id=organization_id,
            name=request.name,
            stages=stages,
            created_by=user_id,
            description=request.description,
        )
    except FlowTrackError as e:
        raise _http_error(e)


@router.get("/workflows", response_model=ListWorkflowsResponse)
async def list_workflows(
    limit: Optional[int] = Query(None, ge=1),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    workflows = await engine.list_workflows(organization_id, limit=limit)
    return ListWorkflowsResponse(workflows=workflows)


@router.get("/workflows/{workflow_id}", response_model=Workflow)
async def get_workflow(
    workflow_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    try:
        return await engine.get_workflow(organization_id, workflow_id)
    except FlowTrackError as e:
        raise _http_error(e)


# ============================================================================
# Tasks
# ============================================================================


@router.post("/tasks", response_model=Task, status_code=201)
async def create_task(
    request: CreateTaskRequest,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Create a task; records a task_created event."""
    try:
        return await engine.create_task(
            organization_id=organization_id,
            workflow_id=request.workflow_id,
            title=request.title,
            created_by=user_id,
            description=request.description,
            initial_stage=request.initial_stage,
        )
    except FlowTrackError as e:
        raise _http_error(e)


@router.get("/tasks", response_model=ListTasksResponse)
async def list_tasks(
    workflow_id: Optional[UUID] = Query(None),
    status: Optional[str] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """List tasks with optional filtering."""
    try:
        tasks = await engine.list_tasks(
            organization_id, workflow_id=workflow_id, status=status, limit=limit
        )
    except FlowTrackError as e:
        raise _http_error(e)
    return ListTasksResponse(tasks=tasks)


@router.get("/tasks/{task_id}", response_model=Task)
async def get_task(
    task_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Get a task by ID."""
    try:
        return await engine.get_task(organization_id, task_id)
    except FlowTrackError as e:
        raise _http_error(e)


@router.patch("/tasks/{task_id}", response_model=Task)
async def update_task(
    task_id: UUID,
    request: UpdateTaskRequest,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Edit title/description; records a task_updated event."""
    try:
        return await engine.update_task(
            organization_id,
            task_id,
            user_id,
            title=request.title,
            description=request.description,
        )
    except FlowTrackError as e:
        raise _http_error(e)


@router.post("/tasks/{task_id}/stage", response_model=Task)
async def change_stage(
    task_id: UUID,
    request: ChangeStageRequest,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Move a task to another stage; records a stage_changed event."""
    try:
        return await engine.change_stage(
            organization_id, task_id, request.to_stage, user_id, metadata=request.metadata
        )
    except FlowTrackError as e:
        raise _http_error(e)


@router.post("/tasks/{task_id}/complete", response_model=Task)
async def complete_task(
    task_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Complete a task; records a task_completed event."""
    try:
        return await engine.complete_task(organization_id, task_id, user_id)
    except FlowTrackError as e:
        raise _http_error(e)


@router.get("/tasks/{task_id}/history", response_model=TaskHistoryResponse)
async def task_history(
    task_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Every event of one task, oldest first."""
    try:
        events = await engine.task_history(organization_id, task_id)
    except FlowTrackError as e:
        raise _http_error(e)
    return TaskHistoryResponse(task_id=task_id, events=events)


# ============================================================================
# Events
# ============================================================================


@router.get("/events", response_model=ListEventsResponse)
async def query_events(
    workflow_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    task_id: Optional[UUID] = Query(None),
    event_type: Optional[EventType] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    order: SortOrder = Query(SortOrder.DESC),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Query the event log, newest first by default."""
    filters = EventFilters(
        workflow_id=workflow_id, user_id=user_id, task_id=task_id, event_type=event_type
    )
    options = EventQueryOptions(start=start, end=end, limit=limit, order=order)
    try:
        events = await engine.query_events(organization_id, filters, options)
    except FlowTrackError as e:
        raise _http_error(e)
    return ListEventsResponse(events=events)


@router.post("/events", response_model=Event, status_code=201)
async def append_event(
    request: AppendEventRequest,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
    user_id: UUID = Depends(get_user_id),
):
    """Append a raw event to the log."""
    new_event = NewEvent(
        organization_id=organization_id,
        user_id=user_id,
        **request.model_dump(),
    )
    try:
        return await engine.append_event(new_event)
    except FlowTrackError as e:
        raise _http_error(e)


# ============================================================================
# Analytics
# ============================================================================


@router.get("/analytics/dashboard", response_model=DashboardStats)
async def dashboard_stats(
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    return await engine.get_dashboard_stats(organization_id)


@router.get(
    "/analytics/workflows/{workflow_id}/stage-durations",
    response_model=StageDurationsResponse,
)
async def stage_durations(
    workflow_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Average hours spent in each stage of a workflow."""
    report = await engine.stage_duration_report(organization_id, workflow_id)
    return StageDurationsResponse(
        workflow_id=workflow_id,
        stages=report.averages,
        skipped_events=len(report.skipped),
        clamped_samples=report.clamped,
    )


@router.get(
    "/analytics/workflows/{workflow_id}/bottlenecks",
    response_model=BottlenecksResponse,
)
async def bottlenecks(
    workflow_id: UUID,
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Stages ranked by average dwell time, slowest first."""
    ranked = await engine.detect_bottlenecks(organization_id, workflow_id)
    return BottlenecksResponse(workflow_id=workflow_id, bottlenecks=ranked)


@router.get("/analytics/completion-timeline", response_model=TimelineResponse)
async def completion_timeline(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    group_by: str = Query("day"),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Task completions per day or ISO week."""
    try:
        buckets = await engine.get_completion_timeline(organization_id, start, end, group_by)
    except FlowTrackError as e:
        raise _http_error(e)
    return TimelineResponse(group_by=group_by, buckets=buckets)


# ============================================================================
# Search
# ============================================================================


@router.get("/search/tasks", response_model=TaskSearchResult)
async def search_tasks(
    q: str = Query(..., description="Free text matched against title and description"),
    limit: Optional[int] = Query(None, ge=1),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Full-text task search; `degraded` is set when served from the primary store."""
    try:
        return await engine.search_tasks(organization_id, q, limit=limit)
    except FlowTrackError as e:
        raise _http_error(e)


@router.get("/search/events", response_model=ListEventsResponse)
async def search_events(
    event_type: Optional[EventType] = Query(None),
    workflow_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    task_id: Optional[UUID] = Query(None),
    from_stage: Optional[str] = Query(None),
    to_stage: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=10000),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Exact-match event search served by the index."""
    filters = EventSearchFilters(
        event_type=event_type,
        workflow_id=workflow_id,
        user_id=user_id,
        task_id=task_id,
        from_stage=from_stage,
        to_stage=to_stage,
        start=start,
        end=end,
        limit=limit,
    )
    try:
        events = await engine.search_events(organization_id, filters)
    except FlowTrackError as e:
        raise _http_error(e)
    return ListEventsResponse(events=events)


@router.get("/search/aggregations", response_model=EventAggregations)
async def event_aggregations(
    workflow_id: Optional[UUID] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    engine: FlowTrackEngine = Depends(get_engine),
    organization_id: UUID = Depends(get_organization_id),
):
    """Event type, stage and daily counts computed by the index."""
    try:
        return await engine.aggregate_events(organization_id, workflow_id, start, end)
    except FlowTrackError as e:
        raise _http_error(e)
