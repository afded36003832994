"""FlowTrack data models."""

from flowtrack.models.analytics import (
    Bottleneck,
    DashboardStats,
    StageAverage,
    TimelineBucket,
)
from flowtrack.models.enums import EventType, GroupBy, SortOrder, TaskStatus
from flowtrack.models.event import Event, EventFilters, EventQueryOptions, NewEvent
from flowtrack.models.search import (
    AggregationBucket,
    EventAggregations,
    EventSearchFilters,
    TaskSearchHit,
    TaskSearchResult,
)
from flowtrack.models.task import Task
from flowtrack.models.workflow import Stage, Workflow

__all__ = [
    "AggregationBucket",
    "Bottleneck",
    "DashboardStats",
    "Event",
    "EventAggregations",
    "EventFilters",
    "EventQueryOptions",
    "EventSearchFilters",
    "EventType",
    "GroupBy",
    "NewEvent",
    "SortOrder",
    "Stage",
    "StageAverage",
    "Task",
    "TaskSearchHit",
    "TaskSearchResult",
    "TaskStatus",
    "TimelineBucket",
    "Workflow",
]
