"""Index document shapes, mappings, and query bodies."""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from flowtrack.models import (
    AggregationBucket,
    Event,
    EventAggregations,
    EventSearchFilters,
    Task,
    TaskSearchHit,
)
from flowtrack.utils.time import ensure_utc


TASK_MAPPINGS: dict[str, Any] = {
    "properties": {
        "task_id": {"type": "keyword"},
        "organization_id": {"type": "keyword"},
        "workflow_id": {"type": "keyword"},
        "title": {"type": "text"},
        "description": {"type": "text"},
        "current_stage": {"type": "keyword"},
        "status": {"type": "keyword"},
        "created_at": {"type": "date"},
        "updated_at": {"type": "date"},
        "completed_at": {"type": "date"},
    }
}

EVENT_MAPPINGS: dict[str, Any] = {
    "properties": {
        "event_id": {"type": "keyword"},
        "event_type": {"type": "keyword"},
        "organization_id": {"type": "keyword"},
        "user_id": {"type": "keyword"},
        "task_id": {"type": "keyword"},
        "workflow_id": {"type": "keyword"},
        "from_stage": {"type": "keyword"},
        "to_stage": {"type": "keyword"},
        "timestamp": {"type": "date"},
        "metadata": {"type": "object", "enabled": False},
    }
}

TASK_SEARCH_FIELDS = ["title^2", "description"]
EVENT_FILTER_FIELDS = ("event_type", "workflow_id", "user_id", "task_id", "from_stage", "to_stage")


def task_document(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json")


def event_document(event: Event) -> dict[str, Any]:
    return event.model_dump(mode="json")


def _tenant_filter(organization_id: UUID) -> dict[str, Any]:
    return {"term": {"organization_id": str(organization_id)}}


def _time_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[dict[str, Any]]:
    if start is None and end is None:
        return None
    bounds: dict[str, str] = {}
    if start is not None:
        bounds["gte"] = ensure_utc(start).isoformat()
    if end is not None:
        bounds["lte"] = ensure_utc(end).isoformat()
    return {"range": {"timestamp": bounds}}


def task_search_query(organization_id: UUID, text: str, size: int = 50) -> dict[str, Any]:
    """Fuzzy multi-field match, title weighted above description."""
    return {
        "query": {
            "bool": {
                "filter": [_tenant_filter(organization_id)],
                "must": [
                    {
                        "multi_match": {
                            "query": text,
                            "fields": TASK_SEARCH_FIELDS,
                            "type": "best_fields",
                            "fuzziness": "AUTO",
                        }
                    }
                ],
            }
        },
        "highlight": {"fields": {"title": {}, "description": {}}},
        "size": size,
    }


def event_search_query(organization_id: UUID, filters: EventSearchFilters) -> dict[str, Any]:
    """Exact term filters plus optional time range, newest first."""
    clauses: list[dict[str, Any]] = [_tenant_filter(organization_id)]
    for name in EVENT_FILTER_FIELDS:
        value = getattr(filters, name)
        if value is not None:
            clauses.append({"term": {name: getattr(value, "value", str(value))}})

    time_range = _time_range(filters.start, filters.end)
    if time_range:
        clauses.append(time_range)

    return {
        "query": {"bool": {"filter": clauses}},
        "sort": [{"timestamp": {"order": "desc"}}],
        "size": filters.limit,
    }


def aggregation_query(
    organization_id: UUID,
    workflow_id: Optional[UUID] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict[str, Any]:
    clauses: list[dict[str, Any]] = [_tenant_filter(organization_id)]
    if workflow_id is not None:
        clauses.append({"term": {"workflow_id": str(workflow_id)}})
    time_range = _time_range(start, end)
    if time_range:
        clauses.append(time_range)

    return {
        "query": {"bool": {"filter": clauses}},
        "size": 0,
        "aggs": {
            "by_event_type": {"terms": {"field": "event_type", "size": 10}},
            "by_stage": {"terms": {"field": "to_stage", "size": 20}},
            "events_over_time": {
                "date_histogram": {
                    "field": "timestamp",
                    "calendar_interval": "day",
                    "format": "yyyy-MM-dd",
                }
            },
        },
    }


def _hits(response: dict[str, Any]) -> list[dict[str, Any]]:
    return response.get("hits", {}).get("hits", [])


def parse_task_hits(response: dict[str, Any]) -> list[TaskSearchHit]:
    results = []
    for hit in _hits(response):
        source = hit.get("_source", {})
        results.append(
            TaskSearchHit(
                task_id=source["task_id"],
                workflow_id=source["workflow_id"],
                title=source["title"],
                description=source.get("description"),
                current_stage=source["current_stage"],
                status=source["status"],
                score=hit.get("_score"),
                highlights=hit.get("highlight", {}),
            )
        )
    return results


def parse_event_hits(response: dict[str, Any]) -> list[Event]:
    return [Event.model_validate(hit["_source"]) for hit in _hits(response)]


def _buckets(aggregation: dict[str, Any]) -> list[AggregationBucket]:
    return [
        AggregationBucket(
            key=str(bucket.get("key_as_string", bucket["key"])),
            count=bucket["doc_count"],
        )
        for bucket in aggregation.get("buckets", [])
    ]


def parse_aggregations(response: dict[str, Any]) -> EventAggregations:
    aggregations = response.get("aggregations", {})
    return EventAggregations(
        event_type_counts=_buckets(aggregations.get("by_event_type", {})),
        stage_counts=_buckets(aggregations.get("by_stage", {})),
        daily_timeline=_buckets(aggregations.get("events_over_time", {})),
    )
