"""
Index mirroring (retry, dead-letter, skip) and index queries.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from flowtrack.config import Settings
from flowtrack.errors import IndexRequestError, IndexUnavailableError
from flowtrack.models import Event, EventSearchFilters, EventType, Task, TaskStatus
from flowtrack.observability.metrics import metrics
from flowtrack.search import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    IndexSynchronizer,
    SearchIndexClient,
)
from flowtrack.search.synchronizer import MirrorAction

INDEX_URL = "http://index.test:9200"
NOW = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)


def make_task(org_id, title="Fix login bug", **overrides) -> Task:
    data = dict(
        task_id=uuid4(),
        organization_id=org_id,
        workflow_id=uuid4(),
        title=title,
        description="Users cannot log in with SSO",
        current_stage="Backlog",
        status=TaskStatus.ACTIVE,
        created_by=uuid4(),
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return Task(**data)


def make_event(org_id, **overrides) -> Event:
    data = dict(
        event_id=uuid4(),
        event_type=EventType.STAGE_CHANGED,
        organization_id=org_id,
        user_id=uuid4(),
        task_id=uuid4(),
        workflow_id=uuid4(),
        from_stage="Backlog",
        to_stage="Doing",
        timestamp=NOW,
        metadata={"note": "moved"},
    )
    data.update(overrides)
    return Event(**data)


# ============================================================================
# Client bootstrap
# ============================================================================


@pytest.mark.asyncio
async def test_start_creates_missing_indices(fake_index, index_client):
    assert set(fake_index.indices) == {"flowtrack_tasks", "flowtrack_events"}
    mappings = fake_index.indices["flowtrack_events"]["mappings"]["properties"]
    assert mappings["to_stage"] == {"type": "keyword"}
    assert mappings["metadata"]["enabled"] is False
    assert fake_index.indices["flowtrack_tasks"]["mappings"]["properties"]["title"] == {"type": "text"}


@pytest.mark.asyncio
async def test_start_keeps_existing_indices(fake_index):
    fake_index.indices["flowtrack_tasks"] = {"mappings": {"custom": True}}
    client = SearchIndexClient(INDEX_URL, transport=fake_index.transport())

    assert await client.start()
    await client.close()

    assert fake_index.indices["flowtrack_tasks"] == {"mappings": {"custom": True}}


@pytest.mark.asyncio
async def test_unreachable_index_at_startup_leaves_client_unavailable(fake_index):
    fake_index.reachable = False
    client = SearchIndexClient(INDEX_URL, transport=fake_index.transport())

    assert await client.start() is False
    assert client.configured
    assert not client.available


@pytest.mark.asyncio
async def test_api_key_header_is_sent(fake_index):
    client = SearchIndexClient(INDEX_URL, api_key="secret-key", transport=fake_index.transport())
    await client.start()
    await client.close()

    assert fake_index.requests[0].headers["Authorization"] == "ApiKey secret-key"


def test_from_settings_uses_prefix_and_breaker(monkeypatch):
    monkeypatch.setenv("ELASTICSEARCH_URL", "http://es.local:9200/")
    monkeypatch.delenv("FLOWTRACK_ELASTICSEARCH_URL", raising=False)
    settings = Settings(index_prefix="acme", index_request_timeout_ms=1500)

    client = SearchIndexClient.from_settings(settings)

    assert client.base_url == "http://es.local:9200"
    assert client.task_index == "acme_tasks"
    assert client.event_index == "acme_events"
    assert client.circuit_breaker is not None


# ============================================================================
# Mirroring
# ============================================================================


@pytest.mark.asyncio
async def test_mirror_task_and_event(fake_index, synchronizer, org_id):
    task = make_task(org_id)
    event = make_event(org_id, task_id=task.task_id)

    synchronizer.mirror_task(task)
    synchronizer.mirror_event(event)
    await synchronizer.drain()

    task_doc = fake_index.documents[("flowtrack_tasks", str(task.task_id))]
    event_doc = fake_index.documents[("flowtrack_events", str(event.event_id))]
    assert task_doc["title"] == "Fix login bug"
    assert task_doc["organization_id"] == str(org_id)
    assert event_doc["to_stage"] == "Doing"
    assert event_doc["metadata"] == {"note": "moved"}
    assert metrics.counter_value("index.mirror.succeeded") == 2
    assert not synchronizer.dead_letters


@pytest.mark.asyncio
async def test_unmirror_task_deletes_document(fake_index, synchronizer, org_id):
    task = make_task(org_id)
    synchronizer.mirror_task(task)
    synchronizer.unmirror_task(task.task_id)
    synchronizer.unmirror_task(uuid4())
    await synchronizer.drain()

    assert ("flowtrack_tasks", str(task.task_id)) not in fake_index.documents
    assert not synchronizer.dead_letters


@pytest.mark.asyncio
async def test_transient_failure_is_retried(fake_index, synchronizer, org_id):
    fake_index.failing_writes = 2
    task = make_task(org_id)

    synchronizer.mirror_task(task)
    await synchronizer.drain()

    assert ("flowtrack_tasks", str(task.task_id)) in fake_index.documents
    assert len(fake_index.document_requests()) == 3
    assert metrics.counter_value("index.mirror.attempt_failed") == 2
    assert not synchronizer.dead_letters


@pytest.mark.asyncio
async def test_exhausted_retries_dead_letter(fake_index, synchronizer, org_id):
    fake_index.failing_writes = 10
    task = make_task(org_id)

    synchronizer.mirror_task(task)
    await synchronizer.drain()

    assert len(fake_index.document_requests()) == 3
    assert len(synchronizer.dead_letters) == 1
    dead = synchronizer.dead_letters[0]
    assert dead.operation.action == MirrorAction.INDEX
    assert dead.operation.doc_id == str(task.task_id)
    assert dead.operation.attempts == 3
    assert "503" in dead.error
    assert metrics.counter_value("index.mirror.dead_letter") == 1


@pytest.mark.asyncio
async def test_rejected_document_dead_letters(fake_index, synchronizer, org_id):
    fake_index.failing_writes = 10
    fake_index.write_status = 400

    synchronizer.mirror_event(make_event(org_id))
    await synchronizer.drain()

    assert len(synchronizer.dead_letters) == 1
    assert "400" in synchronizer.dead_letters[0].error


@pytest.mark.asyncio
async def test_slow_index_times_out_and_dead_letters(fake_index, index_client, org_id):
    fake_index.write_delay = 1.0
    sync = IndexSynchronizer(
        index_client, max_retries=1, retry_backoff_seconds=0.0, operation_timeout_seconds=0.05
    )
    await sync.start()
    try:
        sync.mirror_task(make_task(org_id))
        await asyncio.wait_for(sync.drain(), timeout=2.0)
    finally:
        await sync.stop(timeout=1.0)

    assert len(sync.dead_letters) == 1
    assert "timed out" in sync.dead_letters[0].error
    assert sync.dead_letters[0].operation.attempts == 2


@pytest.mark.asyncio
async def test_timeouts_open_the_breaker_and_it_recovers(fake_index, org_id):
    now = [NOW]
    breaker = CircuitBreaker(
        "search_index",
        CircuitBreakerConfig(
            failure_threshold=2, timeout_seconds=30, half_open_max_calls=1, success_threshold=1
        ),
        clock=lambda: now[0],
    )
    client = SearchIndexClient(INDEX_URL, transport=fake_index.transport(), circuit_breaker=breaker)
    assert await client.start()
    sync = IndexSynchronizer(
        client, max_retries=1, retry_backoff_seconds=0.0, operation_timeout_seconds=0.05
    )
    await sync.start()
    recovered = make_task(org_id, title="Back online")
    try:
        fake_index.write_delay = 1.0
        sync.mirror_task(make_task(org_id))
        await asyncio.wait_for(sync.drain(), timeout=2.0)

        assert breaker.state == CircuitState.OPEN
        assert "timed out" in sync.dead_letters[-1].error

        sync.mirror_task(make_task(org_id))
        await asyncio.wait_for(sync.drain(), timeout=2.0)

        assert "circuit open" in sync.dead_letters[-1].error

        fake_index.write_delay = 0.0
        now[0] = NOW + timedelta(seconds=31)
        sync.mirror_task(recovered)
        await asyncio.wait_for(sync.drain(), timeout=2.0)
    finally:
        await sync.stop(timeout=1.0)
        await client.close()

    assert breaker.state == CircuitState.CLOSED
    assert ("flowtrack_tasks", str(recovered.task_id)) in fake_index.documents
    assert len(sync.dead_letters) == 2


@pytest.mark.asyncio
async def test_full_queue_dead_letters_immediately(fake_index, index_client, org_id):
    fake_index.write_delay = 0.2
    sync = IndexSynchronizer(index_client, queue_size=1, operation_timeout_seconds=1.0)
    await sync.start()
    try:
        sync.mirror_task(make_task(org_id))
        await asyncio.sleep(0)  # worker takes the first operation
        sync.mirror_task(make_task(org_id))
        sync.mirror_task(make_task(org_id))
        assert len(sync.dead_letters) == 1
        assert sync.dead_letters[0].error == "mirror queue full"
    finally:
        await sync.stop(timeout=2.0)


@pytest.mark.asyncio
async def test_unconfigured_index_skips_mirroring(org_id):
    client = SearchIndexClient(None)
    assert await client.start() is False
    sync = IndexSynchronizer(client)
    await sync.start()

    sync.mirror_task(make_task(org_id))
    sync.mirror_event(make_event(org_id))
    await sync.stop()

    assert metrics.counter_value("index.mirror.skipped") == 2
    assert not sync.dead_letters


@pytest.mark.asyncio
async def test_mirror_without_worker_dead_letters(index_client, org_id):
    sync = IndexSynchronizer(index_client)

    sync.mirror_task(make_task(org_id))

    assert sync.dead_letters[0].error == "mirror worker not running"


@pytest.mark.asyncio
async def test_stop_drains_pending_operations(fake_index, index_client, org_id):
    sync = IndexSynchronizer(index_client)
    await sync.start()
    tasks = [make_task(org_id, title=f"Task {i}") for i in range(5)]
    for task in tasks:
        sync.mirror_task(task)

    await sync.stop(timeout=2.0)

    assert not sync.running
    assert all(("flowtrack_tasks", str(t.task_id)) in fake_index.documents for t in tasks)


# ============================================================================
# Queries
# ============================================================================


@pytest.mark.asyncio
async def test_search_tasks_builds_fuzzy_tenant_scoped_query(fake_index, synchronizer, org_id):
    task = make_task(org_id)
    fake_index.search_response = {
        "hits": {
            "hits": [
                {
                    "_score": 3.2,
                    "_source": task.model_dump(mode="json"),
                    "highlight": {"title": ["Fix <em>login</em> bug"]},
                }
            ]
        }
    }

    hits = await synchronizer.search_tasks(org_id, "logn", limit=10)

    index, body = fake_index.searches[-1]
    assert index == "flowtrack_tasks"
    assert body["size"] == 10
    assert body["query"]["bool"]["filter"] == [{"term": {"organization_id": str(org_id)}}]
    match = body["query"]["bool"]["must"][0]["multi_match"]
    assert match["query"] == "logn"
    assert match["fields"] == ["title^2", "description"]
    assert match["fuzziness"] == "AUTO"
    assert set(body["highlight"]["fields"]) == {"title", "description"}

    assert len(hits) == 1
    assert hits[0].task_id == task.task_id
    assert hits[0].score == 3.2
    assert hits[0].highlights == {"title": ["Fix <em>login</em> bug"]}


@pytest.mark.asyncio
async def test_search_events_filters_and_sorts(fake_index, synchronizer, org_id):
    event = make_event(org_id)
    fake_index.search_response = {"hits": {"hits": [{"_source": event.model_dump(mode="json")}]}}
    workflow_id = uuid4()
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)

    results = await synchronizer.search_events(
        org_id,
        EventSearchFilters(
            event_type=EventType.STAGE_CHANGED,
            workflow_id=workflow_id,
            to_stage="Doing",
            start=start,
        ),
    )

    index, body = fake_index.searches[-1]
    assert index == "flowtrack_events"
    clauses = body["query"]["bool"]["filter"]
    assert {"term": {"organization_id": str(org_id)}} in clauses
    assert {"term": {"event_type": "stage_changed"}} in clauses
    assert {"term": {"workflow_id": str(workflow_id)}} in clauses
    assert {"term": {"to_stage": "Doing"}} in clauses
    assert {"range": {"timestamp": {"gte": start.isoformat()}}} in clauses
    assert body["sort"] == [{"timestamp": {"order": "desc"}}]
    assert body["size"] == 100
    assert results == [event]


@pytest.mark.asyncio
async def test_aggregate_parses_buckets(fake_index, synchronizer, org_id):
    fake_index.search_response = {
        "hits": {"hits": []},
        "aggregations": {
            "by_event_type": {"buckets": [{"key": "stage_changed", "doc_count": 7}]},
            "by_stage": {"buckets": [{"key": "Doing", "doc_count": 4}, {"key": "Done", "doc_count": 3}]},
            "events_over_time": {
                "buckets": [{"key": 1711929600000, "key_as_string": "2024-04-01", "doc_count": 7}]
            },
        },
    }

    result = await synchronizer.aggregate(org_id)

    _, body = fake_index.searches[-1]
    assert body["size"] == 0
    assert body["aggs"]["by_stage"]["terms"]["field"] == "to_stage"
    assert body["aggs"]["events_over_time"]["date_histogram"]["calendar_interval"] == "day"
    assert [(b.key, b.count) for b in result.event_type_counts] == [("stage_changed", 7)]
    assert [(b.key, b.count) for b in result.stage_counts] == [("Doing", 4), ("Done", 3)]
    assert [(b.key, b.count) for b in result.daily_timeline] == [("2024-04-01", 7)]


@pytest.mark.asyncio
async def test_queries_fail_fast_when_unconfigured(org_id):
    sync = IndexSynchronizer(SearchIndexClient(None))

    with pytest.raises(IndexUnavailableError):
        await sync.search_tasks(org_id, "anything")
    with pytest.raises(IndexUnavailableError):
        await sync.search_events(org_id)
    with pytest.raises(IndexUnavailableError):
        await sync.aggregate(org_id)


@pytest.mark.asyncio
async def test_search_error_status_maps_to_request_error(fake_index, synchronizer, org_id):
    fake_index.search_status = 400

    with pytest.raises(IndexRequestError) as exc_info:
        await synchronizer.search_tasks(org_id, "bug")

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_open_circuit_fails_fast(fake_index, org_id):
    breaker = CircuitBreaker("search_index", CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60))
    client = SearchIndexClient(INDEX_URL, transport=fake_index.transport(), circuit_breaker=breaker)
    assert await client.start()
    sync = IndexSynchronizer(client)

    fake_index.search_status = 503
    for _ in range(2):
        with pytest.raises(IndexUnavailableError):
            await sync.search_tasks(org_id, "bug")

    searches_before = len(fake_index.requests)
    with pytest.raises(IndexUnavailableError) as exc_info:
        await sync.search_tasks(org_id, "bug")

    assert "circuit open" in exc_info.value.reason
    assert len(fake_index.requests) == searches_before
    await client.close()


@pytest.mark.asyncio
async def test_transport_error_maps_to_unavailable(fake_index, index_client, org_id):
    fake_index.reachable = False
    sync = IndexSynchronizer(index_client)

    with pytest.raises(IndexUnavailableError):
        await sync.search_events(org_id)
    assert metrics.counter_value("index.request.failed") == 1
