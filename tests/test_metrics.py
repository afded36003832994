"""
Metrics catalog and registry behavior.
"""

import pytest

from flowtrack.observability.metrics import MetricKind, MetricName, MetricsRegistry, labelled


def test_catalog_metrics_are_reported_before_first_use():
    snapshot = MetricsRegistry().snapshot()

    assert snapshot["counters"]["index.mirror.dead_letter"] == 0.0
    assert snapshot["gauges"]["index.mirror.pending"] == 0.0
    assert snapshot["histograms"]["index.request.duration_ms"]["count"] == 0
    assert snapshot["descriptions"]["analytics.duration.clamped"]


def test_every_catalog_entry_has_a_kind_and_description():
    for name in MetricName:
        assert isinstance(name.kind, MetricKind)
        assert name.description


def test_typed_and_string_names_share_one_series():
    registry = MetricsRegistry()

    registry.inc_counter(MetricName.TASKS_CREATED)
    registry.inc_counter("tasks.created", 2)

    assert registry.counter_value(MetricName.TASKS_CREATED) == 3
    assert registry.counter_value("tasks.created") == 3


def test_catalog_kind_is_enforced():
    registry = MetricsRegistry()

    with pytest.raises(ValueError):
        registry.set_gauge(MetricName.MIRROR_DEAD_LETTER, 1)
    with pytest.raises(ValueError):
        registry.inc_counter(MetricName.MIRROR_PENDING)


def test_labelled_series():
    registry = MetricsRegistry()

    registry.inc_counter(labelled(MetricName.EVENTS_APPENDED, "task_created"))

    assert registry.counter_value("events.appended.task_created") == 1
    assert registry.counter_value(MetricName.EVENTS_APPENDED) == 0


def test_reset_returns_catalog_to_zero():
    registry = MetricsRegistry()
    registry.inc_counter(MetricName.MIRROR_SKIPPED)
    registry.observe(MetricName.DB_QUERY_DURATION_MS, 4.0)
    registry.inc_counter("circuit.search_index.open")

    registry.reset()

    snapshot = registry.snapshot()
    assert snapshot["counters"]["index.mirror.skipped"] == 0.0
    assert snapshot["histograms"]["db.query.duration_ms"]["count"] == 0
    assert "circuit.search_index.open" not in snapshot["counters"]
