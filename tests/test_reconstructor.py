"""
Stage dwell-time reconstruction from event logs.
"""

import random
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from flowtrack.analytics import (
    compute_stage_averages,
    dwell_hours,
    rank_bottlenecks,
    reconstruct_stage_durations,
)
from flowtrack.analytics.reconstructor import _Accumulator
from flowtrack.models import Event, EventType
from flowtrack.observability.metrics import metrics

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
ORG = uuid4()
WORKFLOW = uuid4()
USER = uuid4()


def make_event(
    task_id: UUID,
    event_type: EventType,
    hours: float,
    from_stage=None,
    to_stage=None,
    event_id: UUID | None = None,
) -> Event:
    return Event(
        event_id=event_id or uuid4(),
        event_type=event_type,
        organization_id=ORG,
        user_id=USER,
        task_id=task_id,
        workflow_id=WORKFLOW,
        from_stage=from_stage,
        to_stage=to_stage,
        timestamp=T0 + timedelta(hours=hours),
    )


def created(task_id, hours, stage):
    return make_event(task_id, EventType.TASK_CREATED, hours, to_stage=stage)


def moved(task_id, hours, from_stage, to_stage):
    return make_event(task_id, EventType.STAGE_CHANGED, hours, from_stage, to_stage)


def completed(task_id, hours, stage):
    return make_event(task_id, EventType.TASK_COMPLETED, hours, stage, stage)


def test_single_task_worked_example():
    task = uuid4()
    events = [
        created(task, 0, "Backlog"),
        moved(task, 10, "Backlog", "In Progress"),
        completed(task, 34, "In Progress"),
    ]

    averages = compute_stage_averages(events)

    assert set(averages) == {"Backlog", "In Progress"}
    assert averages["Backlog"].average_hours == pytest.approx(10.0)
    assert averages["Backlog"].task_count == 1
    assert averages["In Progress"].average_hours == pytest.approx(24.0)
    assert averages["In Progress"].task_count == 1
    assert [b.stage for b in rank_bottlenecks(averages)] == ["In Progress", "Backlog"]


def test_averages_across_tasks():
    a, b = uuid4(), uuid4()
    events = [
        created(a, 0, "Todo"),
        moved(a, 2, "Todo", "Doing"),
        created(b, 1, "Todo"),
        moved(b, 7, "Todo", "Doing"),
        completed(b, 10, "Doing"),
    ]

    averages = compute_stage_averages(events)

    assert averages["Todo"].average_hours == pytest.approx(4.0)
    assert averages["Todo"].task_count == 2
    # task a is still in Doing and contributes nothing there
    assert averages["Doing"].task_count == 1
    assert averages["Doing"].average_hours == pytest.approx(3.0)


def test_never_left_initial_stage_contributes_only_at_completion():
    task = uuid4()

    open_report = reconstruct_stage_durations([created(task, 0, "Backlog")])
    done_report = reconstruct_stage_durations(
        [created(task, 0, "Backlog"), completed(task, 5, "Backlog")]
    )

    assert open_report.averages == {}
    assert done_report.averages["Backlog"].task_count == 1
    assert done_report.averages["Backlog"].average_hours == pytest.approx(5.0)


def test_revisited_stage_counts_each_visit():
    task = uuid4()
    events = [
        created(task, 0, "Build"),
        moved(task, 3, "Build", "Review"),
        moved(task, 4, "Review", "Build"),
        moved(task, 6, "Build", "Review"),
        completed(task, 7, "Review"),
    ]

    averages = compute_stage_averages(events)

    assert averages["Build"].task_count == 2
    assert averages["Build"].average_hours == pytest.approx(2.5)
    assert averages["Review"].task_count == 2
    assert averages["Review"].average_hours == pytest.approx(1.0)


def test_running_twice_gives_identical_output():
    events = _sample_history()

    first = reconstruct_stage_durations(events)
    second = reconstruct_stage_durations(events)

    assert first.averages == second.averages
    assert first.skipped == second.skipped


def test_input_order_does_not_matter():
    events = _sample_history()
    expected = compute_stage_averages(events)

    shuffled = list(events)
    random.Random(7).shuffle(shuffled)

    assert compute_stage_averages(shuffled) == expected
    assert compute_stage_averages(list(reversed(events))) == expected


def test_equal_timestamps_use_lifecycle_order():
    task = uuid4()
    # Completion listed first, all at the same instant as the move
    events = [
        completed(task, 4, "Review"),
        moved(task, 4, "Build", "Review"),
        created(task, 0, "Build"),
    ]

    report = reconstruct_stage_durations(events)

    assert report.skipped == []
    assert report.averages["Build"].average_hours == pytest.approx(4.0)
    assert report.averages["Review"].average_hours == pytest.approx(0.0)


def test_transition_without_entry_is_skipped_not_raised():
    task = uuid4()
    events = [
        created(task, 0, "Backlog"),
        moved(task, 2, "Renamed Stage", "Done"),
        completed(task, 3, "Done"),
    ]

    report = reconstruct_stage_durations(events)

    assert len(report.skipped) == 1
    skipped = report.skipped[0]
    assert skipped.task_id == task
    assert skipped.stage == "Renamed Stage"
    assert "Renamed Stage" not in report.averages
    assert report.averages["Done"].average_hours == pytest.approx(1.0)
    assert metrics.counter_value("analytics.events.skipped") == 1


def test_missing_creation_event_is_skipped():
    task = uuid4()

    report = reconstruct_stage_durations([moved(task, 1, "Backlog", "Doing"), completed(task, 2, "Doing")])

    assert [s.stage for s in report.skipped] == ["Backlog"]
    assert report.averages["Doing"].average_hours == pytest.approx(1.0)


def test_completion_in_unentered_stage_is_skipped():
    task = uuid4()

    report = reconstruct_stage_durations([created(task, 0, "Backlog"), completed(task, 1, "Elsewhere")])

    assert report.averages == {}
    assert [s.stage for s in report.skipped] == ["Elsewhere"]


def test_non_transition_events_are_ignored():
    task = uuid4()
    events = [
        created(task, 0, "Backlog"),
        make_event(task, EventType.TASK_UPDATED, 1),
        completed(task, 2, "Backlog"),
    ]

    report = reconstruct_stage_durations(events)

    assert report.skipped == []
    assert report.averages["Backlog"].average_hours == pytest.approx(2.0)


def test_dwell_hours_clamps_negative_durations():
    hours, clamped = dwell_hours(T0, T0 - timedelta(hours=3))
    assert hours == 0.0
    assert clamped is True

    hours, clamped = dwell_hours(T0, T0 + timedelta(minutes=90))
    assert hours == pytest.approx(1.5)
    assert clamped is False


def test_out_of_order_sample_is_clamped_and_counted():
    task = uuid4()
    acc = _Accumulator()
    leaving = moved(task, 1, "Build", "Review")

    acc.sample(leaving, "Build", entered_at=T0 + timedelta(hours=3))

    assert acc.report.clamped == 1
    assert acc.sum_hours["Build"] == 0.0
    assert acc.count["Build"] == 1
    assert metrics.counter_value("analytics.duration.clamped") == 1


def test_empty_input():
    report = reconstruct_stage_durations([])

    assert report.averages == {}
    assert report.skipped == []
    assert report.clamped == 0


def _sample_history() -> list[Event]:
    a, b, c = uuid4(), uuid4(), uuid4()
    return [
        created(a, 0, "Backlog"),
        moved(a, 10, "Backlog", "In Progress"),
        completed(a, 34, "In Progress"),
        created(b, 5, "Backlog"),
        moved(b, 6, "Backlog", "In Progress"),
        moved(b, 9, "In Progress", "Review"),
        created(c, 2, "Backlog"),
        moved(c, 3, "Ghost", "Review"),
    ]
