"""
Stage dwell-time reconstruction from the event log.

Durations are never stored; they are rebuilt on demand from event timestamps.
Events are ordered by (task_id, timestamp) with a lifecycle tie-break for
equal timestamps: task_created, then stage_changed, then task_completed, then
event_id. Insertion order is never consulted.

Transitions whose source stage has no recorded entry time (replayed out of
order, renamed stage, missing creation event) are skipped and reported, not
raised. Negative durations are clamped to zero and flagged.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from flowtrack.models import Event, EventType, StageAverage
from flowtrack.observability.metrics import MetricName, metrics

logger = logging.getLogger(__name__)

_LIFECYCLE_RANK = {
    EventType.TASK_CREATED: 0,
    EventType.STAGE_CHANGED: 1,
    EventType.TASK_COMPLETED: 2,
}


@dataclass(frozen=True)
class ComputationSkipped:
    """An event that could not contribute a duration sample."""

    event_id: UUID
    task_id: UUID
    stage: Optional[str]
    reason: str


@dataclass
class StageDurationReport:
    """Per-stage averages plus everything that was left out."""

    averages: dict[str, StageAverage] = field(default_factory=dict)
    skipped: list[ComputationSkipped] = field(default_factory=list)
    clamped: int = 0


def event_sort_key(event: Event) -> tuple[str, datetime, int, str]:
    return (
        str(event.task_id),
        event.timestamp,
        _LIFECYCLE_RANK.get(event.event_type, 3),
        str(event.event_id),
    )


def dwell_hours(entered_at: datetime, exited_at: datetime) -> tuple[float, bool]:
    """
    Hours between entering and leaving a stage.

    Returns (hours, clamped); hours is never negative.
    """
    hours = (exited_at - entered_at).total_seconds() / 3600.0
    if hours < 0:
        return 0.0, True
    return hours, False


class _Accumulator:
    def __init__(self) -> None:
        self.sum_hours: dict[str, float] = {}
        self.count: dict[str, int] = {}
        self.report = StageDurationReport()

    def sample(self, event: Event, stage: str, entered_at: datetime) -> None:
        # Sorted replay never exits before entering; the clamp only guards
        # samples fed in out of order
        hours, clamped = dwell_hours(entered_at, event.timestamp)
        if clamped:
            self.report.clamped += 1
            metrics.inc_counter(MetricName.ANALYTICS_DURATION_CLAMPED)
            logger.warning(
                f"Negative dwell time clamped to 0 for stage '{stage}' "
                f"(task {event.task_id}, event {event.event_id})"
            )
        self.sum_hours[stage] = self.sum_hours.get(stage, 0.0) + hours
        self.count[stage] = self.count.get(stage, 0) + 1

    def skip(self, event: Event, stage: Optional[str], reason: str) -> None:
        self.report.skipped.append(
            ComputationSkipped(
                event_id=event.event_id,
                task_id=event.task_id,
                stage=stage,
                reason=reason,
            )
        )
        metrics.inc_counter(MetricName.ANALYTICS_EVENTS_SKIPPED)
        logger.debug(f"Skipped event {event.event_id} for task {event.task_id}: {reason}")


def reconstruct_stage_durations(events: Iterable[Event]) -> StageDurationReport:
    """Rebuild per-stage average dwell time from a workflow's events."""
    acc = _Accumulator()
    relevant = [e for e in events if e.event_type in _LIFECYCLE_RANK]

    current_task: Optional[UUID] = None
    entries: dict[str, datetime] = {}

    for event in sorted(relevant, key=event_sort_key):
        if event.task_id != current_task:
            current_task = event.task_id
            entries = {}

        if event.event_type == EventType.TASK_CREATED:
            if event.to_stage:
                entries[event.to_stage] = event.timestamp
            else:
                acc.skip(event, None, "task_created without initial stage")

        elif event.event_type == EventType.STAGE_CHANGED:
            source = event.from_stage
            if source is None:
                acc.skip(event, None, "stage_changed without from_stage")
            elif source in entries:
                acc.sample(event, source, entries.pop(source))
            else:
                acc.skip(event, source, "no entry time recorded for from_stage")
            if event.to_stage:
                entries[event.to_stage] = event.timestamp

        else:
            final = event.to_stage
            if final and final in entries:
                acc.sample(event, final, entries.pop(final))
            else:
                acc.skip(event, final, "no entry time recorded for final stage")

    report = acc.report
    report.averages = {
        stage: StageAverage(
            average_hours=acc.sum_hours[stage] / acc.count[stage],
            task_count=acc.count[stage],
        )
        for stage in sorted(acc.count)
    }

    if report.skipped:
        logger.info(
            f"Stage reconstruction skipped {len(report.skipped)} of {len(relevant)} events"
        )
    return report


def compute_stage_averages(events: Iterable[Event]) -> dict[str, StageAverage]:
    """Mapping of stage name to average dwell hours and sample count."""
    return reconstruct_stage_durations(events).averages
