"""Dashboard counts and completion timelines."""

from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID

from flowtrack.db.repositories import EventRepository, TaskRepository
from flowtrack.errors import ValidationError
from flowtrack.models import DashboardStats, EventType, GroupBy, TaskStatus, TimelineBucket
from flowtrack.utils.time import ensure_utc, utc_now


def bucket_key(timestamp: datetime, group_by: GroupBy) -> str:
    """UTC calendar day (YYYY-MM-DD) or ISO week (YYYY-Www, ISO year)."""
    timestamp = ensure_utc(timestamp)
    if group_by == GroupBy.WEEK:
        iso_year, iso_week, _ = timestamp.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    return timestamp.strftime("%Y-%m-%d")


def bucket_completions(timestamps: Iterable[datetime], group_by: GroupBy) -> list[TimelineBucket]:
    """Count timestamps per bucket. Empty buckets are not emitted."""
    counts: dict[str, int] = {}
    for timestamp in timestamps:
        key = bucket_key(timestamp, group_by)
        counts[key] = counts.get(key, 0) + 1
    return [TimelineBucket(date=key, count=counts[key]) for key in sorted(counts)]


def _parse_group_by(group_by: GroupBy | str) -> GroupBy:
    try:
        return GroupBy(group_by)
    except ValueError:
        raise ValidationError(
            f"group_by must be one of: {', '.join(g.value for g in GroupBy)}", ["group_by"]
        ) from None


class DashboardAggregator:
    """
    Task counts reflect current state; the rolling windows count
    task_created events, so completing a task does not change them.
    """

    def __init__(self, tasks: TaskRepository, events: EventRepository):
        self.tasks = tasks
        self.events = events

    async def get_dashboard_stats(
        self,
        organization_id: UUID,
        now: Optional[datetime] = None,
    ) -> DashboardStats:
        now = ensure_utc(now) if now else utc_now()

        total = await self.tasks.count(organization_id)
        active = await self.tasks.count(organization_id, TaskStatus.ACTIVE)
        completed = await self.tasks.count(organization_id, TaskStatus.COMPLETED)

        last_7 = await self.events.count(
            organization_id, EventType.TASK_CREATED, since=now - timedelta(days=7), until=now
        )
        last_30 = await self.events.count(
            organization_id, EventType.TASK_CREATED, since=now - timedelta(days=30), until=now
        )

        return DashboardStats(
            total_tasks=total,
            active_tasks=active,
            completed_tasks=completed,
            tasks_last_7_days=last_7,
            tasks_last_30_days=last_30,
        )

    async def get_completion_timeline(
        self,
        organization_id: UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: GroupBy | str = GroupBy.DAY,
    ) -> list[TimelineBucket]:
        group_by = _parse_group_by(group_by)
        if start and end and ensure_utc(start) > ensure_utc(end):
            raise ValidationError("start must not be after end", ["start", "end"])

        timestamps = await self.events.completion_timestamps(organization_id, start, end)
        return bucket_completions(timestamps, group_by)
