"""Analytics result models."""

from pydantic import BaseModel


class StageAverage(BaseModel):
    """Average dwell time for one stage."""

    average_hours: float
    task_count: int


class Bottleneck(BaseModel):
    """One row of the bottleneck ranking."""

    stage: str
    average_hours: float
    task_count: int


class DashboardStats(BaseModel):
    """Point-in-time task counts plus rolling creation counts."""

    total_tasks: int
    active_tasks: int
    completed_tasks: int
    tasks_last_7_days: int
    tasks_last_30_days: int


class TimelineBucket(BaseModel):
    """Number of completions in one day or ISO week."""

    date: str
    count: int
