"""Event-log analytics: dwell times, bottlenecks, dashboard counts."""

from flowtrack.analytics.bottlenecks import rank_bottlenecks
from flowtrack.analytics.dashboard import DashboardAggregator, bucket_completions, bucket_key
from flowtrack.analytics.reconstructor import (
    ComputationSkipped,
    StageDurationReport,
    compute_stage_averages,
    dwell_hours,
    reconstruct_stage_durations,
)

__all__ = [
    "ComputationSkipped",
    "DashboardAggregator",
    "StageDurationReport",
    "bucket_completions",
    "bucket_key",
    "compute_stage_averages",
    "dwell_hours",
    "rank_bottlenecks",
    "reconstruct_stage_durations",
]
