"""Bottleneck ranking over reconstructed stage averages."""

from flowtrack.models import Bottleneck, StageAverage


def rank_bottlenecks(averages: dict[str, StageAverage]) -> list[Bottleneck]:
    """Slowest stage first; equal averages are ordered by stage name."""
    rows = [
        Bottleneck(
            stage=stage,
            average_hours=average.average_hours,
            task_count=average.task_count,
        )
        for stage, average in averages.items()
    ]
    rows.sort(key=lambda row: (-row.average_hours, row.stage))
    return rows
