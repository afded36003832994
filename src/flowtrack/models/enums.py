"""FlowTrack enumerations."""

from enum import Enum


class EventType(str, Enum):
    """Kinds of task lifecycle events."""

    TASK_CREATED = "task_created"
    STAGE_CHANGED = "stage_changed"
    TASK_COMPLETED = "task_completed"
    TASK_UPDATED = "task_updated"

    @classmethod
    def transition_types(cls) -> set["EventType"]:
        """Event types that carry stage timing information."""
        return {cls.TASK_CREATED, cls.STAGE_CHANGED, cls.TASK_COMPLETED}


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    ACTIVE = "active"
    COMPLETED = "completed"

    def is_terminal(self) -> bool:
        return self is TaskStatus.COMPLETED


class GroupBy(str, Enum):
    """Bucket size for completion timelines."""

    DAY = "day"
    WEEK = "week"


class SortOrder(str, Enum):
    """Timestamp ordering for event queries."""

    ASC = "asc"
    DESC = "desc"
