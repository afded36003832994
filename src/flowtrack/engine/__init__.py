"""FlowTrack engine - task lifecycle, analytics and search operations."""

from flowtrack.engine.core import FlowTrackEngine
from flowtrack.errors import (
    FlowTrackError,
    IndexRequestError,
    IndexUnavailableError,
    InvalidStateTransition,
    NotFoundError,
    TaskNotFound,
    ValidationError,
    WorkflowNotFound,
)

__all__ = [
    "FlowTrackEngine",
    "FlowTrackError",
    "IndexRequestError",
    "IndexUnavailableError",
    "InvalidStateTransition",
    "NotFoundError",
    "TaskNotFound",
    "ValidationError",
    "WorkflowNotFound",
]
