"""FlowTrack primary record store."""

from flowtrack.db.base import Base, Database
from flowtrack.db.repositories import EventRepository, TaskRepository, WorkflowRepository
from flowtrack.db.tables import EventTable, TaskTable, WorkflowTable

__all__ = [
    "Base",
    "Database",
    "EventRepository",
    "EventTable",
    "TaskRepository",
    "TaskTable",
    "WorkflowRepository",
    "WorkflowTable",
]
