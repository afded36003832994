"""FlowTrack errors."""

from typing import Optional


class FlowTrackError(Exception):
    """Base error for FlowTrack operations."""

    def __init__(self, message: str, code: str = "FLOWTRACK_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(FlowTrackError):
    """Missing or invalid field on an event, query, or mutation."""

    def __init__(self, message: str, fields: Optional[list[str]] = None):
        super().__init__(message, "VALIDATION_ERROR")
        self.fields = fields or []


class InvalidStateTransition(ValidationError):
    """Mutation not allowed from the task's current status."""

    def __init__(self, current_status: str, action: str):
        super().__init__(f"Cannot {action} a task that is {current_status}")
        self.code = "INVALID_STATE_TRANSITION"
        self.current_status = current_status
        self.action = action


class NotFoundError(FlowTrackError):
    """Referenced record does not exist in the caller's organization."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}", "NOT_FOUND")
        self.kind = kind
        self.record_id = record_id


class TaskNotFound(NotFoundError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__("Task", task_id)
        self.task_id = task_id


class WorkflowNotFound(NotFoundError):
    """Workflow does not exist."""

    def __init__(self, workflow_id: str):
        super().__init__("Workflow", workflow_id)
        self.workflow_id = workflow_id


class IndexUnavailableError(FlowTrackError):
    """Search index is not configured, unreachable, or its circuit is open."""

    def __init__(self, reason: str = "search index is not configured"):
        super().__init__(f"Search index unavailable: {reason}", "INDEX_UNAVAILABLE")
        self.reason = reason


class IndexRequestError(FlowTrackError):
    """Search index rejected a request."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(
            f"Search index request failed ({status_code}): {detail}",
            "INDEX_REQUEST_FAILED",
        )
        self.status_code = status_code
        self.detail = detail
