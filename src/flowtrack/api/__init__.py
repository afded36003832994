"""FlowTrack REST API."""

from flowtrack.api.router import router

__all__ = ["router"]
