"""FlowTrack - workflow task tracking with event-sourced analytics."""

__version__ = "0.1.0"
