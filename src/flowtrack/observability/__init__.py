"""Observability helpers for FlowTrack."""

from flowtrack.observability.metrics import MetricKind, MetricName, labelled, metrics

__all__ = ["MetricKind", "MetricName", "labelled", "metrics"]
