"""Secondary search index: client, documents, and write mirroring."""

from flowtrack.search.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitBreakerStats,
    CircuitState,
)
from flowtrack.search.client import SearchIndexClient
from flowtrack.search.synchronizer import (
    DeadLetter,
    IndexSynchronizer,
    MirrorAction,
    MirrorOperation,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitBreakerStats",
    "CircuitState",
    "DeadLetter",
    "IndexSynchronizer",
    "MirrorAction",
    "MirrorOperation",
    "SearchIndexClient",
]
