"""Search index client with circuit breaker protection."""

import logging
from time import perf_counter
from typing import Any, Optional

import httpx

from flowtrack.config import Settings
from flowtrack.errors import IndexRequestError, IndexUnavailableError
from flowtrack.observability.metrics import MetricName, metrics
from flowtrack.search.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
)
from flowtrack.search.documents import EVENT_MAPPINGS, TASK_MAPPINGS

logger = logging.getLogger(__name__)


class _ServerError(Exception):
    """5xx from the index; counts against the circuit breaker."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"index returned {response.status_code}")


class SearchIndexClient:
    """
    Client for an Elasticsearch-compatible REST API.

    Lifecycle is explicit: construct, `await start()` (connects and ensures
    both indices exist), `await close()`. When no URL is configured, or the
    index cannot be reached at startup, the client stays unavailable and
    every request raises IndexUnavailableError.

    Usage:
        client = SearchIndexClient.from_settings(settings)
        await client.start()
        await client.search(client.event_index, body)
    """

    def __init__(
        self,
        base_url: Optional[str],
        *,
        index_prefix: str = "flowtrack",
        api_key: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout_seconds: float = 2.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.task_index = f"{index_prefix}_tasks"
        self.event_index = f"{index_prefix}_events"
        self._api_key = api_key
        self._auth = httpx.BasicAuth(username, password) if username and password else None
        self._timeout = timeout_seconds
        self._circuit_breaker = circuit_breaker
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SearchIndexClient":
        breaker = None
        if settings.index_circuit_breaker_enabled:
            breaker = CircuitBreaker(
                "search_index",
                CircuitBreakerConfig(
                    failure_threshold=settings.index_circuit_breaker_failure_threshold,
                    timeout_seconds=settings.index_circuit_breaker_timeout_seconds,
                    half_open_max_calls=settings.index_circuit_breaker_half_open_max_calls,
                    success_threshold=settings.index_circuit_breaker_success_threshold,
                ),
            )
        return cls(
            settings.elasticsearch_url,
            index_prefix=settings.index_prefix,
            api_key=settings.elasticsearch_api_key,
            username=settings.elasticsearch_username,
            password=settings.elasticsearch_password,
            timeout_seconds=settings.index_request_timeout_ms / 1000,
            circuit_breaker=breaker,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def circuit_breaker(self) -> Optional[CircuitBreaker]:
        return self._circuit_breaker

    async def start(self) -> bool:
        """Connect and create missing indices. Returns whether the index is usable."""
        if not self.configured:
            logger.warning("Search index URL not set - search and index mirroring disabled")
            return False

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"ApiKey {self._api_key}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            auth=self._auth,
            timeout=self._timeout,
            transport=self._transport,
        )

        try:
            await self._request("GET", "/")
            await self.ensure_index(self.task_index, TASK_MAPPINGS)
            await self.ensure_index(self.event_index, EVENT_MAPPINGS)
        except (IndexUnavailableError, IndexRequestError) as e:
            logger.error(f"Search index connection failed, continuing without it: {e}")
            await self.close()
            return False

        logger.info(f"Search index connected at {self.base_url}")
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def ensure_index(self, name: str, mappings: dict[str, Any]) -> None:
        """Create the index with its mappings if it does not exist."""
        response = await self._request("HEAD", f"/{name}", allow_not_found=True)
        if response.status_code == 404:
            await self._request("PUT", f"/{name}", json={"mappings": mappings})
            logger.info(f"Created search index: {name}")

    async def index_document(self, index: str, doc_id: str, document: dict[str, Any]) -> None:
        await self._request("PUT", f"/{index}/_doc/{doc_id}", json=document)

    async def delete_document(self, index: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it was already absent."""
        response = await self._request("DELETE", f"/{index}/_doc/{doc_id}", allow_not_found=True)
        return response.status_code != 404

    async def search(self, index: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", f"/{index}/_search", json=body)
        return response.json()

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        if self._client is None:
            reason = "not connected" if self.configured else "search index is not configured"
            raise IndexUnavailableError(reason)

        start_time = perf_counter()
        try:
            if self._circuit_breaker:
                response = await self._circuit_breaker.call(self._send, method, path, json)
            else:
                response = await self._send(method, path, json)
        except CircuitBreakerOpen as e:
            metrics.inc_counter(MetricName.INDEX_REQUEST_REJECTED)
            raise IndexUnavailableError(f"circuit open, retry after {e.retry_after}s") from e
        except _ServerError as e:
            metrics.inc_counter(MetricName.INDEX_REQUEST_FAILED)
            raise IndexUnavailableError(f"server error {e.response.status_code}") from e
        except httpx.TransportError as e:
            metrics.inc_counter(MetricName.INDEX_REQUEST_FAILED)
            raise IndexUnavailableError(f"{type(e).__name__}: {e}") from e
        finally:
            metrics.observe(
                MetricName.INDEX_REQUEST_DURATION_MS, (perf_counter() - start_time) * 1000.0
            )

        if response.status_code == 404 and allow_not_found:
            return response
        if response.status_code >= 400:
            metrics.inc_counter(MetricName.INDEX_REQUEST_REJECTED)
            raise IndexRequestError(response.status_code, response.text[:500])
        return response

    async def _send(self, method: str, path: str, json: Optional[dict[str, Any]]) -> httpx.Response:
        response = await self._client.request(method, path, json=json)
        if response.status_code >= 500:
            raise _ServerError(response)
        return response
