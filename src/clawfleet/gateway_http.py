"""Gateway HTTP API client.

Used by health checks as the second opinion after the SSH node list. The
gateway has exposed its session list under several paths across releases,
so the known paths are tried in order and the first one that answers wins.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from .decoders import node_view_from_raw
from .logging import redact
from .types import GatewayEndpoint, NodeSource, NodeView, ProbeResult

logger = logging.getLogger(__name__)

NODE_ENDPOINTS = ("/api/sessions", "/api/nodes", "/api/v1/sessions", "/api/v1/nodes")
DEFAULT_TIMEOUT = 8.0


@dataclass
class HttpNodesAnswer:
    path: str
    nodes: list[NodeView] = field(default_factory=list)
    latency_ms: int = 0


def _entries(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("sessions", "nodes", "peers", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _normalize_entry(entry: Any) -> Any:
    # Older gateways report the hostname as "host".
    if isinstance(entry, dict) and "host" in entry and "hostname" not in entry:
        return {**entry, "hostname": entry["host"]}
    return entry


class GatewayHttpClient:
    """Async client for the gateway's HTTP API.

    Attributes:
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self.transport
        )

    async def fetch_nodes(self, endpoint: GatewayEndpoint) -> HttpNodesAnswer | None:
        """Return the node/session list from the first path that answers.

        Returns None when no path returned a successful JSON response.
        """
        params = {"token": endpoint.token} if endpoint.token else {}
        async with self._client() as client:
            for path in NODE_ENDPOINTS:
                url = endpoint.url.rstrip("/") + path
                started = time.perf_counter()
                try:
                    response = await client.get(url, params=params)
                except httpx.TimeoutException:
                    logger.debug(f"Gateway HTTP {path} timed out after {self.timeout}s")
                    continue
                except httpx.HTTPError as e:
                    logger.debug(f"Gateway HTTP {path} failed: {redact(str(e), endpoint.secrets())}")
                    continue

                if not response.is_success:
                    logger.debug(f"Gateway HTTP {path} returned {response.status_code}")
                    continue
                try:
                    data = response.json()
                except ValueError:
                    logger.debug(f"Gateway HTTP {path} returned non-JSON body")
                    continue

                nodes = [
                    view
                    for view in (
                        node_view_from_raw(_normalize_entry(e), NodeSource.GATEWAY_HTTP)
                        for e in _entries(data)
                    )
                    if view is not None
                ]
                return HttpNodesAnswer(
                    path=path,
                    nodes=nodes,
                    latency_ms=int((time.perf_counter() - started) * 1000),
                )
        return None

    async def probe(self, endpoint: GatewayEndpoint) -> ProbeResult:
        """Check that the gateway answers HTTP at all."""
        started = time.perf_counter()
        try:
            async with self._client() as client:
                response = await client.get(endpoint.url)
        except httpx.TimeoutException:
            return ProbeResult("http", False, error=f"Request timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            return ProbeResult("http", False, error=f"HTTP error: {type(e).__name__}")

        latency_ms = int((time.perf_counter() - started) * 1000)
        if response.status_code >= 500:
            return ProbeResult("http", False, latency_ms, f"HTTP {response.status_code}")
        return ProbeResult("http", True, latency_ms)
