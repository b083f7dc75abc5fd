"""Short-lived cache of the gateway's node.list answer.

The node list is the most expensive and most frequently needed signal, so
one answer per target is kept for ``ttl`` seconds. Concurrent callers for
the same target share a single fetch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .decoders import decode_output, parse_node_list
from .exceptions import ParseError
from .executor import RemoteExecutor
from .types import NodeView, RemoteTarget

logger = logging.getLogger(__name__)

NODE_LIST_COMMAND = "gateway-call-node-list"
DEFAULT_TTL = 15.0


@dataclass
class NodeListSnapshot:
    """A node list answer and how fresh it is.

    Attributes:
        nodes: Normalized nodes from node.list
        age_ms: Milliseconds since the answer was fetched
        latency_ms: How long the fetch took
        cached: True when served from the cache without a new call
    """

    nodes: list[NodeView] = field(default_factory=list)
    age_ms: int = 0
    latency_ms: int = 0
    cached: bool = False


@dataclass
class _Entry:
    nodes: list[NodeView]
    fetched_at: float
    latency_ms: int


class NodeListCache:
    """TTL cache around the ``gateway-call-node-list`` command.

    Example:
        >>> cache = NodeListCache(executor, ttl=15)
        >>> snapshot = await cache.get(target)
        >>> [n.label for n in snapshot.nodes]
        ['build-mac', 'gpu-01']
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.ttl = ttl
        self.clock = clock
        self._entries: dict[tuple, _Entry] = {}
        self._locks: dict[tuple, asyncio.Lock] = {}

    def _fresh(self, key: tuple) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is not None and self.clock() - entry.fetched_at < self.ttl:
            return entry
        return None

    def _snapshot(self, entry: _Entry, cached: bool) -> NodeListSnapshot:
        return NodeListSnapshot(
            nodes=list(entry.nodes),
            age_ms=int((self.clock() - entry.fetched_at) * 1000),
            latency_ms=entry.latency_ms,
            cached=cached,
        )

    async def get(self, target: RemoteTarget) -> NodeListSnapshot | None:
        """Return the node list for a target, fetching it if stale.

        Returns None when the fetch fails or the answer cannot be parsed;
        failures are not cached.
        """
        key = target.key
        entry = self._fresh(key)
        if entry is not None:
            return self._snapshot(entry, cached=True)

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed the entry while we waited.
            entry = self._fresh(key)
            if entry is not None:
                return self._snapshot(entry, cached=True)

            started = self.clock()
            result = await self.executor.run_allowed(NODE_LIST_COMMAND, target)
            latency_ms = int((self.clock() - started) * 1000)

            if not result.success:
                logger.debug(f"node.list on {target.host} failed: {result.error}")
                return None
            try:
                nodes = parse_node_list(decode_output(result.output))
            except ParseError as e:
                logger.debug(f"node.list on {target.host} unusable: {e}")
                return None

            entry = _Entry(nodes=nodes, fetched_at=self.clock(), latency_ms=latency_ms)
            self._entries[key] = entry
            logger.debug(f"Cached {len(nodes)} nodes for {target.host} ({latency_ms}ms)")
            return self._snapshot(entry, cached=False)

    def invalidate(self, target: RemoteTarget | None = None) -> None:
        """Drop the entry for one target, or every entry."""
        if target is None:
            self._entries.clear()
        else:
            self._entries.pop(target.key, None)
