"""Tests for the node list cache."""

import asyncio

import pytest

from conftest import FakeClock, node_list, ok, ok_json
from clawfleet.cache import NODE_LIST_COMMAND, NodeListCache


class TestNodeListCache:
    """Tests for NodeListCache."""

    @pytest.mark.asyncio
    async def test_second_call_within_ttl_is_cached(self, executor, transport, target):
        transport.on_named(NODE_LIST_COMMAND, node_list({"hostname": "gpu-01", "connected": True}))
        clock = FakeClock()
        cache = NodeListCache(executor, ttl=15, clock=clock)

        first = await cache.get(target)
        clock.advance(5)
        second = await cache.get(target)

        assert len(transport.calls) == 1
        assert not first.cached
        assert second.cached
        assert second.age_ms == 5000
        assert [n.label for n in second.nodes] == ["gpu-01"]

    @pytest.mark.asyncio
    async def test_expired_entry_is_refetched(self, executor, transport, target):
        transport.on_named(NODE_LIST_COMMAND, node_list({"hostname": "gpu-01"}))
        clock = FakeClock()
        cache = NodeListCache(executor, ttl=15, clock=clock)

        await cache.get(target)
        clock.advance(15)
        snapshot = await cache.get(target)

        assert len(transport.calls) == 2
        assert not snapshot.cached

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, executor, transport, target):
        async def slow(command):
            await asyncio.sleep(0.01)
            return node_list({"hostname": "gpu-01", "connected": True})

        transport.on_named(NODE_LIST_COMMAND, slow)
        cache = NodeListCache(executor, ttl=15)

        snapshots = await asyncio.gather(*(cache.get(target) for _ in range(5)))

        assert len(transport.calls) == 1
        assert all(len(s.nodes) == 1 for s in snapshots)
        assert sum(not s.cached for s in snapshots) == 1

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, executor, transport, target):
        transport.on_named(
            NODE_LIST_COMMAND,
            ok_json({"error": "gateway call node.list failed"}),
            node_list({"hostname": "gpu-01"}),
        )
        cache = NodeListCache(executor, ttl=15)

        assert await cache.get(target) is None
        snapshot = await cache.get(target)

        assert snapshot is not None
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_transport_failure_returns_none(self, executor, transport, target):
        transport.on_named(NODE_LIST_COMMAND, ok("", "connection reset", 255))
        cache = NodeListCache(executor, ttl=15)

        assert await cache.get(target) is None

    @pytest.mark.asyncio
    async def test_invalidate(self, executor, transport, target):
        transport.on_named(NODE_LIST_COMMAND, node_list({"hostname": "gpu-01"}))
        cache = NodeListCache(executor, ttl=15)

        await cache.get(target)
        cache.invalidate(target)
        await cache.get(target)
        cache.invalidate()
        await cache.get(target)

        assert len(transport.calls) == 3
