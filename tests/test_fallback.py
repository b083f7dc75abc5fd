"""Tests for the fleet source fallback chain."""

import pytest

from conftest import node_list, ok, ok_json
from clawfleet.commands import PROCESS_MARKER
from clawfleet.fallback import FallbackChain, FetchContext

PROBE_ONLINE = (
    "root  812  0.3  2.1 node /usr/bin/openclaw gateway --port 18789\n"
    f"{PROCESS_MARKER}\n"
    'LISTEN 0 511 0.0.0.0:18789 0.0.0.0:* users:(("node",pid=812,fd=21))'
)
PROBE_OFFLINE = f"{PROCESS_MARKER}\nnot-listening"


@pytest.fixture
def chain(executor, cache):
    return FallbackChain.default(executor, cache)


@pytest.fixture
def ctx(target):
    return FetchContext(target, "default")


class TestFallbackChain:
    """Tests for FallbackChain ordering."""

    @pytest.mark.asyncio
    async def test_node_list_answers_first(self, chain, ctx, transport):
        transport.on_named(
            "gateway-call-node-list",
            node_list({"hostname": "gpu-01", "connected": True}, {"hostname": "gpu-02"}),
        )

        result = await chain.run(ctx)

        assert result.method == "node-list"
        assert result.gateway_online
        assert len(result.nodes) == 2
        assert [n.label for n in result.paired] == ["gpu-01"]
        assert result.pending is None
        assert transport.names() == ["gateway-call-node-list"]

    @pytest.mark.asyncio
    async def test_empty_node_list_falls_through_to_cli(self, chain, ctx, transport):
        transport.on_named("gateway-call-node-list", node_list())
        transport.on_named("cli-nodes-status", ok_json([{"hostname": "gpu-01", "status": "connected"}]))
        transport.on_named(
            "cli-devices-list",
            ok_json({"paired": [{"id": "dev-1", "hostname": "gpu-01"}],
                     "pending": [{"requestId": "req-1", "hostname": "gpu-09"}]}),
        )

        result = await chain.run(ctx)

        assert result.method == "cli"
        assert result.nodes[0].connected
        assert [d.request_id for d in result.pending] == ["req-1"]
        assert len(result.paired) == 1

    @pytest.mark.asyncio
    async def test_cli_usable_with_only_device_list(self, chain, ctx, transport):
        transport.on_named("gateway-call-node-list", ok_json({"error": "gateway call node.list failed"}))
        transport.on_named("cli-nodes-status", ok_json({"error": "command failed"}))
        transport.on_named("cli-devices-list", ok_json({"paired": [], "pending": []}))

        result = await chain.run(ctx)

        assert result.method == "cli"
        assert result.nodes == []
        assert result.pending == []

    @pytest.mark.asyncio
    async def test_falls_back_to_process_probe(self, chain, ctx, transport):
        transport.on_named("gateway-call-node-list", ok_json({"error": "gateway call node.list failed"}))
        transport.on_named("cli-nodes-status", ok("error: unknown command 'nodes'"))
        transport.on_named("cli-devices-list", ok_json({"error": "command failed"}))
        transport.on_contains(PROCESS_MARKER, ok(PROBE_ONLINE))
        transport.on_named("list-pending-nodes", ok_json([{"requestId": "req-7", "hostname": "pi-07"}]))
        transport.on_named("list-paired-nodes", ok("[]"))

        result = await chain.run(ctx)

        assert result.method == "process-probe"
        assert result.gateway_online
        assert result.nodes == []
        assert result.paired == []
        assert [d.request_id for d in result.pending] == ["req-7"]
        assert "listening" in result.detail

    @pytest.mark.asyncio
    async def test_process_probe_reports_offline_gateway(self, chain, ctx, transport):
        transport.on_contains(PROCESS_MARKER, ok(PROBE_OFFLINE))

        result = await chain.run(ctx)

        assert result.method == "process-probe"
        assert not result.gateway_online
        assert result.pending is None

    @pytest.mark.asyncio
    async def test_nothing_answers(self, chain, ctx, transport):
        """Every source failing is not an error, just no answer."""
        result = await chain.run(ctx)

        assert result is None
        assert transport.names()[:3] == ["gateway-call-node-list", "cli-nodes-status", "cli-devices-list"]

    @pytest.mark.asyncio
    async def test_unparseable_probe_is_no_signal(self, chain, ctx, transport):
        transport.on_contains(PROCESS_MARKER, ok("ps: command not found"))

        assert await chain.run(ctx) is None
