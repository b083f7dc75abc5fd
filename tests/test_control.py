"""Tests for the ControlPlane facade."""

import httpx
import pytest

from conftest import FakeTcpProbe, FakeTransport, node_list, ok, ok_json
from clawfleet.config import GatewaySettings, InstanceSettings, Settings, TargetSettings
from clawfleet.control import ControlPlane
from clawfleet.exceptions import ConfigurationError, PolicyViolation
from clawfleet.store import JsonMachineStore, MemoryMachineStore
from clawfleet.types import MachineRecord


class TestFromSettings:
    """Tests for ControlPlane.from_settings."""

    def test_defaults_in_memory(self, settings):
        plane = ControlPlane.from_settings(settings, transport=FakeTransport())

        assert isinstance(plane.store, MemoryMachineStore)
        assert plane.ledger.path is None
        assert plane.executor.retry.max_attempts == 1
        assert plane.executor.retry.delay == 0.0
        assert plane.cache.ttl == 15.0
        assert plane.executor.policy.rules == []

    def test_file_backed_stores_and_policy(self, tmp_path):
        policy = tmp_path / "policy.yaml"
        policy.write_text("rules:\n  - match: {read_only: false}\n")
        settings = Settings(
            default_target=TargetSettings(host="h", password="pw123"),
            machines_path=tmp_path / "machines.json",
            pairing_path=tmp_path / "pairing.json",
            policy_file=policy,
        )

        plane = ControlPlane.from_settings(settings, transport=FakeTransport())

        assert isinstance(plane.store, JsonMachineStore)
        assert plane.ledger.path == tmp_path / "pairing.json"
        assert not plane.executor.policy.evaluate("restart").permitted

    @pytest.mark.asyncio
    async def test_list_machines(self, settings):
        store = MemoryMachineStore([MachineRecord(id="m1", hostname="gpu-01")])
        plane = ControlPlane.from_settings(settings, transport=FakeTransport(), store=store)

        assert [m.id for m in await plane.list_machines()] == ["m1"]
        assert any(spec.name == "status" for spec in plane.list_commands())


class TestRunNamed:
    """Tests for ControlPlane.run_named."""

    @pytest.mark.asyncio
    async def test_policy_checked_before_target(self):
        transport = FakeTransport()
        plane = ControlPlane.from_settings(Settings(), transport=transport)

        with pytest.raises(PolicyViolation):
            await plane.run_named("bash")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_no_target(self):
        plane = ControlPlane.from_settings(Settings(), transport=FakeTransport())

        with pytest.raises(ConfigurationError):
            await plane.run_named("status")

    @pytest.mark.asyncio
    async def test_runs_against_instance_target(self, settings):
        transport = FakeTransport().on_named("view-log", ok("line 1\nline 2"))
        plane = ControlPlane.from_settings(settings, transport=transport)

        result = await plane.run_named("view-log")

        assert result.success
        assert result.output == "line 1\nline 2"
        assert transport.calls[0].host == "203.0.113.10"


class TestGatewayHealth:
    """Tests for ControlPlane.gateway_health."""

    @pytest.fixture
    def gateway_settings(self, settings):
        settings.instances["default"] = InstanceSettings(
            gateway=GatewaySettings(url="http://gw.test:18789", token="tok")
        )
        return settings

    @pytest.mark.asyncio
    async def test_healthy_with_http_probe(self, gateway_settings):
        transport = FakeTransport().on_named("gateway-call-health", ok_json({"ok": True, "uptime": 12}))
        plane = ControlPlane.from_settings(
            gateway_settings,
            transport=transport,
            http_transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )

        health = await plane.gateway_health()

        assert health.reachable
        assert health.healthy
        assert health.detail == {"ok": True, "uptime": 12}
        assert health.http.reachable
        assert health.to_dict()["http"]["method"] == "http"

    @pytest.mark.asyncio
    async def test_error_field_is_unhealthy(self, settings):
        transport = FakeTransport().on_named("gateway-call-health", ok_json({"error": "gateway closed"}))
        plane = ControlPlane.from_settings(settings, transport=transport)

        health = await plane.gateway_health()

        assert health.reachable
        assert not health.healthy
        assert health.error == "gateway closed"
        assert health.http is None

    @pytest.mark.asyncio
    async def test_text_answer_is_unhealthy(self, settings):
        transport = FakeTransport().on_named("gateway-call-health", ok("Gateway is starting"))
        plane = ControlPlane.from_settings(settings, transport=transport)

        health = await plane.gateway_health()

        assert not health.healthy
        assert health.detail == "Gateway is starting"

    @pytest.mark.asyncio
    async def test_command_failure(self, settings):
        transport = FakeTransport().on_named("gateway-call-health", ok("", "connection refused", 1))
        plane = ControlPlane.from_settings(settings, transport=transport)

        health = await plane.gateway_health()

        assert not health.reachable
        assert not health.healthy
        assert health.error


class TestOperatorRules:
    """Tests that deny rules fence off operator commands only."""

    @pytest.fixture
    def deny_all(self, settings, tmp_path):
        policy = tmp_path / "policy.yaml"
        policy.write_text('rules:\n  - match: {command: "*"}\n    reason: "Frozen"\n')
        settings.policy_file = policy
        return settings

    @pytest.mark.asyncio
    async def test_reconcile_and_health_check_still_run(self, deny_all):
        transport = FakeTransport().on_named(
            "gateway-call-node-list",
            node_list({"nodeId": "n1", "hostname": "gpu-01", "connected": True}),
        )
        store = MemoryMachineStore([MachineRecord(id="m1", hostname="gpu-01")])
        plane = ControlPlane.from_settings(deny_all, transport=transport, store=store, tcp_probe=FakeTcpProbe())

        view = await plane.reconcile()
        health = await plane.health_check("m1")

        assert view.gateway_online
        assert health.reachable
        assert health.method == "gateway-ssh"

    @pytest.mark.asyncio
    async def test_operator_command_is_refused(self, deny_all):
        transport = FakeTransport()
        plane = ControlPlane.from_settings(deny_all, transport=transport)

        with pytest.raises(PolicyViolation):
            await plane.run_named("status")
        assert transport.calls == []
