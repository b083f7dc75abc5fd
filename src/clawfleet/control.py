"""ControlPlane: one object wiring every component together.

This is the surface the CLI (and any embedding service) talks to.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .cache import NodeListCache
from .commands import ALLOWED_COMMANDS, CommandSpec
from .config import Settings
from .decoders import decode_output
from .dedup import DedupReport, deduplicate_machines
from .executor import RemoteExecutor
from .fallback import FallbackChain
from .gateway_http import GatewayHttpClient
from .pairing import DeviceListing, PairingStateMachine
from .policy import CommandPolicy
from .reconcile import ReconciliationEngine
from .retry import RetryConfig
from .ssh import AsyncSSHTransport, Transport
from .store import JsonMachineStore, MachineStore, MemoryMachineStore, PairingLedger
from .targets import TargetResolver
from .types import (
    ExecutionResult,
    FleetView,
    HealthCheckResult,
    MachineRecord,
    PairingOutcome,
    ProbeResult,
)

logger = logging.getLogger(__name__)


@dataclass
class GatewayHealth:
    """Answer of the gateway's own health RPC, plus an HTTP probe."""

    instance_id: str
    reachable: bool
    healthy: bool
    detail: Any = None
    error: str | None = None
    http: ProbeResult | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "instanceId": self.instance_id,
            "reachable": self.reachable,
            "healthy": self.healthy,
        }
        if self.detail is not None:
            result["detail"] = self.detail
        if self.error:
            result["error"] = self.error
        if self.http is not None:
            result["http"] = self.http.to_dict()
        return result


class ControlPlane:
    """Facade over executor, reconciliation, pairing and the machine store.

    Example:
        >>> plane = ControlPlane.from_settings(load_settings())
        >>> view = await plane.reconcile("prod")
        >>> view.gateway_status
        'online'
    """

    def __init__(
        self,
        settings: Settings,
        resolver: TargetResolver,
        executor: RemoteExecutor,
        cache: NodeListCache,
        store: MachineStore,
        ledger: PairingLedger,
        http: GatewayHttpClient,
        engine: ReconciliationEngine,
        pairing: PairingStateMachine,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.executor = executor
        self.cache = cache
        self.store = store
        self.ledger = ledger
        self.http = http
        self.engine = engine
        self.pairing = pairing

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Transport | None = None,
        store: MachineStore | None = None,
        ledger: PairingLedger | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        tcp_probe=None,
    ) -> "ControlPlane":
        """Build a control plane from settings.

        Every collaborator can be injected; the defaults are asyncssh, the
        JSON stores named in the settings (in-memory when unset) and the
        operator policy file if one is configured.
        """
        policy = (
            CommandPolicy.from_file(settings.policy_file)
            if settings.policy_file and settings.policy_file.exists()
            else CommandPolicy.allow_list_only()
        )
        executor = RemoteExecutor(
            transport or AsyncSSHTransport(connect_timeout=settings.connect_timeout),
            policy,
            RetryConfig(max_attempts=settings.retry_attempts, delay=settings.retry_delay),
            timeout=settings.command_timeout,
        )
        if store is None:
            store = (
                JsonMachineStore(settings.machines_path)
                if settings.machines_path
                else MemoryMachineStore()
            )
        if ledger is None:
            ledger = PairingLedger(settings.pairing_path)

        resolver = TargetResolver(settings)
        cache = NodeListCache(executor, ttl=settings.cache_ttl)
        http = GatewayHttpClient(transport=http_transport)
        engine_kwargs = {"tcp_probe": tcp_probe} if tcp_probe is not None else {}
        engine = ReconciliationEngine(
            resolver,
            cache,
            FallbackChain.default(executor, cache),
            store,
            ledger,
            http=http,
            **engine_kwargs,
        )
        pairing = PairingStateMachine(resolver, executor, cache, store, ledger)
        return cls(settings, resolver, executor, cache, store, ledger, http, engine, pairing)

    async def reconcile(self, instance_id: str | None = None) -> FleetView:
        return await self.engine.reconcile(instance_id)

    async def health_check(self, machine_id: str, instance_id: str | None = None) -> HealthCheckResult:
        return await self.engine.health_check(machine_id, instance_id)

    async def approve(self, device_id: str, instance_id: str | None = None) -> PairingOutcome:
        return await self.pairing.approve(instance_id, device_id)

    async def reject(self, device_id: str, instance_id: str | None = None) -> PairingOutcome:
        return await self.pairing.reject(instance_id, device_id)

    async def remove(self, device_id: str, instance_id: str | None = None) -> PairingOutcome:
        return await self.pairing.remove(instance_id, device_id)

    async def list_pending(self, instance_id: str | None = None) -> DeviceListing:
        return await self.pairing.list_pending(instance_id)

    async def list_paired(self, instance_id: str | None = None) -> DeviceListing:
        return await self.pairing.list_paired(instance_id)

    async def run_named(
        self,
        name: str,
        instance_id: str | None = None,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run an allow-listed command against an instance's gateway host.

        Raises:
            PolicyViolation: If the command is not permitted
            ConfigurationError: If no target is configured
        """
        instance_id = instance_id or self.settings.default_instance
        # Policy first: an unknown command must fail even without a target.
        self.executor.policy.enforce(name, instance_id)
        target = self.resolver.require(instance_id)
        return await self.executor.run_named(
            name, target, retries=retries, timeout=timeout, instance_id=instance_id
        )

    def list_commands(self) -> list[CommandSpec]:
        return list(ALLOWED_COMMANDS.values())

    async def list_machines(self) -> list[MachineRecord]:
        return await self.store.list_machines()

    async def deduplicate(self) -> DedupReport:
        return await deduplicate_machines(self.store)

    async def gateway_health(self, instance_id: str | None = None) -> GatewayHealth:
        """Call the gateway's health RPC over SSH and probe its HTTP endpoint."""
        instance_id = instance_id or self.settings.default_instance
        target = self.resolver.require(instance_id)
        result = await self.executor.run_named("gateway-call-health", target, instance_id=instance_id)

        health = GatewayHealth(instance_id=instance_id, reachable=result.success, healthy=False)
        if result.success:
            decoded = decode_output(result.output)
            health.detail = decoded.data if decoded.is_json else decoded.raw
            health.healthy = decoded.is_json and decoded.error is None
            health.error = decoded.error
        else:
            health.error = result.error

        endpoint = self.resolver.gateway(instance_id)
        if endpoint is not None:
            health.http = await self.http.probe(endpoint)
        return health
