"""Fleet reconciliation engine.

Builds one view of "which nodes exist and are they connected" from the
gateway (through the fallback chain) and the local machine store, and
persists the resulting status transitions:

- a record matched by a connected live node becomes ``connected`` and its
  ``last_seen`` is refreshed;
- a ``connected`` record with no connected match becomes ``disconnected``,
  but only when the gateway was confirmed online in this pass;
- anything else is left alone.

Connected nodes that match no record are auto-discovered: they claim an
operator-registered placeholder of matching OS if one is free, otherwise a
new record is created.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

from .cache import NodeListCache
from .exceptions import MachineNotFoundError
from .fallback import FallbackChain, FetchContext, StageResult
from .gateway_http import GatewayHttpClient
from .logging import get_logger
from .matching import find_matching_record, identifiers_overlap, normalize_platform, platform_matches
from .store import MachineStore, PairingLedger
from .targets import TargetResolver
from .tcp import TcpProbeResult, probe_tcp
from .types import (
    FleetView,
    HealthCheckResult,
    MachineRecord,
    MachineStatus,
    NodeView,
    ProbeResult,
    TrackedMachine,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_OS = "linux"

TcpProbe = Callable[[str, Iterable[int]], Awaitable[TcpProbeResult]]


class ReconciliationEngine:
    """Reconcile gateway state with persisted machine records.

    Attributes:
        resolver: Instance to target/endpoint mapping
        cache: Node list cache shared with the pairing state machine
        chain: Fallback chain of fleet sources
        store: Persisted machine records
        ledger: Local pairing state (pending list fallback)
        http: Gateway HTTP client for health checks
        tcp_probe: TCP reachability probe for health checks
        now: Clock for last_seen timestamps
    """

    def __init__(
        self,
        resolver: TargetResolver,
        cache: NodeListCache,
        chain: FallbackChain,
        store: MachineStore,
        ledger: PairingLedger,
        http: GatewayHttpClient | None = None,
        tcp_probe: TcpProbe = probe_tcp,
        now=utcnow,
    ) -> None:
        self.resolver = resolver
        self.cache = cache
        self.chain = chain
        self.store = store
        self.ledger = ledger
        self.http = http or GatewayHttpClient()
        self.tcp_probe = tcp_probe
        self.now = now
        self._apply_lock = asyncio.Lock()
        self.log = get_logger(__name__)

    def _instance(self, instance_id: str | None) -> str:
        return instance_id or self.resolver.settings.default_instance

    async def reconcile(self, instance_id: str | None = None) -> FleetView:
        """Query the gateway, apply status transitions and return the fleet view.

        Raises:
            ConfigurationError: If no target is configured for the instance
        """
        instance_id = self._instance(instance_id)
        target = self.resolver.require(instance_id)
        ctx = FetchContext(target, instance_id, self.resolver.gateway_port(instance_id))

        with self.log.performance("Reconciliation", instance=instance_id):
            stage = await self.chain.run(ctx)
            view = FleetView(instance_id=instance_id)

            if stage is not None:
                view.gateway_online = stage.gateway_online
                view.gateway_status = "online" if stage.gateway_online else "offline"
                view.method = stage.method
                view.live_nodes = list(stage.nodes)
                view.paired_devices = list(stage.paired or [])
                if stage.pending is not None:
                    view.pending_devices = list(stage.pending)
                    view.pending_source = stage.method
                    self.ledger.set_pending(instance_id, stage.pending)

            if stage is None or stage.pending is None:
                view.pending_devices = self.ledger.list_pending(instance_id)
                view.pending_source = "local"

            async with self._apply_lock:
                await self._apply(view, stage)

        self.log.info(
            "Reconciled fleet",
            instance=instance_id,
            gateway=view.gateway_status,
            method=view.method or "none",
            live=len(view.live_nodes),
            tracked=len(view.tracked_machines),
        )
        return view

    async def _apply(self, view: FleetView, stage: StageResult | None) -> None:
        records = await self.store.list_machines()
        matched: dict[str, NodeView] = {}
        seen_connected: set[str] = set()
        now = self.now()

        # Connected nodes first so they win identity matches.
        for node in sorted(view.live_nodes, key=lambda n: not n.connected):
            record = find_matching_record(node.identity, records)
            if record is not None:
                matched.setdefault(record.id, node)
                if node.connected:
                    seen_connected.add(record.id)
                    await self.store.update_machine(
                        record.id, status=MachineStatus.CONNECTED, last_seen=now
                    )
                continue

            if not node.connected:
                continue

            record = await self._discover(node, records, matched, now)
            matched[record.id] = node
            seen_connected.add(record.id)
            view.discovered.append(record.id)
            # Later nodes must see the claimed or created identity.
            records[:] = [r for r in records if r.id != record.id] + [record]

        gateway_confirmed = stage is not None and stage.gateway_online
        for record in records:
            if record.id in seen_connected:
                continue
            if gateway_confirmed and record.status is MachineStatus.CONNECTED:
                logger.info(f"Machine {record.display_name or record.name or record.id} disconnected")
                await self.store.update_machine(record.id, status=MachineStatus.DISCONNECTED)

        view.tracked_machines = [
            TrackedMachine(record=r, live=matched.get(r.id))
            for r in await self.store.list_machines()
        ]

    async def _discover(
        self,
        node: NodeView,
        records: list[MachineRecord],
        matched: dict[str, NodeView],
        now,
    ) -> MachineRecord:
        """Link an unmatched connected node to a placeholder, or create a record."""
        identity = node.identity
        platform = normalize_platform(node.platform)

        for record in records:
            if record.id in matched or not record.is_placeholder:
                continue
            if not platform_matches(record.os, node.platform):
                continue
            logger.info(
                f"Linked gateway node {node.label} to existing machine "
                f"{record.display_name or record.name} ({record.id})"
            )
            return await self.store.update_machine(
                record.id,
                hostname=identity.hostname or node.label,
                ip_address=identity.ip or record.ip_address,
                os=record.os or platform or DEFAULT_OS,
                status=MachineStatus.CONNECTED,
                last_seen=now,
            )

        created = await self.store.create_machine(
            name=node.label,
            display_name=identity.display_name or node.label,
            hostname=identity.hostname or node.label,
            ip_address=identity.ip or "",
            os=platform or DEFAULT_OS,
            status=MachineStatus.CONNECTED,
            last_seen=now,
        )
        logger.info(f"Auto-created machine for gateway node {node.label} ({created.id})")
        return created

    async def health_check(
        self, machine_id: str, instance_id: str | None = None
    ) -> HealthCheckResult:
        """Check one machine through node list, gateway HTTP, then TCP.

        Never raises for an unreachable machine; the outcome is reported
        in the result and persisted.

        Raises:
            MachineNotFoundError: If the machine id does not exist
        """
        record = await self.store.get_machine(machine_id)
        if record is None:
            raise MachineNotFoundError(f"Machine not found: {machine_id}", machine_id=machine_id)

        instance_id = self._instance(instance_id)
        identity = record.identity()
        results: list[ProbeResult] = []

        target = self.resolver.resolve(instance_id)
        if target is not None:
            snapshot = await self.cache.get(target)
            if snapshot is not None:
                match = next(
                    (n for n in snapshot.nodes if n.connected and identifiers_overlap(identity, n.identity)),
                    None,
                )
                if match is not None:
                    results.append(ProbeResult("gateway-ssh", True, snapshot.latency_ms))
                    return await self._finish(record, results, MachineStatus.CONNECTED, "gateway-ssh")
                results.append(
                    ProbeResult("gateway-ssh", False, error="Node not found in gateway connected list")
                )

        endpoint = self.resolver.gateway(instance_id)
        if endpoint is not None and endpoint.token:
            answer = await self.http.fetch_nodes(endpoint)
            if answer is not None:
                match = next((n for n in answer.nodes if identifiers_overlap(identity, n.identity)), None)
                if match is not None:
                    results.append(ProbeResult("gateway-http", match.connected, answer.latency_ms))
                    status = MachineStatus.CONNECTED if match.connected else MachineStatus.DISCONNECTED
                    return await self._finish(record, results, status, "gateway-http")

        if record.ip_address:
            ports = (22, 80, 443, self.resolver.gateway_port(instance_id))
            tcp = await self.tcp_probe(record.ip_address, ports)
            results.append(ProbeResult("tcp", tcp.reachable, tcp.latency_ms, tcp.error))

        reachable = next((r for r in results if r.reachable), None)
        if reachable is not None:
            status = MachineStatus.CONNECTED
        elif results:
            status = MachineStatus.DISCONNECTED
        else:
            status = record.status
        return await self._finish(record, results, status, reachable.method if reachable else None)

    async def _finish(
        self,
        record: MachineRecord,
        results: list[ProbeResult],
        status: MachineStatus,
        method: str | None,
    ) -> HealthCheckResult:
        now = self.now()
        if results:
            if status is MachineStatus.CONNECTED:
                await self.store.update_machine(record.id, status=status, last_seen=now)
            else:
                await self.store.update_machine(record.id, status=status)

        winner = next((r for r in results if r.method == method), None)
        result = HealthCheckResult(
            machine_id=record.id,
            status=status,
            reachable=status is MachineStatus.CONNECTED and bool(results),
            method=method,
            latency_ms=winner.latency_ms if winner else None,
            checked_at=now,
            results=results,
            message="" if results else "No health check method available (no gateway, endpoint or IP)",
        )
        logger.info(f"Health check {record.id}: {status.value} via {method or 'none'}")
        return result
