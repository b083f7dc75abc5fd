"""Ordered fallback chain of fleet sources.

Each source asks the gateway host one kind of question. The chain tries
them in order and stops at the first usable answer:

1. NodeListSource: the cached node.list RPC
2. CliStatusSource: ``nodes status`` and ``devices list`` via the CLI
3. ProcessProbeSource: ps/ss heuristic plus the raw device files
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from .cache import NodeListCache
from .commands import build_process_probe_command
from .config import GATEWAY_PORT
from .decoders import (
    decode_output,
    parse_device_list,
    parse_nodes_status,
    parse_paired_file,
    parse_pending_file,
    parse_process_probe,
)
from .exceptions import ParseError
from .executor import RemoteExecutor
from .types import NodeView, PendingDevice, RemoteTarget

logger = logging.getLogger(__name__)


@dataclass
class FetchContext:
    target: RemoteTarget
    instance_id: str = ""
    gateway_port: int = GATEWAY_PORT


@dataclass
class StageResult:
    """A usable answer from one source.

    Attributes:
        method: Name of the source that answered
        gateway_online: Whether the gateway is confirmed up
        nodes: Live nodes reported by the source
        paired: Paired devices, or None if the source does not know
        pending: Pending devices, or None if the source does not know
        detail: Free-form note for logs and output
    """

    method: str
    gateway_online: bool
    nodes: list[NodeView] = field(default_factory=list)
    paired: list[NodeView] | None = None
    pending: list[PendingDevice] | None = None
    detail: str = ""


class FleetSource(ABC):
    """One way of asking the gateway host about its fleet."""

    name: str = ""

    @abstractmethod
    async def try_fetch(self, ctx: FetchContext) -> StageResult | None:
        """Return a usable answer, or None when this source has nothing.

        May raise ParseError; the chain treats it like None.
        """


class NodeListSource(FleetSource):
    """Cached node.list; usable only when it lists at least one node."""

    name = "node-list"

    def __init__(self, cache: NodeListCache) -> None:
        self.cache = cache

    async def try_fetch(self, ctx: FetchContext) -> StageResult | None:
        snapshot = await self.cache.get(ctx.target)
        if snapshot is None or not snapshot.nodes:
            return None
        return StageResult(
            method=self.name,
            gateway_online=True,
            nodes=snapshot.nodes,
            paired=[n for n in snapshot.nodes if n.connected],
            detail=f"{'cached' if snapshot.cached else 'fresh'}, age {snapshot.age_ms}ms",
        )


class CliStatusSource(FleetSource):
    """``openclaw nodes status`` plus ``openclaw devices list``."""

    name = "cli"

    def __init__(self, executor: RemoteExecutor) -> None:
        self.executor = executor

    async def try_fetch(self, ctx: FetchContext) -> StageResult | None:
        nodes: list[NodeView] | None = None
        status = await self.executor.run_allowed("cli-nodes-status", ctx.target)
        if status.success:
            try:
                nodes = parse_nodes_status(decode_output(status.output))
            except ParseError as e:
                logger.debug(f"nodes status unusable: {e}")

        devices = None
        listing = await self.executor.run_allowed("cli-devices-list", ctx.target)
        if listing.success:
            try:
                devices = parse_device_list(decode_output(listing.output))
            except ParseError as e:
                logger.debug(f"devices list unusable: {e}")

        if nodes is None and devices is None:
            return None
        return StageResult(
            method=self.name,
            gateway_online=True,
            nodes=nodes or [],
            paired=devices.paired if devices else None,
            pending=devices.pending if devices else None,
        )


class ProcessProbeSource(FleetSource):
    """Is the gateway process running and its port listening?

    Also reads the raw paired/pending device files, which exist whether or
    not the gateway is up.
    """

    name = "process-probe"

    def __init__(self, executor: RemoteExecutor) -> None:
        self.executor = executor

    async def _read_file(self, command: str, ctx: FetchContext, parser):
        result = await self.executor.run_allowed(command, ctx.target)
        if not result.success:
            return None
        try:
            return parser(decode_output(result.output))
        except ParseError as e:
            logger.debug(f"{command} unusable: {e}")
            return None

    async def try_fetch(self, ctx: FetchContext) -> StageResult | None:
        result = await self.executor.run_raw(build_process_probe_command(ctx.gateway_port), ctx.target)
        if not result.success:
            return None
        probe = parse_process_probe(result.output, ctx.gateway_port)

        return StageResult(
            method=self.name,
            gateway_online=probe.online,
            paired=await self._read_file("list-paired-nodes", ctx, parse_paired_file),
            pending=await self._read_file("list-pending-nodes", ctx, parse_pending_file),
            detail=(
                f"process {'running' if probe.process_running else 'not running'}, "
                f"port {ctx.gateway_port} {'listening' if probe.port_listening else 'not listening'}"
            ),
        )


class FallbackChain:
    """Try sources strictly in order; the first usable answer wins."""

    def __init__(self, sources: Sequence[FleetSource]) -> None:
        self.sources = list(sources)

    @classmethod
    def default(cls, executor: RemoteExecutor, cache: NodeListCache) -> "FallbackChain":
        return cls([NodeListSource(cache), CliStatusSource(executor), ProcessProbeSource(executor)])

    async def run(self, ctx: FetchContext) -> StageResult | None:
        for source in self.sources:
            try:
                result = await source.try_fetch(ctx)
            except ParseError as e:
                logger.debug(f"Source {source.name} gave no signal: {e}")
                continue
            if result is not None:
                logger.info(
                    f"Fleet source {source.name} answered for {ctx.instance_id or ctx.target.host}: "
                    f"online={result.gateway_online}, nodes={len(result.nodes)}"
                )
                return result
            logger.debug(f"Source {source.name} had no usable answer for {ctx.target.host}")
        logger.warning(f"No fleet source answered for {ctx.instance_id or ctx.target.host}")
        return None
