"""Shared fixtures: a scripted SSH transport and wired-up components."""

import inspect
import json
from dataclasses import dataclass

import pytest

from clawfleet.cache import NodeListCache
from clawfleet.commands import ALLOWED_COMMANDS
from clawfleet.config import Settings, TargetSettings
from clawfleet.executor import RemoteExecutor
from clawfleet.fallback import FallbackChain
from clawfleet.pairing import PairingStateMachine
from clawfleet.reconcile import ReconciliationEngine
from clawfleet.retry import RetryConfig
from clawfleet.ssh import RawOutput, Transport
from clawfleet.store import MemoryMachineStore, PairingLedger
from clawfleet.targets import TargetResolver
from clawfleet.tcp import TcpProbeResult

_NAMES_BY_COMMAND = {spec.command: name for name, spec in ALLOWED_COMMANDS.items()}


def ok(stdout: str = "", stderr: str = "", exit_status: int = 0) -> RawOutput:
    return RawOutput(stdout, stderr, exit_status)


def ok_json(data, exit_status: int = 0) -> RawOutput:
    return RawOutput(json.dumps(data), "", exit_status)


def node_list(*nodes: dict) -> RawOutput:
    return ok_json({"nodes": list(nodes)})


@dataclass
class Call:
    host: str
    command: str
    timeout: float

    @property
    def name(self) -> str | None:
        return _NAMES_BY_COMMAND.get(self.command)


class FakeTransport(Transport):
    """Transport that answers from a script instead of opening sessions.

    A response is a RawOutput, an exception to raise, or a callable taking
    the command (sync or async). Several responses for one key are served
    in order; the last one repeats.
    """

    def __init__(self, default=None) -> None:
        self.default = default if default is not None else ok("", "not scripted", 127)
        self.calls: list[Call] = []
        self.completed: list[str] = []
        self._exact: dict[str, list] = {}
        self._contains: list[tuple[str, list]] = []

    def on_named(self, name: str, *responses) -> "FakeTransport":
        self._exact[ALLOWED_COMMANDS[name].command] = list(responses)
        return self

    def on_command(self, command: str, *responses) -> "FakeTransport":
        self._exact[command] = list(responses)
        return self

    def on_contains(self, fragment: str, *responses) -> "FakeTransport":
        self._contains.append((fragment, list(responses)))
        return self

    def names(self) -> list[str | None]:
        return [call.name for call in self.calls]

    def _next(self, command: str):
        queue = self._exact.get(command)
        if queue is None:
            queue = next((q for fragment, q in self._contains if fragment in command), None)
        if not queue:
            return self.default
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def run(self, target, command: str, timeout: float) -> RawOutput:
        self.calls.append(Call(target.host, command, timeout))
        response = self._next(command)
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(command)
            if inspect.isawaitable(response):
                response = await response
        self.completed.append(command)
        return response


class FakeTcpProbe:
    """Records TCP probes and answers with a fixed result."""

    def __init__(self, result: TcpProbeResult | None = None) -> None:
        self.result = result or TcpProbeResult(False, error="No open ports found")
        self.calls: list[tuple[str, tuple[int, ...]]] = []

    async def __call__(self, host, ports):
        self.calls.append((host, tuple(ports)))
        return self.result


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        default_target=TargetSettings(host="203.0.113.10", password="s3cret"),
        retry_attempts=1,
        retry_delay=0.0,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def resolver(settings) -> TargetResolver:
    return TargetResolver(settings)


@pytest.fixture
def target(resolver):
    return resolver.require()


@pytest.fixture
def executor(transport) -> RemoteExecutor:
    return RemoteExecutor(transport, retry=RetryConfig(max_attempts=1, delay=0.0))


@pytest.fixture
def cache(executor) -> NodeListCache:
    return NodeListCache(executor, ttl=15)


@pytest.fixture
def store() -> MemoryMachineStore:
    return MemoryMachineStore()


@pytest.fixture
def ledger() -> PairingLedger:
    return PairingLedger()


@pytest.fixture
def tcp_probe() -> FakeTcpProbe:
    return FakeTcpProbe()


@pytest.fixture
def engine(resolver, cache, executor, store, ledger, tcp_probe) -> ReconciliationEngine:
    return ReconciliationEngine(
        resolver,
        cache,
        FallbackChain.default(executor, cache),
        store,
        ledger,
        tcp_probe=tcp_probe,
    )


@pytest.fixture
def pairing(resolver, executor, cache, store, ledger) -> PairingStateMachine:
    return PairingStateMachine(resolver, executor, cache, store, ledger)
