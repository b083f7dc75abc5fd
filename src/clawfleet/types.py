"""Type definitions for clawfleet.

Strongly-typed dataclasses for everything that crosses a module boundary:
remote targets, execution results, normalized node views, persisted machine
records, pending devices and the reconciled fleet view.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _normalize(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


@dataclass(frozen=True)
class RemoteTarget:
    """Connection parameters for one gateway-bearing host.

    Authentication material is excluded from repr() and to_dict() so a
    target can be logged safely.

    Attributes:
        host: Hostname or IP address
        port: SSH port
        user: SSH username
        password: Password for authentication (optional)
        client_keys: Private key file paths (optional)
        known_hosts: Path to known_hosts, None to disable checking,
            empty tuple to use the asyncssh default

    Example:
        >>> target = RemoteTarget(host="203.0.113.10", password="s3cret")
        >>> target.key
        ('203.0.113.10', 22, 'root')
        >>> "s3cret" in repr(target)
        False
    """

    host: str
    port: int = 22
    user: str = "root"
    password: str | None = field(default=None, repr=False)
    client_keys: tuple[str, ...] = field(default=(), repr=False)
    known_hosts: str | tuple | None = None

    @property
    def key(self) -> tuple[str, int, str]:
        """Identity of this target for caching."""
        return (self.host, self.port, self.user)

    @property
    def has_auth(self) -> bool:
        """Whether any authentication material is configured."""
        return bool(self.password) or bool(self.client_keys)

    def secrets(self) -> list[str]:
        """Values that must never appear in logs."""
        return [self.password] if self.password else []

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, without authentication material."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "auth": "password" if self.password else ("key" if self.client_keys else "none"),
        }


@dataclass(frozen=True)
class GatewayEndpoint:
    """HTTP API of the gateway for one instance."""

    url: str
    token: str | None = field(default=None, repr=False)
    # Used by the process and TCP checks only; the named commands always
    # talk to the gateway on GATEWAY_PORT.
    port: int = 18789

    def secrets(self) -> list[str]:
        return [self.token] if self.token else []


@dataclass
class ExecutionResult:
    """Result of one remote command execution.

    ``success`` is transport-level: the session completed and the exit
    status was accepted by the caller's policy. It says nothing about
    whether the remote program reported an error in its own output.

    Attributes:
        success: Transport-level success flag
        output: Trimmed stdout
        error: Trimmed stderr or transport error message
        exit_code: Remote exit status (None if the session never completed)
        attempts: Number of sessions opened
        error_type: ErrorTypes classification for transport failures
    """

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    attempts: int = 1
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "attempts": self.attempts,
        }
        if self.error:
            result["error"] = self.error
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.error_type:
            result["error_type"] = self.error_type
        return result


class NodeSource(str, Enum):
    """Where a NodeView was observed."""

    GATEWAY_CLI = "gateway-cli"
    GATEWAY_HTTP = "gateway-http"
    TCP = "tcp"
    LOCAL = "local"


class MachineStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class NodeIdentity:
    """The identifying fields of a node or machine.

    Different sources name the same node differently, so matching works on
    the union of all of these values.
    """

    hostname: str | None = None
    name: str | None = None
    display_name: str | None = None
    ip: str | None = None
    node_id: str | None = None

    def values(self) -> frozenset[str]:
        """Normalized (trimmed, lower-cased, non-empty) identifier set."""
        raw = (self.hostname, self.name, self.display_name, self.ip, self.node_id)
        return frozenset(v for v in (_normalize(r) for r in raw) if v)

    @property
    def label(self) -> str:
        """Best human-readable name."""
        return (
            self.display_name
            or self.name
            or self.hostname
            or self.node_id
            or self.ip
            or ""
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in {
                "hostname": self.hostname,
                "name": self.name,
                "displayName": self.display_name,
                "ip": self.ip,
                "nodeId": self.node_id,
            }.items()
            if v
        }


@dataclass
class NodeView:
    """Normalized, source-tagged snapshot of one live node.

    Never persisted; it is the input unit of reconciliation.
    """

    identity: NodeIdentity
    connected: bool = False
    platform: str | None = None
    capabilities: list[str] = field(default_factory=list)
    version: str | None = None
    source: NodeSource = NodeSource.GATEWAY_CLI

    @property
    def label(self) -> str:
        return self.identity.label

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "name": self.label,
            **self.identity.to_dict(),
            "connected": self.connected,
            "source": self.source.value,
        }
        if self.platform:
            result["platform"] = self.platform
        if self.capabilities:
            result["capabilities"] = list(self.capabilities)
        if self.version:
            result["version"] = self.version
        return result


@dataclass
class MachineRecord:
    """The control plane's persisted belief about one node.

    Attributes:
        id: Store-assigned identifier
        name: Machine name
        display_name: Operator-facing name
        hostname: Hostname reported by the node
        ip_address: Last known IP address
        os: Operating system label (e.g. "linux", "macos")
        status: connected, disconnected or unknown
        last_seen: When the node was last observed connected
        created_at: When the record was created
    """

    id: str
    name: str = ""
    display_name: str = ""
    hostname: str = ""
    ip_address: str = ""
    os: str = ""
    status: MachineStatus = MachineStatus.UNKNOWN
    last_seen: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def identity(self) -> NodeIdentity:
        return NodeIdentity(
            hostname=self.hostname or None,
            name=self.name or None,
            display_name=self.display_name or None,
            ip=self.ip_address or None,
        )

    @property
    def is_placeholder(self) -> bool:
        """True when the operator registered the machine by name only."""
        return not self.hostname and not self.ip_address

    @property
    def has_custom_display_name(self) -> bool:
        """True when the display name differs from the hostname."""
        return bool(self.display_name) and (
            _normalize(self.display_name) != _normalize(self.hostname)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "hostname": self.hostname,
            "ipAddress": self.ip_address,
            "os": self.os,
            "status": self.status.value,
            "lastSeen": _isoformat(self.last_seen),
            "createdAt": _isoformat(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            display_name=data.get("displayName") or "",
            hostname=data.get("hostname") or "",
            ip_address=data.get("ipAddress") or "",
            os=data.get("os") or "",
            status=MachineStatus(data.get("status") or MachineStatus.UNKNOWN.value),
            last_seen=_parse_datetime(data.get("lastSeen")),
            created_at=_parse_datetime(data.get("createdAt")) or utcnow(),
        )


@dataclass
class PendingDevice:
    """A device that announced itself to the gateway but is not admitted."""

    request_id: str
    identity: NodeIdentity = field(default_factory=NodeIdentity)
    role: str = "node"
    first_seen_age: str = ""
    platform: str | None = None

    @property
    def label(self) -> str:
        return self.identity.label or self.request_id

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "requestId": self.request_id,
            "name": self.label,
            **self.identity.to_dict(),
            "role": self.role,
        }
        if self.first_seen_age:
            result["age"] = self.first_seen_age
        if self.platform:
            result["platform"] = self.platform
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingDevice":
        return cls(
            request_id=data["requestId"],
            identity=NodeIdentity(
                hostname=data.get("hostname"),
                name=data.get("name"),
                display_name=data.get("displayName"),
                ip=data.get("ip"),
                node_id=data.get("nodeId"),
            ),
            role=data.get("role") or "node",
            first_seen_age=data.get("age") or "",
            platform=data.get("platform"),
        )


@dataclass
class TrackedMachine:
    """A MachineRecord enriched with its live match, if any."""

    record: MachineRecord
    live: NodeView | None = None

    @property
    def status(self) -> MachineStatus:
        if self.live is not None and self.live.connected:
            return MachineStatus.CONNECTED
        return self.record.status

    def to_dict(self) -> dict[str, Any]:
        result = self.record.to_dict()
        result["status"] = self.status.value
        result["source"] = self.live.source.value if self.live else NodeSource.LOCAL.value
        if self.live is not None:
            result["platform"] = self.live.platform or self.record.os
            result["version"] = self.live.version or ""
            result["capabilities"] = list(self.live.capabilities)
        return result


@dataclass
class FleetView:
    """The reconciled view of one gateway's fleet."""

    instance_id: str
    gateway_online: bool = False
    gateway_status: str = "unknown"
    method: str = ""
    live_nodes: list[NodeView] = field(default_factory=list)
    paired_devices: list[NodeView] = field(default_factory=list)
    pending_devices: list[PendingDevice] = field(default_factory=list)
    pending_source: str = "none"
    tracked_machines: list[TrackedMachine] = field(default_factory=list)
    discovered: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "instanceId": self.instance_id,
            "gateway": self.gateway_status,
            "gatewayOnline": self.gateway_online,
            "method": self.method,
            "liveNodes": [n.to_dict() for n in self.live_nodes],
            "paired": [n.to_dict() for n in self.paired_devices],
            "pending": [d.to_dict() for d in self.pending_devices],
            "pendingSource": self.pending_source,
            "trackedMachines": [t.to_dict() for t in self.tracked_machines],
            "discovered": list(self.discovered),
        }


@dataclass
class ProbeResult:
    """Outcome of one health-check method."""

    method: str
    reachable: bool
    latency_ms: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"method": self.method, "reachable": self.reachable}
        if self.latency_ms is not None:
            result["latencyMs"] = self.latency_ms
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class HealthCheckResult:
    """Result of health-checking one machine.

    Unreachable machines are reported here with ``reachable=False``;
    they are never raised as exceptions.
    """

    machine_id: str
    status: MachineStatus
    reachable: bool = False
    method: str | None = None
    latency_ms: int | None = None
    checked_at: datetime = field(default_factory=utcnow)
    results: list[ProbeResult] = field(default_factory=list)
    message: str = ""

    @property
    def no_checks_possible(self) -> bool:
        return not self.results

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "machineId": self.machine_id,
            "status": self.status.value,
            "reachable": self.reachable,
            "lastChecked": self.checked_at.isoformat(),
            "results": [r.to_dict() for r in self.results],
            "noChecksPossible": self.no_checks_possible,
        }
        if self.method:
            result["method"] = self.method
        if self.latency_ms is not None:
            result["latencyMs"] = self.latency_ms
        if self.message:
            result["message"] = self.message
        return result


class PairingStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    REMOVED = "removed"
    ALREADY_APPROVED = "already_approved"
    ALREADY_REJECTED = "already_rejected"
    NOT_FOUND = "not_found"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class PairingOutcome:
    """Result of an approve, reject or remove operation.

    Attributes:
        device_id: Sanitized device/request id
        action: approve, reject or remove
        status: Resulting PairingStatus
        success: Whether the mutation took effect (or already had)
        retryable: True when every gateway attempt failed at transport level
        gateway_applied: The gateway CLI or device file was mutated
        local_applied: The local pending ledger was mutated
        device: Details of the device, when known
        machine_id: MachineRecord created or updated on approve
        message: Human-readable summary
    """

    device_id: str
    action: str
    status: PairingStatus
    success: bool = False
    retryable: bool = False
    gateway_applied: bool = False
    local_applied: bool = False
    device: dict[str, Any] | None = None
    machine_id: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "deviceId": self.device_id,
            "action": self.action,
            "status": self.status.value,
            "success": self.success,
            "retryable": self.retryable,
            "gatewayApplied": self.gateway_applied,
            "localApplied": self.local_applied,
        }
        if self.device is not None:
            result["device"] = self.device
        if self.machine_id:
            result["machineId"] = self.machine_id
        if self.message:
            result["message"] = self.message
        return result
