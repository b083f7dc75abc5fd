"""Decoders for gateway command output.

Gateway commands print JSON, JSON preceded by CLI warnings, or plain text.
decode_output() classifies the raw text once; the parse_* functions turn a
decoded document into typed views and raise ParseError when the document
does not have the expected shape. Callers at the fallback boundary treat a
ParseError as "no signal from this source".
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .commands import NOT_LISTENING, PROCESS_MARKER
from .exceptions import ParseError
from .types import ExecutionResult, NodeIdentity, NodeSource, NodeView, PendingDevice

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()


class OutputKind(str, Enum):
    JSON = "json"
    TEXT = "text"


@dataclass
class DecodedOutput:
    """Raw output tagged as either a JSON document or plain text.

    Attributes:
        kind: JSON when a document could be decoded, TEXT otherwise
        raw: The original output
        data: The decoded document (JSON only)
    """

    kind: OutputKind
    raw: str
    data: Any = None

    @property
    def is_json(self) -> bool:
        return self.kind is OutputKind.JSON

    @property
    def error(self) -> str | None:
        """The ``error`` field of a JSON object, if present."""
        if self.is_json and isinstance(self.data, dict) and self.data.get("error"):
            return str(self.data["error"])
        return None


def extract_json(text: str) -> Any:
    """Decode the first JSON object or array embedded in text.

    Raises:
        ParseError: If no JSON document can be found
    """
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            value, _ = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            continue
        return value
    raise ParseError("No JSON document in output", raw=text)


def decode_output(text: str | None) -> DecodedOutput:
    """Classify command output as JSON or text.

    Example:
        >>> decode_output('warning: old config\\n{"nodes": []}').kind
        <OutputKind.JSON: 'json'>
        >>> decode_output("Could not list nodes").kind
        <OutputKind.TEXT: 'text'>
    """
    raw = (text or "").strip()
    if not raw:
        return DecodedOutput(OutputKind.TEXT, raw)
    try:
        return DecodedOutput(OutputKind.JSON, raw, json.loads(raw))
    except json.JSONDecodeError:
        pass
    try:
        return DecodedOutput(OutputKind.JSON, raw, extract_json(raw))
    except ParseError:
        return DecodedOutput(OutputKind.TEXT, raw)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _str_or_none(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _capabilities(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [c.strip() for c in value.split(",") if c.strip()]
    if isinstance(value, dict):
        return [str(k) for k, v in value.items() if v]
    return [str(c) for c in value]


def node_view_from_raw(
    data: Any, source: NodeSource = NodeSource.GATEWAY_CLI
) -> NodeView | None:
    """Normalize one node object from any gateway source.

    Returns None for entries that carry no identifier at all.
    """
    if isinstance(data, str):
        data = {"id": data, "hostname": data}
    if not isinstance(data, dict):
        return None

    identity = NodeIdentity(
        hostname=_str_or_none(data.get("hostname")),
        name=_str_or_none(data.get("name")),
        display_name=_str_or_none(data.get("displayName")),
        ip=_str_or_none(_first(data, "ip", "ipAddress", "address", "remoteIp")),
        node_id=_str_or_none(_first(data, "nodeId", "id", "deviceId", "clientId")),
    )
    if not identity.values():
        logger.debug(f"Skipping node entry without identifiers: {data!r:.120}")
        return None

    status = str(data.get("status") or "").lower()
    connected = bool(data.get("connected")) or status == "connected" or bool(data.get("online"))

    return NodeView(
        identity=identity,
        connected=connected,
        platform=_str_or_none(_first(data, "platform", "os")),
        capabilities=_capabilities(_first(data, "caps", "capabilities")),
        version=_str_or_none(data.get("version")),
        source=source,
    )


def pending_from_raw(data: Any) -> PendingDevice | None:
    """Normalize one pending device request."""
    if isinstance(data, str):
        data = {"id": data, "hostname": data}
    if not isinstance(data, dict):
        return None
    request_id = _str_or_none(_first(data, "requestId", "id", "deviceId"))
    if request_id is None:
        return None
    return PendingDevice(
        request_id=request_id,
        identity=NodeIdentity(
            hostname=_str_or_none(data.get("hostname")),
            name=_str_or_none(data.get("name")),
            display_name=_str_or_none(data.get("displayName")),
            ip=_str_or_none(_first(data, "ip", "address", "remoteIp")),
            node_id=_str_or_none(_first(data, "nodeId", "deviceId", "clientId")),
        ),
        role=str(data.get("role") or "node"),
        first_seen_age=str(data.get("age") or ""),
        platform=_str_or_none(_first(data, "platform", "os")),
    )


def _views(entries: Iterable[Any], source: NodeSource) -> list[NodeView]:
    return [v for v in (node_view_from_raw(e, source) for e in entries) if v is not None]


def _require_document(decoded: DecodedOutput, what: str) -> Any:
    if not decoded.is_json:
        raise ParseError(f"{what}: output is not JSON", raw=decoded.raw)
    if decoded.error:
        raise ParseError(f"{what}: {decoded.error}", raw=decoded.raw)
    return decoded.data


def parse_node_list(decoded: DecodedOutput) -> list[NodeView]:
    """Parse ``gateway call node.list`` output: ``{"nodes": [...]}``."""
    data = _require_document(decoded, "node.list")
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
        raise ParseError("node.list: missing 'nodes' array", raw=decoded.raw)
    return _views(data["nodes"], NodeSource.GATEWAY_CLI)


def parse_nodes_status(decoded: DecodedOutput) -> list[NodeView]:
    """Parse ``nodes status`` output (array, or object keyed by node)."""
    data = _require_document(decoded, "nodes status")
    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        entries = data.get("nodes") or data.get("data") or [
            v for v in data.values() if isinstance(v, dict)
        ]
    else:
        raise ParseError("nodes status: unexpected document", raw=decoded.raw)
    if not isinstance(entries, list):
        raise ParseError("nodes status: unexpected document", raw=decoded.raw)
    return _views(entries, NodeSource.GATEWAY_CLI)


@dataclass
class DeviceList:
    paired: list[NodeView] = field(default_factory=list)
    pending: list[PendingDevice] = field(default_factory=list)


def parse_device_list(decoded: DecodedOutput) -> DeviceList:
    """Parse ``devices list`` output into paired and pending devices.

    Accepts ``{"paired": [...], "pending": [...]}`` or a flat list whose
    entries carry a ``status`` field.
    """
    data = _require_document(decoded, "devices list")
    result = DeviceList()

    if isinstance(data, dict) and ("paired" in data or "pending" in data):
        result.paired = _views(data.get("paired") or [], NodeSource.GATEWAY_CLI)
        result.pending = [
            p for p in (pending_from_raw(e) for e in data.get("pending") or []) if p is not None
        ]
        return result

    if isinstance(data, list):
        entries = data
    elif isinstance(data, dict):
        entries = data.get("devices") or data.get("data") or list(data.values())
    else:
        raise ParseError("devices list: unexpected document", raw=decoded.raw)

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        status = str(entry.get("status") or "").lower()
        if status == "pending":
            device = pending_from_raw(entry)
            if device is not None:
                result.pending.append(device)
        elif status == "paired":
            view = node_view_from_raw(entry)
            if view is not None:
                result.paired.append(view)
    return result


def parse_device_file(decoded: DecodedOutput) -> list[Any]:
    """Parse a raw pending.json or paired.json file (list or keyed object)."""
    data = _require_document(decoded, "device file")
    if isinstance(data, dict):
        return [
            dict(v, requestId=v.get("requestId", k)) if isinstance(v, dict) else v
            for k, v in data.items()
        ]
    if isinstance(data, list):
        return data
    raise ParseError("device file: unexpected document", raw=decoded.raw)


def parse_pending_file(decoded: DecodedOutput) -> list[PendingDevice]:
    return [p for p in (pending_from_raw(e) for e in parse_device_file(decoded)) if p is not None]


def parse_paired_file(decoded: DecodedOutput) -> list[NodeView]:
    return _views(parse_device_file(decoded), NodeSource.GATEWAY_CLI)


@dataclass
class ProcessProbe:
    """What the raw ps/ss heuristic says about the gateway."""

    process_running: bool
    port_listening: bool
    processes: list[str] = field(default_factory=list)

    @property
    def online(self) -> bool:
        return self.process_running and self.port_listening


def parse_process_probe(output: str, port: int) -> ProcessProbe:
    """Parse the output of build_process_probe_command().

    Raises:
        ParseError: If the section marker is missing
    """
    if PROCESS_MARKER not in (output or ""):
        raise ParseError("Process probe output has no listening section", raw=output or "")
    procs_part, _, ports_part = output.partition(PROCESS_MARKER)
    processes = [line for line in procs_part.splitlines() if "openclaw" in line]
    listening = (
        NOT_LISTENING not in ports_part
        and any(f":{port}" in line for line in ports_part.splitlines())
    )
    return ProcessProbe(process_running=bool(processes), port_listening=listening, processes=processes)


class MutationOutcome(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    FAILED = "failed"


_APPLIED_MARKERS = {
    "approve": ("approved", "Approved", "✓"),
    "reject": ("rejected", "Rejected"),
    "remove": ("removed", "Removed"),
}
_NOT_FOUND_MARKERS = ("not found", "unknown request", "no pending", "no such")


def parse_mutation(result: ExecutionResult, action: str) -> MutationOutcome:
    """Decide whether a device mutation (CLI or file script) took effect.

    A JSON object counts as applied when it reports success, carries the
    device, sets the flag named after the action (``approved``,
    ``rejected``, ``removed``), or has no ``error`` field. Text counts as
    applied only when it contains a marker for this action, so output
    saying a request was rejected never confirms an approval.

    Raises:
        ValueError: If action is not approve, reject or remove
    """
    try:
        markers = _APPLIED_MARKERS[action]
    except KeyError:
        raise ValueError(f"Unknown device mutation: {action}") from None

    if result.error_type:
        return MutationOutcome.FAILED

    decoded = decode_output(result.output)
    if decoded.is_json and isinstance(decoded.data, dict):
        data = decoded.data
        if data.get("success") or data.get("device") or data.get(markers[0]):
            return MutationOutcome.APPLIED
        error = data.get("error")
        if not error:
            return MutationOutcome.APPLIED
        if any(m in str(error).lower() for m in _NOT_FOUND_MARKERS):
            return MutationOutcome.NOT_FOUND
        return MutationOutcome.FAILED

    text = decoded.raw
    if any(m in text for m in markers) and "error" not in text.lower():
        return MutationOutcome.APPLIED
    if any(m in text.lower() for m in _NOT_FOUND_MARKERS):
        return MutationOutcome.NOT_FOUND
    return MutationOutcome.FAILED
