"""Persistence boundary: machine records and the local pairing ledger.

Both come in an in-memory flavour (tests, one-shot CLI runs) and a JSON
file flavour. Updates touch one record at a time; the JSON file is
rewritten after every change.
"""

import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError, MachineNotFoundError
from .matching import normalize_identifier
from .types import MachineRecord, MachineStatus, PendingDevice, utcnow

logger = logging.getLogger(__name__)

_RECORD_FIELDS = {f.name for f in fields(MachineRecord)} - {"id"}


def _read_json(path: Path) -> Any:
    try:
        with path.open() as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Corrupt store file {path}: {e}") from e


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w") as f:
        json.dump(data, f, indent=2)
    tmp.replace(path)


class MachineStore(ABC):
    """CRUD over persisted machine records."""

    @abstractmethod
    async def list_machines(self) -> list[MachineRecord]: ...

    @abstractmethod
    async def get_machine(self, machine_id: str) -> MachineRecord | None: ...

    @abstractmethod
    async def create_machine(self, **fields: Any) -> MachineRecord: ...

    @abstractmethod
    async def update_machine(self, machine_id: str, **fields: Any) -> MachineRecord:
        """Update fields of one record.

        Raises:
            MachineNotFoundError: If the id does not exist
        """

    @abstractmethod
    async def delete_machine(self, machine_id: str) -> bool: ...


def _check_fields(values: dict[str, Any]) -> dict[str, Any]:
    unknown = set(values) - _RECORD_FIELDS
    if unknown:
        raise TypeError(f"Unknown machine fields: {', '.join(sorted(unknown))}")
    if "status" in values and not isinstance(values["status"], MachineStatus):
        values["status"] = MachineStatus(values["status"])
    return values


class MemoryMachineStore(MachineStore):
    """Machine records held in a dict, keyed by id.

    Records are copied in and out so callers never alias stored state.
    """

    def __init__(self, records: list[MachineRecord] | None = None) -> None:
        self._records: dict[str, MachineRecord] = {r.id: copy.copy(r) for r in records or []}

    def _changed(self) -> None:
        """Hook for persistent subclasses."""

    async def list_machines(self) -> list[MachineRecord]:
        return sorted(
            (copy.copy(r) for r in self._records.values()),
            key=lambda r: r.created_at,
        )

    async def get_machine(self, machine_id: str) -> MachineRecord | None:
        record = self._records.get(machine_id)
        return copy.copy(record) if record else None

    async def create_machine(self, **fields: Any) -> MachineRecord:
        values = _check_fields(fields)
        values.setdefault("created_at", utcnow())
        record = MachineRecord(id=uuid.uuid4().hex, **values)
        self._records[record.id] = record
        self._changed()
        logger.debug(f"Created machine {record.id} ({record.display_name or record.name})")
        return copy.copy(record)

    async def update_machine(self, machine_id: str, **fields: Any) -> MachineRecord:
        record = self._records.get(machine_id)
        if record is None:
            raise MachineNotFoundError(f"Machine not found: {machine_id}", machine_id=machine_id)
        updated = replace(record, **_check_fields(fields))
        self._records[machine_id] = updated
        self._changed()
        return copy.copy(updated)

    async def delete_machine(self, machine_id: str) -> bool:
        if self._records.pop(machine_id, None) is None:
            return False
        self._changed()
        logger.debug(f"Deleted machine {machine_id}")
        return True


class JsonMachineStore(MemoryMachineStore):
    """Machine records persisted as a JSON list."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        records: list[MachineRecord] = []
        if self.path.exists():
            data = _read_json(self.path) or []
            records = [MachineRecord.from_dict(d) for d in data]
            logger.debug(f"Loaded {len(records)} machines from {self.path}")
        super().__init__(records)

    def _changed(self) -> None:
        _write_json(self.path, [r.to_dict() for r in self._records.values()])


@dataclass
class LocalPairingState:
    """What this control plane remembers about pairing for one instance.

    Attributes:
        pending: Last known pending devices
        approved_count: Number of approvals performed locally
        approved_ids: Device ids approved through this control plane
        rejected_ids: Device ids rejected through this control plane
        removed_ids: Device ids removed through this control plane
    """

    pending: list[PendingDevice] = field(default_factory=list)
    approved_count: int = 0
    approved_ids: set[str] = field(default_factory=set)
    rejected_ids: set[str] = field(default_factory=set)
    removed_ids: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": [d.to_dict() for d in self.pending],
            "approvedCount": self.approved_count,
            "approvedIds": sorted(self.approved_ids),
            "rejectedIds": sorted(self.rejected_ids),
            "removedIds": sorted(self.removed_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocalPairingState":
        return cls(
            pending=[PendingDevice.from_dict(d) for d in data.get("pending", [])],
            approved_count=int(data.get("approvedCount", 0)),
            approved_ids=set(data.get("approvedIds", [])),
            rejected_ids=set(data.get("rejectedIds", [])),
            removed_ids=set(data.get("removedIds", [])),
        )


def _device_matches(device: PendingDevice, device_id: str) -> bool:
    wanted = normalize_identifier(device_id)
    return normalize_identifier(device.request_id) == wanted or wanted in device.identity.values()


class PairingLedger:
    """Per-instance LocalPairingState, in memory or backed by a JSON file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else None
        self._states: dict[str, LocalPairingState] = {}
        if self.path is not None and self.path.exists():
            data = _read_json(self.path) or {}
            self._states = {k: LocalPairingState.from_dict(v) for k, v in data.items()}

    def _save(self) -> None:
        if self.path is not None:
            _write_json(self.path, {k: v.to_dict() for k, v in self._states.items()})

    def state(self, instance_id: str) -> LocalPairingState:
        return self._states.setdefault(instance_id, LocalPairingState())

    def list_pending(self, instance_id: str) -> list[PendingDevice]:
        return list(self.state(instance_id).pending)

    def set_pending(self, instance_id: str, devices: list[PendingDevice]) -> None:
        """Replace the cached pending list with a fresh gateway answer."""
        self.state(instance_id).pending = list(devices)
        self._save()

    def find_pending(self, instance_id: str, device_id: str) -> PendingDevice | None:
        for device in self.state(instance_id).pending:
            if _device_matches(device, device_id):
                return device
        return None

    def take_pending(self, instance_id: str, device_id: str) -> PendingDevice | None:
        """Remove and return a pending device, or None if it is not listed."""
        state = self.state(instance_id)
        device = self.find_pending(instance_id, device_id)
        if device is not None:
            state.pending = [d for d in state.pending if d is not device]
            self._save()
        return device

    def is_approved(self, instance_id: str, device_id: str) -> bool:
        return device_id in self.state(instance_id).approved_ids

    def is_rejected(self, instance_id: str, device_id: str) -> bool:
        return device_id in self.state(instance_id).rejected_ids

    def record_approved(self, instance_id: str, device_id: str, bump: bool = True) -> None:
        state = self.state(instance_id)
        state.approved_ids.add(device_id)
        state.rejected_ids.discard(device_id)
        state.removed_ids.discard(device_id)
        if bump:
            state.approved_count += 1
        self._save()

    def record_rejected(self, instance_id: str, device_id: str) -> None:
        state = self.state(instance_id)
        state.rejected_ids.add(device_id)
        self._save()

    def record_removed(self, instance_id: str, device_id: str) -> None:
        state = self.state(instance_id)
        state.approved_ids.discard(device_id)
        state.removed_ids.add(device_id)
        self._save()
