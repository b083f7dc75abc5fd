"""Merge duplicate machine records that share a hostname."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from .store import MachineStore
from .types import MachineRecord

logger = logging.getLogger(__name__)


@dataclass
class DedupReport:
    removed_ids: list[str] = field(default_factory=list)
    kept_ids: list[str] = field(default_factory=list)
    remaining: int = 0

    @property
    def removed(self) -> int:
        return len(self.removed_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "removed": self.removed,
            "removedIds": list(self.removed_ids),
            "keptIds": list(self.kept_ids),
            "remaining": self.remaining,
        }


def choose_survivor(group: list[MachineRecord]) -> MachineRecord:
    """Prefer an operator-chosen display name, then the oldest record."""
    named = [r for r in group if r.has_custom_display_name]
    candidates = named or group
    return min(candidates, key=lambda r: r.created_at)


async def deduplicate_machines(store: MachineStore) -> DedupReport:
    """Group records by lower-cased hostname and keep one per group.

    Records without a hostname are never touched.
    """
    records = await store.list_machines()
    groups: dict[str, list[MachineRecord]] = defaultdict(list)
    for record in records:
        key = record.hostname.strip().lower()
        if key:
            groups[key].append(record)

    report = DedupReport()
    for hostname, group in groups.items():
        if len(group) < 2:
            continue
        survivor = choose_survivor(group)
        report.kept_ids.append(survivor.id)
        for record in group:
            if record.id == survivor.id:
                continue
            if await store.delete_machine(record.id):
                report.removed_ids.append(record.id)
        logger.info(f"Deduplicated {hostname}: kept {survivor.id}, removed {len(group) - 1}")

    report.remaining = len(records) - report.removed
    return report
