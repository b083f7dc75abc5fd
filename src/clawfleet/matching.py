"""Identity matching between live nodes and machine records.

The gateway, its CLI and the local store each name a node differently
(hostname, display name, IP, node id). Two identities refer to the same
node when their normalized identifier sets share any value.

Known risk: two records that share a display name both overlap the same
node; the first one wins.
"""

from typing import Sequence

from .types import MachineRecord, NodeIdentity

_PLATFORM_ALIASES = {
    "darwin": "macos",
    "mac": "macos",
    "osx": "macos",
    "win32": "windows",
}


def normalize_identifier(value: str | None) -> str:
    """Trim and lower-case an identifier ("" for None)."""
    return value.strip().lower() if value else ""


def identifiers_overlap(a: NodeIdentity, b: NodeIdentity) -> bool:
    """True when the two identities share any normalized identifier.

    Example:
        >>> identifiers_overlap(NodeIdentity(hostname="GPU-01"), NodeIdentity(name="gpu-01 "))
        True
    """
    return not a.values().isdisjoint(b.values())


def find_matching_record(
    identity: NodeIdentity,
    records: Sequence[MachineRecord],
) -> MachineRecord | None:
    """First record whose identity overlaps.

    Several live nodes may resolve to the same record (a node that
    reconnected is often listed twice).
    """
    for record in records:
        if identifiers_overlap(identity, record.identity()):
            return record
    return None


def normalize_platform(value: str | None) -> str:
    """Map platform strings onto one vocabulary (``darwin`` -> ``macos``)."""
    platform = normalize_identifier(value)
    return _PLATFORM_ALIASES.get(platform, platform)


def platform_matches(record_os: str | None, node_platform: str | None) -> bool:
    """Loose OS comparison used when claiming placeholder records.

    An empty record OS matches any platform.
    """
    wanted = normalize_platform(record_os)
    if not wanted:
        return True
    actual = normalize_platform(node_platform)
    return bool(actual) and (wanted in actual or actual in wanted)
