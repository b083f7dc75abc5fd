"""Tests for machine record deduplication."""

from datetime import datetime, timedelta, timezone

import pytest

from clawfleet.dedup import choose_survivor, deduplicate_machines
from clawfleet.store import MemoryMachineStore
from clawfleet.types import MachineRecord

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def machine(id, hostname, display_name="", age_days=0):
    return MachineRecord(
        id=id,
        hostname=hostname,
        display_name=display_name,
        created_at=T0 + timedelta(days=age_days),
    )


class TestChooseSurvivor:
    """Tests for choose_survivor."""

    def test_custom_display_name_beats_age(self):
        group = [
            machine("old", "gpu-01", "gpu-01", age_days=0),
            machine("named", "GPU-01", "Training Rig", age_days=3),
        ]
        assert choose_survivor(group).id == "named"

    def test_oldest_when_no_custom_name(self):
        group = [machine("new", "gpu-01", age_days=5), machine("old", "gpu-01", age_days=1)]
        assert choose_survivor(group).id == "old"


class TestDeduplicateMachines:
    """Tests for deduplicate_machines."""

    @pytest.mark.asyncio
    async def test_keeps_custom_display_name(self):
        store = MemoryMachineStore([
            machine("a", "gpu-01", "gpu-01", age_days=0),
            machine("b", "GPU-01", "Training Rig", age_days=2),
            machine("c", "gpu-01 ", age_days=4),
            machine("d", "pi-01"),
        ])

        report = await deduplicate_machines(store)

        assert report.removed == 2
        assert sorted(report.removed_ids) == ["a", "c"]
        assert report.kept_ids == ["b"]
        assert report.remaining == 2
        assert sorted(m.id for m in await store.list_machines()) == ["b", "d"]

    @pytest.mark.asyncio
    async def test_records_without_hostname_are_untouched(self):
        store = MemoryMachineStore([machine("a", ""), machine("b", ""), machine("c", "  ")])

        report = await deduplicate_machines(store)

        assert report.removed == 0
        assert len(await store.list_machines()) == 3
        assert report.to_dict()["remaining"] == 3
