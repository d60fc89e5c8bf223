"""Tests for the instance manifest store."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from conftest import write_manifest

from multipb.locking import LockManager
from multipb.ports import PortAllocationError, PortAllocator
from multipb.state.manifest import (
    InstanceExistsError,
    InstanceNameError,
    InstanceNotFoundError,
    InstanceRecord,
    InstanceStatus,
    ManifestStore,
    validate_instance_name,
)


def _store(tmp_path: Path, *, maximum: int = 39999) -> ManifestStore:
    locks = LockManager(tmp_path / "run", default_timeout=5.0)
    return ManifestStore(
        tmp_path / "data" / "instances.json",
        locks=locks,
        ports=PortAllocator(minimum=30000, maximum=maximum),
    )


def test_add_allocates_smallest_port_and_persists(tmp_path: Path) -> None:
    """Records are written with their allocated port and creation time."""
    store = _store(tmp_path)

    async def scenario() -> None:
        first = await store.add("acme")
        second = await store.add("beta", memory="512M", version="0.22.4")
        assert (first.port, second.port) == (30000, 30001)

    asyncio.run(scenario())

    data = json.loads(store.path.read_text(encoding="utf-8"))
    assert data["acme"]["port"] == 30000
    assert data["acme"]["status"] == "stopped"
    assert data["acme"]["created"].endswith("Z")
    assert data["beta"]["memory"] == "512M"
    assert data["beta"]["version"] == "0.22.4"
    assert "version" not in data["acme"]


def test_concurrent_adds_receive_distinct_ports(tmp_path: Path) -> None:
    """Parallel creates never share a port."""
    store = _store(tmp_path)
    names = [f"tenant-{index}" for index in range(10)]

    async def scenario() -> list[InstanceRecord]:
        return list(await asyncio.gather(*(store.add(name) for name in names)))

    records = asyncio.run(scenario())

    ports = sorted(record.port for record in records)
    assert ports == list(range(30000, 30010))
    manifest = asyncio.run(store.load())
    assert sorted(manifest) == sorted(names)
    assert len({record.port for record in manifest.values()}) == 10


def test_duplicate_name_is_rejected(tmp_path: Path) -> None:
    """Creating an existing name fails and leaves the manifest unchanged."""
    store = _store(tmp_path)

    async def scenario() -> None:
        await store.add("acme")
        before = store.path.read_text(encoding="utf-8")
        with pytest.raises(InstanceExistsError, match="Instance 'acme' already exists"):
            await store.add("acme", port=30500)
        assert store.path.read_text(encoding="utf-8") == before

    asyncio.run(scenario())


def test_out_of_range_port_does_not_touch_manifest(tmp_path: Path) -> None:
    """A rejected port request never writes the document."""
    store = _store(tmp_path)

    async def scenario() -> None:
        with pytest.raises(PortAllocationError, match="between 30000 and 39999"):
            await store.add("beta", port=20000)

    asyncio.run(scenario())

    assert not store.path.exists()


def test_exhausted_range_raises(tmp_path: Path) -> None:
    """Allocation fails once every port is taken."""
    store = _store(tmp_path, maximum=30001)

    async def scenario() -> None:
        await store.add("one")
        await store.add("two")
        with pytest.raises(PortAllocationError, match="No free ports"):
            await store.add("three")

    asyncio.run(scenario())


@pytest.mark.parametrize("name", ["", "   ", "../etc", "a b", "-leading", "x" * 64, None])
def test_invalid_names_rejected(name: object) -> None:
    """Names must be usable as directory and script arguments."""
    with pytest.raises(InstanceNameError):
        validate_instance_name(name)


def test_valid_name_is_trimmed() -> None:
    """Surrounding whitespace is ignored."""
    assert validate_instance_name("  acme_1-prod ") == "acme_1-prod"


def test_missing_manifest_loads_empty(tmp_path: Path) -> None:
    """A missing document is an empty manifest."""
    store = _store(tmp_path)

    assert asyncio.run(store.load()) == {}


def test_corrupt_manifest_loads_empty(tmp_path: Path) -> None:
    """Unparseable JSON is treated as empty rather than raising."""
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json", encoding="utf-8")

    assert asyncio.run(store.load()) == {}


def test_malformed_entries_are_skipped(tmp_path: Path) -> None:
    """Entries without a usable port are dropped; the rest survive."""
    store = _store(tmp_path)
    write_manifest(
        store.path,
        {
            "good": {"port": 30002, "status": "running", "created": "2024-01-01T00:00:00Z"},
            "noport": {"status": "running"},
            "badport": {"port": "abc"},
            "odd-status": {"port": 30003, "status": "sleeping"},
            "far": {"port": 20000},
        },
    )

    manifest = asyncio.run(store.load())

    assert set(manifest) == {"good", "odd-status", "far"}
    assert manifest["good"].status is InstanceStatus.RUNNING
    assert manifest["odd-status"].status is InstanceStatus.UNKNOWN
    assert manifest["far"].port == 20000


def test_used_ports_sorted_by_port(tmp_path: Path) -> None:
    """Port listings are ordered numerically."""
    store = _store(tmp_path)
    write_manifest(
        store.path,
        {"zeta": {"port": 30000}, "alpha": {"port": 30010}, "mid": {"port": 30005}},
    )

    entries = asyncio.run(store.used_ports())

    assert entries == [
        {"port": 30000, "instance": "zeta"},
        {"port": 30005, "instance": "mid"},
        {"port": 30010, "instance": "alpha"},
    ]


def test_remove_frees_port_for_reuse(tmp_path: Path) -> None:
    """Removing an instance makes its port the next allocation."""
    store = _store(tmp_path)

    async def scenario() -> None:
        await store.add("one")
        await store.add("two")
        removed = await store.remove("one")
        assert removed.port == 30000
        assert await store.allocate_port() == 30000
        with pytest.raises(InstanceNotFoundError, match="Instance 'one' not found"):
            await store.remove("one")

    asyncio.run(scenario())


def test_update_keeps_created_timestamp(tmp_path: Path) -> None:
    """Status and version change; creation time does not."""
    store = _store(tmp_path)

    async def scenario() -> None:
        record = await store.add("acme")
        updated = await store.update(
            "acme", status=InstanceStatus.RUNNING, version="0.23.0"
        )
        assert updated.created == record.created
        reloaded = await store.require("acme")
        assert reloaded.status is InstanceStatus.RUNNING
        assert reloaded.version == "0.23.0"
        with pytest.raises(InstanceNotFoundError):
            await store.update("ghost", status=InstanceStatus.ERROR)

    asyncio.run(scenario())


def test_failed_mutation_is_not_persisted(tmp_path: Path) -> None:
    """Exceptions inside ``mutate`` discard the pending changes."""
    store = _store(tmp_path)

    async def scenario() -> None:
        await store.add("acme")
        with pytest.raises(RuntimeError):
            async with store.mutate() as manifest:
                manifest.pop("acme")
                raise RuntimeError("abort")
        assert await store.get("acme") is not None

    asyncio.run(scenario())


def test_writes_leave_no_temp_files(tmp_path: Path) -> None:
    """Atomic writes clean up after themselves."""
    store = _store(tmp_path)

    asyncio.run(store.add("acme"))

    assert [path.name for path in store.path.parent.iterdir()] == ["instances.json"]
