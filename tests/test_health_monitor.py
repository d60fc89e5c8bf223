"""Tests for the periodic health monitor."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import httpx
from conftest import RecordingSink, write_manifest

from multipb.locking import LockManager
from multipb.monitor import HealthMonitor
from multipb.ports import PortAllocator
from multipb.providers.notifications import Transition
from multipb.state.history import HealthHistoryStore
from multipb.state.manifest import ManifestStore


def _healthy(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"code": 200, "message": "API is healthy."})


def _down(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


def _monitor(
    tmp_path: Path,
    handler: Callable[[httpx.Request], object],
    *,
    retention: int = 100,
    interval: float = 60.0,
) -> tuple[HealthMonitor, ManifestStore, HealthHistoryStore, RecordingSink, httpx.AsyncClient]:
    manifest = ManifestStore(
        tmp_path / "data" / "instances.json",
        locks=LockManager(tmp_path / "run"),
        ports=PortAllocator(),
    )
    history = HealthHistoryStore(tmp_path / "data" / "health_history.json")
    sink = RecordingSink()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    monitor = HealthMonitor(
        manifest=manifest,
        history=history,
        sink=sink,
        client=client,
        interval=interval,
        retention=retention,
    )
    return monitor, manifest, history, sink, client


def test_transitions_are_edge_triggered(tmp_path: Path) -> None:
    """Healthy, healthy, down, down, healthy yields one DOWN and one RECOVERED."""
    sequence = iter([True, True, False, False, True])

    def handler(request: httpx.Request) -> httpx.Response:
        return _healthy(request) if next(sequence) else _down(request)

    monitor, manifest, history, sink, client = _monitor(tmp_path, handler)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> list[list[Transition]]:
        seen = []
        for _ in range(5):
            report = await monitor.tick()
            seen.append([event.transition for event in report.events])
        await client.aclose()
        return seen

    per_tick = asyncio.run(scenario())

    assert per_tick == [[], [], [Transition.DOWN], [], [Transition.RECOVERED]]
    assert [event.transition for event in sink.events] == [
        Transition.DOWN,
        Transition.RECOVERED,
    ]
    samples = asyncio.run(history.get("acme"))
    assert [sample.healthy for sample in samples] == [True, True, False, False, True]
    assert monitor.last_status("acme") is True


def test_first_observation_never_notifies(tmp_path: Path) -> None:
    """An instance that starts out down does not raise an alert."""
    monitor, manifest, _history, sink, client = _monitor(tmp_path, _down)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> None:
        report = await monitor.tick()
        assert report.healthy == {"acme": False}
        await client.aclose()

    asyncio.run(scenario())

    assert sink.events == []


def test_history_is_bounded(tmp_path: Path) -> None:
    """Only the newest samples are retained."""
    monitor, manifest, history, _sink, client = _monitor(tmp_path, _healthy, retention=3)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> None:
        for _ in range(5):
            await monitor.tick()
        await client.aclose()

    asyncio.run(scenario())

    assert len(asyncio.run(history.get("acme"))) == 3


def test_probe_requires_success_and_json(tmp_path: Path) -> None:
    """Non-2xx answers and non-JSON bodies count as unhealthy."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.port == 30000:
            return _healthy(request)
        if request.url.port == 30001:
            return httpx.Response(503, json={"code": 503})
        return httpx.Response(200, text="<html>maintenance</html>")

    monitor, _manifest, _history, _sink, client = _monitor(tmp_path, handler)

    async def scenario() -> list[bool]:
        results = [await monitor.probe(port) for port in (30000, 30001, 30002)]
        await client.aclose()
        return results

    assert asyncio.run(scenario()) == [True, False, False]
    assert monitor.health_url(30000) == "http://127.0.0.1:30000/api/health"


def test_one_failing_instance_does_not_stop_the_tick(tmp_path: Path) -> None:
    """Unexpected probe errors are isolated to their instance."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.port == 30001:
            raise RuntimeError("probe exploded")
        return _healthy(request)

    monitor, manifest, history, _sink, client = _monitor(tmp_path, handler)
    write_manifest(manifest.path, {"acme": {"port": 30000}, "beta": {"port": 30001}})

    async def scenario() -> None:
        report = await monitor.tick()
        assert report.healthy == {"acme": True}
        assert report.errors == {"beta": "probe exploded"}
        assert report.checked == 1
        await client.aclose()

    asyncio.run(scenario())

    assert len(asyncio.run(history.get("acme"))) == 1
    assert asyncio.run(history.get("beta")) == []


def test_overlapping_tick_is_skipped(tmp_path: Path) -> None:
    """A tick requested while another runs returns immediately."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return _healthy(request)

    monitor, manifest, _history, _sink, client = _monitor(tmp_path, handler)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> None:
        first = asyncio.create_task(monitor.tick())
        await entered.wait()
        second = await monitor.tick()
        assert second.skipped is True
        release.set()
        report = await first
        assert report.skipped is False
        assert report.healthy == {"acme": True}
        await client.aclose()

    asyncio.run(scenario())


def test_removed_instances_are_forgotten(tmp_path: Path) -> None:
    """Last known status is dropped once an instance leaves the manifest."""
    monitor, manifest, _history, _sink, client = _monitor(tmp_path, _healthy)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> None:
        await monitor.tick()
        assert monitor.last_status("acme") is True
        await manifest.remove("acme")
        report = await monitor.tick()
        assert report.checked == 0
        await client.aclose()

    asyncio.run(scenario())

    assert monitor.last_status("acme") is None


def test_start_and_stop_periodic_task(tmp_path: Path) -> None:
    """The periodic loop ticks on its interval until stopped."""
    monitor, manifest, history, _sink, client = _monitor(tmp_path, _healthy, interval=0.01)
    write_manifest(manifest.path, {"acme": {"port": 30000}})

    async def scenario() -> None:
        monitor.start()
        assert monitor.running
        for _ in range(100):
            await asyncio.sleep(0.02)
            if await history.get("acme"):
                break
        await monitor.stop()
        assert not monitor.running
        await client.aclose()

    asyncio.run(scenario())

    assert asyncio.run(history.get("acme"))


def test_ticks_from_another_process_are_skipped(tmp_path: Path) -> None:
    """Monitors sharing a runtime directory never tick at the same time."""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await release.wait()
        return _healthy(request)

    def build(client: httpx.AsyncClient) -> tuple[HealthMonitor, HealthHistoryStore]:
        # Separate lock managers stand in for separate processes.
        locks = LockManager(tmp_path / "run", default_timeout=1.0)
        history = HealthHistoryStore(tmp_path / "data" / "health_history.json")
        monitor = HealthMonitor(
            manifest=ManifestStore(
                tmp_path / "data" / "instances.json", locks=locks, ports=PortAllocator()
            ),
            history=history,
            sink=RecordingSink(),
            client=client,
            locks=locks,
        )
        return monitor, history

    write_manifest(tmp_path / "data" / "instances.json", {"acme": {"port": 30000}})

    async def scenario() -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        daemon, history = build(client)
        operator, _ = build(client)

        first = asyncio.create_task(daemon.tick())
        await entered.wait()
        second = await operator.tick()
        assert second.skipped is True
        release.set()
        assert (await first).skipped is False
        assert len(await history.get("acme")) == 1

        third = await operator.tick()
        assert third.skipped is False
        assert len(await history.get("acme")) == 2
        await client.aclose()

    asyncio.run(scenario())
