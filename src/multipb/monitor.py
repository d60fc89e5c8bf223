"""Periodic health probing with bounded history and edge-triggered alerts."""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from .locking import LockManager, LockTimeoutError
from .providers.notifications import NotificationEvent, NotificationSink
from .state.history import HealthHistoryStore, HealthSample, HistoryError
from .state.manifest import ManifestStore

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class TickReport:
    """Summary of one monitoring pass."""

    skipped: bool = False
    checked: int = 0
    healthy: dict[str, bool] = field(default_factory=dict)
    events: list[NotificationEvent] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "skipped": self.skipped,
            "checked": self.checked,
            "healthy": dict(self.healthy),
            "events": [
                {
                    "instance": event.instance,
                    "transition": event.transition.value,
                    "severity": event.severity,
                    "message": event.message,
                }
                for event in self.events
            ],
            "errors": dict(self.errors),
            "duration_ms": self.duration_ms,
        }


class HealthMonitor:
    """Probe every registered instance on a fixed cadence."""

    def __init__(
        self,
        *,
        manifest: ManifestStore,
        history: HealthHistoryStore,
        sink: NotificationSink,
        client: httpx.AsyncClient,
        interval: float = 60.0,
        retention: int = 100,
        probe_timeout: float = 2.0,
        health_path: str = "/api/health",
        host: str = "127.0.0.1",
        locks: LockManager | None = None,
    ) -> None:
        """Configure the monitor; call :meth:`start` to begin periodic ticks.

        With *locks*, each tick holds the monitor lock file so ticks from other
        processes sharing the runtime directory never overlap.
        """
        self._manifest = manifest
        self._history = history
        self._sink = sink
        self._client = client
        self.interval = float(interval)
        self.retention = int(retention)
        self.probe_timeout = float(probe_timeout)
        self.health_path = health_path
        self.host = host
        self._locks = locks
        self._last_status: dict[str, bool] = {}
        self._in_flight = False
        self._task: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[TickReport]] = set()

    @property
    def running(self) -> bool:
        """Return ``True`` while the periodic task is active."""
        return self._task is not None and not self._task.done()

    def last_status(self, name: str) -> bool | None:
        """Return the most recent health observation for *name*."""
        return self._last_status.get(name)

    # Probing ----------------------------------------------------------
    def health_url(self, port: int) -> str:
        """Return the health endpoint URL for an instance on *port*."""
        return f"http://{self.host}:{port}{self.health_path}"

    async def probe(self, port: int) -> bool:
        """Return ``True`` when the instance answers 2xx with a JSON body."""
        try:
            response = await self._client.get(self.health_url(port), timeout=self.probe_timeout)
        except httpx.HTTPError as exc:
            LOGGER.debug("Probe of port %s failed: %s", port, exc)
            return False
        if not response.is_success:
            return False
        try:
            response.json()
        except ValueError:
            return False
        return True

    # Ticks ------------------------------------------------------------
    async def tick(self) -> TickReport:
        """Run one monitoring pass unless another pass is still in flight."""
        if self._in_flight:
            LOGGER.warning("Skipping health tick; previous tick still running")
            return TickReport(skipped=True)
        self._in_flight = True
        try:
            async with AsyncExitStack() as stack:
                if self._locks is not None:
                    try:
                        await stack.enter_async_context(self._locks.monitor_lock(timeout=0))
                    except LockTimeoutError:
                        LOGGER.warning("Skipping health tick; another process is running one")
                        return TickReport(skipped=True)
                return await self._run_tick()
        finally:
            self._in_flight = False

    async def _run_tick(self) -> TickReport:
        started = time.monotonic()
        report = TickReport()
        manifest = await self._manifest.load()
        history = await self._history.load()
        names = list(manifest)
        results = await asyncio.gather(
            *(self.probe(manifest[name].port) for name in names),
            return_exceptions=True,
        )

        timestamp = _now_iso()
        for name, outcome in zip(names, results, strict=True):
            try:
                if isinstance(outcome, BaseException):
                    raise outcome
                healthy = bool(outcome)
                sample = HealthSample(timestamp=timestamp, healthy=healthy)
                HealthHistoryStore.record(history, name, sample, self.retention)
                report.checked += 1
                report.healthy[name] = healthy
                event = self._transition(name, healthy)
                if event is not None:
                    report.events.append(event)
                    self._sink.send(event)
            except Exception as exc:  # noqa: BLE001 - one instance must not stop the tick
                LOGGER.error("Health check for %s failed: %s", name, exc)
                report.errors[name] = str(exc) or type(exc).__name__

        for stale in set(self._last_status) - set(manifest):
            del self._last_status[stale]

        try:
            await self._history.save(history)
        except HistoryError as exc:
            LOGGER.error("Failed to persist health history: %s", exc)
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    def _transition(self, name: str, healthy: bool) -> NotificationEvent | None:
        previous = self._last_status.get(name)
        self._last_status[name] = healthy
        if previous is None or previous == healthy:
            return None
        if healthy:
            LOGGER.info("%s recovered", name)
            return NotificationEvent.recovered(name)
        LOGGER.warning("%s went down", name)
        return NotificationEvent.down(name)

    # Scheduling -------------------------------------------------------
    def start(self) -> None:
        """Start the periodic task on the running event loop."""
        if self.running:
            return
        LOGGER.info("Starting health monitor (interval: %ss)", self.interval)
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the periodic task and any tick it spawned."""
        tasks = [task for task in (self._task, *self._ticks) if task is not None]
        self._task = None
        self._ticks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self) -> None:
        # Ticks are spawned on a fixed cadence; a slow tick makes the next one skip.
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.interval)
            task = loop.create_task(self.tick())
            self._ticks.add(task)
            task.add_done_callback(self._tick_done)

    def _tick_done(self, task: asyncio.Task[TickReport]) -> None:
        self._ticks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Health tick failed: %s", exc)


__all__ = ["HealthMonitor", "TickReport"]
