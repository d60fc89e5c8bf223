"""Explicitly constructed runtime state shared by the API and the CLI."""
from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .backups import BackupManager
from .config import AppConfig
from .instances import InstanceManager
from .locking import LockManager
from .logging import StructuredLogger
from .monitor import HealthMonitor
from .ports import PortAllocator
from .providers.instance_logs import InstanceLogReader
from .providers.lifecycle import LifecycleGateway, ScriptLifecycleGateway
from .providers.notifications import NotificationSink, build_sink
from .proxy import ProxyRouter
from .releases import ReleaseManager
from .state.history import HealthHistoryStore
from .state.manifest import ManifestStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Aggregated runtime objects; build one per process or test."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    allocator: PortAllocator
    manifest: ManifestStore
    history: HealthHistoryStore
    lifecycle: LifecycleGateway
    notifier: NotificationSink
    http: httpx.AsyncClient
    monitor: HealthMonitor
    backups: BackupManager
    releases: ReleaseManager
    proxy: ProxyRouter
    instances: InstanceManager
    logs: InstanceLogReader

    async def aclose(self) -> None:
        """Stop the monitor and release network clients."""
        await self.monitor.stop()
        await self.notifier.aclose()
        await self.http.aclose()


def build_runtime(
    config: AppConfig,
    *,
    lifecycle: LifecycleGateway | None = None,
    notifier: NotificationSink | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    """Construct every collaborator from *config*.

    *lifecycle*, *notifier*, and *transport* replace the script gateway, the
    webhook sink, and the network transport (used by tests).
    """
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    allocator = PortAllocator(minimum=config.ports.min, maximum=config.ports.max)
    manifest = ManifestStore(config.manifest_file, locks=locks, ports=allocator)
    history = HealthHistoryStore(config.history_file)
    gateway = lifecycle or ScriptLifecycleGateway(
        scripts_dir=config.lifecycle.scripts_dir,
        timeout=config.lifecycle.timeout,
    )
    http = httpx.AsyncClient(transport=transport) if transport else httpx.AsyncClient()
    sink = notifier or build_sink(
        config.notifications.webhook_url,
        timeout=config.notifications.timeout,
        client=http if transport else None,
    )
    monitor = HealthMonitor(
        manifest=manifest,
        history=history,
        sink=sink,
        client=http,
        interval=config.monitoring.interval_seconds,
        retention=config.monitoring.history_retention,
        probe_timeout=config.monitoring.probe_timeout,
        health_path=config.monitoring.health_path,
        locks=locks,
    )
    backups = BackupManager(
        backups_root=config.backups.root,
        data_dir=config.data_dir,
        manifest=manifest,
        lifecycle=gateway,
        locks=locks,
        logger=logger,
    )
    releases = ReleaseManager(lifecycle=gateway, manifest=manifest, logger=logger)
    proxy = ProxyRouter(manifest=manifest, client=http, timeout=config.proxy.timeout)
    instances = InstanceManager(
        data_dir=config.data_dir,
        manifest=manifest,
        history=history,
        lifecycle=gateway,
        backups=backups,
        releases=releases,
        monitor=monitor,
        locks=locks,
        logger=logger,
    )
    LOGGER.debug("Runtime built for data dir %s", config.data_dir)
    return Runtime(
        config=config,
        locks=locks,
        logger=logger,
        allocator=allocator,
        manifest=manifest,
        history=history,
        lifecycle=gateway,
        notifier=sink,
        http=http,
        monitor=monitor,
        backups=backups,
        releases=releases,
        proxy=proxy,
        instances=instances,
        logs=InstanceLogReader(config.instance_logs_dir),
    )


__all__ = ["Runtime", "build_runtime"]
