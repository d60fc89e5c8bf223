"""Instance lifecycle workflows shared by the control API and the CLI."""
from __future__ import annotations

import asyncio
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import AsyncIterable
from pathlib import Path

from .archive import directory_size, format_size
from .backups import BackupManager
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .monitor import HealthMonitor
from .ports import parse_port
from .providers.lifecycle import LifecycleGateway, LifecycleResult
from .providers.lifecycle import restart as restart_instance
from .releases import InvalidVersionError, ReleaseManager, normalize_version
from .state.history import HealthHistoryStore
from .state.manifest import (
    InstanceExistsError,
    InstanceRecord,
    InstanceStatus,
    ManifestStore,
    validate_instance_name,
)

LOGGER = logging.getLogger(__name__)


class InstanceOperationError(RuntimeError):
    """Raised when a lifecycle script reports failure."""

    def __init__(self, message: str, result: LifecycleResult | None = None) -> None:
        """Store the failing script result alongside the message."""
        super().__init__(message)
        self.result = result


class ImportArchiveError(RuntimeError):
    """Raised when an uploaded instance archive is missing or empty."""


class InstanceManager:
    """Create, remove, and drive instances through the lifecycle gateway."""

    def __init__(
        self,
        *,
        data_dir: Path,
        manifest: ManifestStore,
        history: HealthHistoryStore,
        lifecycle: LifecycleGateway,
        backups: BackupManager,
        releases: ReleaseManager,
        monitor: HealthMonitor,
        locks: LockManager,
        logger: StructuredLogger,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.data_dir = Path(data_dir).expanduser()
        self._manifest = manifest
        self._history = history
        self._lifecycle = lifecycle
        self._backups = backups
        self._releases = releases
        self._monitor = monitor
        self._locks = locks
        self._logger = logger

    # Queries ----------------------------------------------------------
    async def list_instances(self) -> list[dict[str, object]]:
        """Return every instance with its data size and live health."""
        manifest = await self._manifest.load()
        summaries = await asyncio.gather(
            *(self._summary(record) for record in manifest.values())
        )
        return list(summaries)

    async def describe(self, name: str) -> dict[str, object]:
        """Return the detail view for *name* including backups and history."""
        record = await self._manifest.require(name)
        summary = await self._summary(record)
        backups = await self._backups.list(name)
        samples = await self._history.get(name)
        marker = await self._backups.pending_restore(name)
        summary["backups"] = [artifact.to_dict() for artifact in backups]
        summary["history"] = [sample.to_dict() for sample in samples]
        summary["restorePending"] = marker.to_dict() if marker is not None else None
        summary["busy"] = self._locks.is_locked(name)
        return summary

    async def _summary(self, record: InstanceRecord) -> dict[str, object]:
        size_bytes, healthy = await asyncio.gather(
            asyncio.to_thread(directory_size, self.data_dir / record.name),
            self._monitor.probe(record.port),
        )
        payload = record.to_api()
        payload["size"] = format_size(size_bytes)
        payload["sizeBytes"] = size_bytes
        payload["healthy"] = healthy
        return payload

    # Mutations --------------------------------------------------------
    async def create(
        self,
        name: object,
        *,
        email: str | None = None,
        password: str | None = None,
        port: object = None,
        memory: str | None = None,
        version: str | None = None,
    ) -> dict[str, object]:
        """Validate, reserve a port, and run the add script for a new instance."""
        normalized = validate_instance_name(name)
        requested = parse_port(port)
        release = normalize_version(version) if version else None

        with self._logger.operation(
            "instance create",
            args={"port": requested, "memory": memory, "version": release},
            target={"instance": normalized},
        ) as op:
            record = await self._manifest.add(
                normalized,
                port=requested,
                memory=memory,
                version=release,
                status=InstanceStatus.STOPPED,
            )
            op.add_step("manifest.reserve", status="success", detail=record.port)

            credentials = {
                "email": email or f"admin@{normalized}.local",
                "password": password or secrets.token_urlsafe(12),
            }
            args: list[str] = [
                "--email",
                credentials["email"],
                "--password",
                credentials["password"],
                "--port",
                str(record.port),
            ]
            if memory:
                args.extend(["--memory", memory])
            if release:
                args.extend(["--version", release])

            result = await self._lifecycle.invoke("add", normalized, args)
            if not result.ok:
                await self._manifest.remove(normalized)
                op.add_step("manifest.release", status="success", detail=record.port)
                op.error(result.detail, rc=result.returncode)
                raise InstanceOperationError(result.detail, result)
            op.add_step("lifecycle.add", status="success")

            await self._manifest.update(normalized, status=InstanceStatus.RUNNING)
            op.success(
                f"Created instance {normalized}.",
                changed=1,
                context={"port": record.port},
            )

        return {
            "success": True,
            "name": normalized,
            "port": record.port,
            "credentials": credentials,
        }

    async def import_archive(self, name: object, archive: Path) -> dict[str, object]:
        """Register *name* on a fresh port and seed it from an exported *archive*."""
        normalized = validate_instance_name(name)
        source = Path(archive).expanduser()
        if not source.is_file():
            raise ImportArchiveError(f"Import archive not found: {source}")

        with self._logger.operation(
            "instance import",
            args={"archive": str(source)},
            target={"instance": normalized},
        ) as op:
            record = await self._manifest.add(normalized, status=InstanceStatus.STOPPED)
            op.add_step("manifest.reserve", status="success", detail=record.port)

            result = await self._lifecycle.run(
                "import", [str(source), normalized, "--port", str(record.port)]
            )
            if not result.ok:
                await self._manifest.remove(normalized)
                op.add_step("manifest.release", status="success", detail=record.port)
                op.error(result.detail, rc=result.returncode)
                raise InstanceOperationError(result.detail, result)
            op.add_step("lifecycle.import", status="success")

            await self._manifest.update(normalized, status=InstanceStatus.RUNNING)
            op.success(
                f"Imported instance {normalized}.",
                changed=1,
                context={"port": record.port},
            )
        return {"success": True, "name": normalized, "port": record.port}

    async def import_upload(
        self, name: object, chunks: AsyncIterable[bytes]
    ) -> dict[str, object]:
        """Stage an uploaded archive next to the backups, then import it."""
        normalized = validate_instance_name(name)
        if await self._manifest.get(normalized) is not None:
            raise InstanceExistsError(f"Instance '{normalized}' already exists")

        staging = await asyncio.to_thread(self._staging_file)
        try:
            size = 0
            with staging.open("wb") as handle:
                async for chunk in chunks:
                    if chunk:
                        size += len(chunk)
                        await asyncio.to_thread(handle.write, chunk)
            if size == 0:
                raise ImportArchiveError("Import archive is empty")
            return await self.import_archive(normalized, staging)
        finally:
            staging.unlink(missing_ok=True)

    def _staging_file(self) -> Path:
        root = self._backups.backups_root
        root.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(dir=str(root), prefix=".import-", suffix=".zip")
        os.close(fd)
        return Path(name)

    async def remove(self, name: str) -> None:
        """Run the remove script, drop the record, and delete the data directory."""
        await self._manifest.require(name)
        async with self._locks.instance_lock(name) as handle:
            with self._logger.operation(
                "instance remove", args={"delete_data": True}, target={"instance": name}
            ) as op:
                op.set_lock_wait_ms(handle.wait_ms)
                await self._backups.ensure_no_pending_restore(name)
                result = await self._lifecycle.invoke("remove", name, ["--delete-data"])
                self._check(op, "lifecycle.remove", result)
                await self._manifest.remove(name)
                data_path = self.data_dir / validate_instance_name(name)
                await asyncio.to_thread(shutil.rmtree, data_path, ignore_errors=True)
                op.success(f"Removed instance {name}.", changed=1)

    async def start(self, name: str) -> None:
        """Start *name* and record it as running."""
        await self._run_simple("start", name, InstanceStatus.RUNNING)

    async def stop(self, name: str) -> None:
        """Stop *name* and record it as stopped."""
        await self._run_simple("stop", name, InstanceStatus.STOPPED)

    async def restart(self, name: str) -> None:
        """Stop then start *name*; a failed stop does not prevent the start."""
        await self._manifest.require(name)
        with self._logger.operation("instance restart", target={"instance": name}) as op:
            result = await restart_instance(self._lifecycle, name)
            if not result.ok:
                await self._manifest.update(name, status=InstanceStatus.ERROR)
            self._check(op, "lifecycle.restart", result)
            await self._manifest.update(name, status=InstanceStatus.RUNNING)
            op.success(f"Restarted instance {name}.", changed=1)

    async def upgrade(self, name: str, version: str) -> dict[str, object]:
        """Stop *name*, install *version*, record it, and start again."""
        release = normalize_version(version)
        record = await self._manifest.require(name)
        with self._logger.operation(
            "instance upgrade",
            args={"version": release, "previous": record.version},
            target={"instance": name},
        ) as op:
            stopped = await self._lifecycle.invoke("stop", name)
            op.add_step(
                "lifecycle.stop",
                status="success" if stopped.ok else "warning",
                detail=None if stopped.ok else stopped.detail,
            )
            step = "release.download"
            outcome = await self._releases.fetch(release)
            if outcome.ok:
                op.add_step(step, status="success", detail=release)
                step = "lifecycle.upgrade"
                outcome = await self._lifecycle.invoke("upgrade", name, ["--version", release])
            if not outcome.ok:
                restarted = await self._lifecycle.invoke("start", name)
                op.add_step(
                    "lifecycle.start",
                    status="success" if restarted.ok else "warning",
                    detail=None if restarted.ok else restarted.detail,
                )
            self._check(op, step, outcome)
            await self._manifest.update(name, version=release)

            started = await self._lifecycle.invoke("start", name)
            if not started.ok:
                await self._manifest.update(name, status=InstanceStatus.ERROR)
            self._check(op, "lifecycle.start", started)
            await self._manifest.update(name, status=InstanceStatus.RUNNING)
            op.success(f"Upgraded instance {name} to {release}.", changed=1)
        return {"success": True, "name": name, "version": release}

    # Internal helpers -------------------------------------------------
    async def _run_simple(self, operation: str, name: str, status: InstanceStatus) -> None:
        await self._manifest.require(name)
        with self._logger.operation(f"instance {operation}", target={"instance": name}) as op:
            result = await self._lifecycle.invoke(operation, name)
            if not result.ok and operation == "start":
                await self._manifest.update(name, status=InstanceStatus.ERROR)
            self._check(op, f"lifecycle.{operation}", result)
            await self._manifest.update(name, status=status)
            op.success(f"Instance {name} {status.value}.", changed=1)

    @staticmethod
    def _check(op: OperationScope, step: str, result: LifecycleResult) -> None:
        if result.ok:
            op.add_step(step, status="success")
            return
        op.add_step(step, status="error", detail=result.detail)
        op.error(result.detail, rc=result.returncode)
        raise InstanceOperationError(result.detail, result)


__all__ = [
    "ImportArchiveError",
    "InstanceManager",
    "InstanceOperationError",
    "InvalidVersionError",
    "normalize_version",
]
