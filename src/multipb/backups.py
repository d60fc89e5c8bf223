"""Backup archives and crash-safe restores for instance data directories."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import (
    CHECKSUM_SUFFIX,
    ArchiveError,
    checksum_path_for,
    compute_checksum,
    create_archive,
    extract_archive,
    format_size,
    verify_checksum,
    write_checksum_file,
)
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .providers.lifecycle import LifecycleGateway
from .state.manifest import (
    InstanceStatus,
    ManifestError,
    ManifestStore,
    validate_instance_name,
)

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
MARKER_SUFFIX = ".restore.json"


class BackupError(RuntimeError):
    """Base class for backup and restore failures."""


class BackupNotFoundError(BackupError):
    """Raised when a referenced backup artifact does not exist."""


class InvalidBackupNameError(BackupError):
    """Raised when an artifact name could escape the instance backup directory."""


class RestoreError(BackupError):
    """Raised when a restore fails (after rollback has been attempted)."""


class RestorePendingError(BackupError):
    """Raised when an earlier restore left a marker that must be recovered first."""


class NoPendingRestoreError(BackupNotFoundError):
    """Raised when recovery is requested for an instance without a restore marker."""


def _iso_from_timestamp(value: float) -> str:
    return (
        datetime.fromtimestamp(value, tz=UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _format_restore_suffix(timestamp: datetime) -> str:
    """Return a unique suffix for temporary restore artefacts."""
    return f"{timestamp:%Y%m%d%H%M%S}-{secrets.token_hex(2)}"


@dataclass(frozen=True, slots=True)
class BackupArtifact:
    """One archive stored for an instance."""

    name: str
    path: Path
    size_bytes: int
    created: str
    mtime: float = 0.0

    @property
    def size(self) -> str:
        """Return the human readable archive size."""
        return format_size(self.size_bytes)

    def to_dict(self) -> dict[str, object]:
        """Return the representation served by the control API."""
        return {
            "name": self.name,
            "size": self.size,
            "sizeBytes": self.size_bytes,
            "created": self.created,
        }


@dataclass(frozen=True, slots=True)
class RestoreMarker:
    """Sentinel describing a restore that is running or failed to roll back."""

    instance: str
    artifact: str
    holding_dir: Path
    started_at: str
    path: Path

    @classmethod
    def from_file(cls, path: Path) -> RestoreMarker | None:
        """Parse the marker stored at *path*; unreadable markers yield ``None``."""
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Unreadable restore marker %s: %s", path, exc)
            return None
        if not isinstance(data, Mapping):
            return None
        return cls(
            instance=str(data.get("instance", "")),
            artifact=str(data.get("artifact", "")),
            holding_dir=Path(str(data.get("holding_dir", ""))),
            started_at=str(data.get("started_at", "")),
            path=path,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance": self.instance,
            "artifact": self.artifact,
            "holding_dir": str(self.holding_dir),
            "started_at": self.started_at,
        }


class BackupManager:
    """Create, list, delete, and restore archives of instance data directories."""

    def __init__(
        self,
        *,
        backups_root: Path,
        data_dir: Path,
        manifest: ManifestStore,
        lifecycle: LifecycleGateway,
        locks: LockManager,
        logger: StructuredLogger,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.backups_root = Path(backups_root).expanduser()
        self.data_dir = Path(data_dir).expanduser()
        self._manifest = manifest
        self._lifecycle = lifecycle
        self._locks = locks
        self._logger = logger

    # Paths ------------------------------------------------------------
    def instance_dir(self, instance: str) -> Path:
        """Return the directory holding archives for *instance*."""
        return self.backups_root / validate_instance_name(instance)

    def live_dir(self, instance: str) -> Path:
        """Return the live data directory of *instance*."""
        return self.data_dir / validate_instance_name(instance)

    def marker_path(self, instance: str) -> Path:
        """Return the restore marker path for *instance*."""
        return self.data_dir / f".{validate_instance_name(instance)}{MARKER_SUFFIX}"

    def path_for(self, instance: str, artifact: str) -> Path:
        """Return the on-disk path of *artifact*, validating that it exists."""
        path = self._artifact_path(instance, artifact)
        if not path.is_file():
            raise BackupNotFoundError(f"Backup '{artifact}' not found for instance '{instance}'")
        return path

    # Listing ----------------------------------------------------------
    async def list(self, instance: str) -> list[BackupArtifact]:
        """Return archives for *instance*, newest first."""
        return await asyncio.to_thread(self._list_sync, instance)

    def _list_sync(self, instance: str) -> list[BackupArtifact]:
        root = self.instance_dir(instance)
        if not root.is_dir():
            return []
        artifacts: list[BackupArtifact] = []
        for entry in root.iterdir():
            name = entry.name
            if name.startswith(".") or name.endswith(CHECKSUM_SUFFIX):
                continue
            if not name.endswith(ARCHIVE_SUFFIX):
                continue
            try:
                stat = entry.stat()
            except OSError:
                continue
            if not entry.is_file():
                continue
            artifacts.append(
                BackupArtifact(
                    name=name,
                    path=entry,
                    size_bytes=stat.st_size,
                    created=_iso_from_timestamp(stat.st_mtime),
                    mtime=stat.st_mtime,
                )
            )
        artifacts.sort(key=lambda item: (item.mtime, item.name), reverse=True)
        return artifacts

    # Create -----------------------------------------------------------
    async def create(self, instance: str) -> BackupArtifact:
        """Archive the data directory of *instance*."""
        await self._manifest.require(instance)
        async with self._locks.instance_lock(instance) as handle:
            with self._logger.operation(
                "backup create",
                args={"instance": instance},
                target={"instance": instance},
            ) as op:
                op.set_lock_wait_ms(handle.wait_ms)
                artifact = await asyncio.to_thread(self._create_sync, instance, op)
                op.success(
                    f"Created backup {artifact.name}.",
                    changed=1,
                    backups=[artifact.name],
                    context=artifact.to_dict(),
                )
        return artifact

    def _create_sync(self, instance: str, op: OperationScope) -> BackupArtifact:
        source = self.live_dir(instance)
        if not source.is_dir():
            raise BackupError(f"Data directory for instance '{instance}' not found: {source}")
        target_dir = self.instance_dir(instance)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Unable to create backup directory {target_dir}: {exc}") from exc

        timestamp = datetime.now(tz=UTC)
        name = f"backup-{timestamp:%Y-%m-%dT%H-%M-%S-%f}Z{ARCHIVE_SUFFIX}"
        final_path = target_dir / name
        partial_path = target_dir / f".{name}.partial"
        try:
            create_archive(source, partial_path)
            os.replace(partial_path, final_path)
        except ArchiveError as exc:
            raise BackupError(str(exc)) from exc
        except OSError as exc:
            raise BackupError(f"Unable to store backup {final_path}: {exc}") from exc
        finally:
            partial_path.unlink(missing_ok=True)
        op.add_step("backup.archive", status="success", detail=str(final_path))

        checksum = compute_checksum(final_path)
        write_checksum_file(final_path, checksum)
        op.add_step("backup.checksum", status="success", detail=checksum)

        stat = final_path.stat()
        return BackupArtifact(
            name=name,
            path=final_path,
            size_bytes=stat.st_size,
            created=_iso_from_timestamp(stat.st_mtime),
            mtime=stat.st_mtime,
        )

    # Delete -----------------------------------------------------------
    async def delete(self, instance: str, artifact: str) -> None:
        """Remove *artifact* and its checksum sidecar."""
        async with self._locks.instance_lock(instance) as handle:
            with self._logger.operation(
                "backup delete",
                args={"instance": instance, "artifact": artifact},
                target={"instance": instance},
            ) as op:
                op.set_lock_wait_ms(handle.wait_ms)
                path = self.path_for(instance, artifact)
                try:
                    path.unlink()
                except FileNotFoundError as exc:
                    raise BackupNotFoundError(
                        f"Backup '{artifact}' not found for instance '{instance}'"
                    ) from exc
                checksum_path_for(path).unlink(missing_ok=True)
                op.success(f"Deleted backup {artifact}.", changed=1, backups=[artifact])

    # Restore ----------------------------------------------------------
    async def restore(self, instance: str, artifact: str) -> None:
        """Replace the data directory of *instance* with the contents of *artifact*.

        The live directory is moved aside before extraction. When extraction,
        checksum verification, or the restart fails, the original directory is
        moved back and the instance restarted before :class:`RestoreError` is
        raised. A restore marker stays on disk only if that rollback failed.
        """
        await self._manifest.require(instance)
        archive = self.path_for(instance, artifact)

        async with self._locks.instance_lock(instance) as handle:
            with self._logger.operation(
                "backup restore",
                args={"instance": instance, "artifact": artifact},
                target={"instance": instance},
            ) as op:
                op.set_lock_wait_ms(handle.wait_ms)
                await self.ensure_no_pending_restore(instance)
                await self._restore_locked(instance, artifact, archive, op)

    async def _restore_locked(
        self,
        instance: str,
        artifact: str,
        archive: Path,
        op: OperationScope,
    ) -> None:
        stopped = await self._lifecycle.invoke("stop", instance)
        op.add_step(
            "lifecycle.stop",
            status="success" if stopped.ok else "warning",
            detail=None if stopped.ok else stopped.detail,
        )

        live = self.live_dir(instance)
        started_at = datetime.now(tz=UTC)
        holding = self.data_dir / f".{instance}.restore-{_format_restore_suffix(started_at)}"
        marker = RestoreMarker(
            instance=instance,
            artifact=artifact,
            holding_dir=holding,
            started_at=started_at.isoformat(),
            path=self.marker_path(instance),
        )
        try:
            await asyncio.to_thread(self._write_marker, marker)
        except OSError as exc:
            raise RestoreError(f"Unable to record restore marker: {exc}") from exc
        op.add_step("backup.restore.marker", status="success", detail=str(marker.path))

        live_existed = live.exists()
        moved = False
        try:
            if live_existed:
                await asyncio.to_thread(live.rename, holding)
                moved = True
                op.add_step("backup.restore.stage.original", status="success", detail=str(holding))
            await asyncio.to_thread(live.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(verify_checksum, archive)
            await asyncio.to_thread(extract_archive, archive, live)
            op.add_step("backup.restore.extract", status="success", detail=str(archive))
            started = await self._lifecycle.invoke("start", instance)
            if not started.ok:
                raise RestoreError(f"Failed to start instance '{instance}': {started.detail}")
            op.add_step("lifecycle.start", status="success")
        except (ArchiveError, OSError, RestoreError) as exc:
            message = str(exc) or type(exc).__name__
            op.add_step("backup.restore", status="error", detail=message)
            await self._rollback(
                instance,
                marker,
                live=live,
                live_existed=live_existed,
                moved=moved,
                op=op,
            )
            raise RestoreError(message) from exc

        if moved:
            await asyncio.to_thread(shutil.rmtree, holding, ignore_errors=True)
        marker.path.unlink(missing_ok=True)
        try:
            await self._manifest.update(instance, status=InstanceStatus.RUNNING)
        except ManifestError as exc:
            op.warning(
                f"Restored backup {artifact} but failed to update manifest: {exc}",
                changed=1,
                backups=[artifact],
            )
            return
        op.success(f"Restored backup {artifact}.", changed=1, backups=[artifact])

    async def _rollback(
        self,
        instance: str,
        marker: RestoreMarker,
        *,
        live: Path,
        live_existed: bool,
        moved: bool,
        op: OperationScope,
    ) -> None:
        rollback_ok = True
        try:
            if moved or not live_existed:
                await asyncio.to_thread(shutil.rmtree, live, ignore_errors=True)
            if moved:
                await asyncio.to_thread(marker.holding_dir.rename, live)
            op.add_step("backup.restore.rollback", status="success", detail=str(live))
        except OSError as exc:
            rollback_ok = False
            LOGGER.error("Rollback of restore for %s failed: %s", instance, exc)
            op.add_step("backup.restore.rollback", status="error", detail=str(exc))

        started = await self._lifecycle.invoke("start", instance)
        op.add_step(
            "lifecycle.start",
            status="success" if started.ok else "warning",
            detail=None if started.ok else started.detail,
        )

        if rollback_ok:
            marker.path.unlink(missing_ok=True)
            return
        try:
            await self._manifest.update(instance, status=InstanceStatus.ERROR)
        except ManifestError as exc:
            LOGGER.error("Unable to flag %s as errored after failed rollback: %s", instance, exc)

    # Markers ----------------------------------------------------------
    def _write_marker(self, marker: RestoreMarker) -> None:
        marker.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(marker.path.parent), prefix=f"{marker.path.name}."
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(marker.to_dict(), handle)
            os.replace(tmp_path, marker.path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def interrupted_restores(self) -> list[RestoreMarker]:
        """Return markers left behind by restores that did not complete."""
        return await asyncio.to_thread(self._scan_markers)

    async def pending_restore(self, instance: str) -> RestoreMarker | None:
        """Return the marker for *instance*, if one is present."""
        path = self.marker_path(instance)
        if not path.exists():
            return None
        return await asyncio.to_thread(RestoreMarker.from_file, path)

    async def ensure_no_pending_restore(self, instance: str) -> None:
        """Raise :class:`RestorePendingError` while a restore marker exists for *instance*.

        Callers hold the instance lock. Unreadable markers block as well, since
        the holding directory they point at may be the only copy of the data.
        """
        path = self.marker_path(instance)
        if not path.exists():
            return
        marker = await asyncio.to_thread(RestoreMarker.from_file, path)
        location = marker.holding_dir if marker is not None else path
        raise RestorePendingError(
            f"Instance '{instance}' has an unfinished restore ({location}); recover it first"
        )

    async def recover(self, instance: str) -> Path:
        """Put the data held by an unfinished restore back in place.

        The held directory replaces whatever is in the live directory, the
        marker is removed, and the instance is started again. Returns the live
        data directory.
        """
        await self._manifest.require(instance)
        async with self._locks.instance_lock(instance) as handle:
            with self._logger.operation(
                "backup recover",
                args={"instance": instance},
                target={"instance": instance},
            ) as op:
                op.set_lock_wait_ms(handle.wait_ms)
                marker = await self.pending_restore(instance)
                if marker is None:
                    if self.marker_path(instance).exists():
                        raise RestoreError(
                            f"Restore marker {self.marker_path(instance)} is unreadable; "
                            "inspect the data directory manually"
                        )
                    raise NoPendingRestoreError(
                        f"No unfinished restore for instance '{instance}'"
                    )
                holding = self._checked_holding_dir(instance, marker)
                live = self.live_dir(instance)

                stopped = await self._lifecycle.invoke("stop", instance)
                op.add_step(
                    "lifecycle.stop",
                    status="success" if stopped.ok else "warning",
                    detail=None if stopped.ok else stopped.detail,
                )
                try:
                    await asyncio.to_thread(self._swap_in_holding, holding, live)
                except OSError as exc:
                    raise RestoreError(
                        f"Unable to move {holding} back to {live}: {exc}"
                    ) from exc
                op.add_step("backup.recover.data", status="success", detail=str(live))
                marker.path.unlink(missing_ok=True)

                started = await self._lifecycle.invoke("start", instance)
                if not started.ok:
                    await self._manifest.update(instance, status=InstanceStatus.ERROR)
                    raise RestoreError(
                        f"Recovered data for '{instance}' but failed to start it: "
                        f"{started.detail}"
                    )
                op.add_step("lifecycle.start", status="success")
                await self._manifest.update(instance, status=InstanceStatus.RUNNING)
                op.success(f"Recovered data for instance {instance}.", changed=1)
        return live

    def _checked_holding_dir(self, instance: str, marker: RestoreMarker) -> Path:
        holding = marker.holding_dir
        if holding.parent != self.data_dir or not holding.name.startswith(
            f".{instance}.restore-"
        ):
            raise RestoreError(
                f"Restore marker for '{instance}' points outside {self.data_dir}: {holding}"
            )
        return holding

    @staticmethod
    def _swap_in_holding(holding: Path, live: Path) -> None:
        if not holding.is_dir():
            if live.is_dir():
                # The held data was already moved back by hand.
                return
            raise FileNotFoundError(f"Neither {holding} nor {live} exists")
        if live.exists():
            shutil.rmtree(live)
        holding.rename(live)

    def _scan_markers(self) -> list[RestoreMarker]:
        if not self.data_dir.is_dir():
            return []
        markers: list[RestoreMarker] = []
        for path in sorted(self.data_dir.glob(f".*{MARKER_SUFFIX}")):
            marker = RestoreMarker.from_file(path)
            if marker is not None:
                markers.append(marker)
        return markers

    def _artifact_path(self, instance: str, artifact: str) -> Path:
        candidate = artifact.strip() if isinstance(artifact, str) else ""
        if (
            not candidate
            or candidate.startswith(".")
            or "/" in candidate
            or "\\" in candidate
            or "\x00" in candidate
        ):
            raise InvalidBackupNameError(f"Invalid backup name: {artifact!r}")
        return self.instance_dir(instance) / candidate


__all__ = [
    "BackupArtifact",
    "BackupError",
    "BackupManager",
    "BackupNotFoundError",
    "InvalidBackupNameError",
    "NoPendingRestoreError",
    "RestoreError",
    "RestoreMarker",
    "RestorePendingError",
]
