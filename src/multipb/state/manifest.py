"""Persistent instance manifest.

The manifest (``instances.json``) maps instance names to their records and is
the single source of truth for port allocation. :class:`ManifestStore` owns
every read and write of the document:

* reads fail soft: a missing or corrupt document is treated as empty;
* writes fail hard and are atomic (temp file in the same directory followed
  by ``os.replace``);
* every read-modify-write runs under the manifest lock, so two concurrent
  "add instance" requests can never both pass the port uniqueness check
  against a stale snapshot.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from ..locking import LockManager
from ..ports import PortAllocator

LOGGER = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$")


class ManifestError(RuntimeError):
    """Raised when the manifest cannot be persisted."""


class InstanceNameError(ManifestError):
    """Raised when an instance name is missing or unusable."""


class InstanceNotFoundError(ManifestError):
    """Raised when an operation references an unknown instance."""


class InstanceExistsError(ManifestError):
    """Raised when creating an instance whose name is already registered."""


class InstanceStatus(str, Enum):
    """Lifecycle state recorded for an instance."""

    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    @classmethod
    def parse(cls, value: object) -> InstanceStatus:
        """Return the matching status, falling back to ``unknown``."""
        if isinstance(value, InstanceStatus):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return cls.UNKNOWN
        return cls.UNKNOWN


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def validate_instance_name(name: object) -> str:
    """Return the normalised instance name or raise :class:`InstanceNameError`."""
    if not isinstance(name, str) or not name.strip():
        raise InstanceNameError("Instance name required")
    normalized = name.strip()
    if not NAME_PATTERN.match(normalized):
        raise InstanceNameError(
            "Instance name may only contain letters, digits, '-' and '_' "
            "(max 63 characters, starting with a letter or digit)"
        )
    return normalized


@dataclass(slots=True)
class InstanceRecord:
    """Metadata stored for one supervised instance."""

    name: str
    port: int
    status: InstanceStatus = InstanceStatus.UNKNOWN
    created: str | None = None
    version: str | None = None
    memory: str | None = None

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, object]) -> InstanceRecord:
        """Build a record from its persisted JSON mapping."""
        port_value = raw.get("port")
        if isinstance(port_value, bool) or not isinstance(port_value, (int, str)):
            raise ValueError(f"Instance '{name}' has no usable port")
        port = int(port_value)
        version = raw.get("version")
        memory = raw.get("memory")
        created = raw.get("created")
        return cls(
            name=name,
            port=port,
            status=InstanceStatus.parse(raw.get("status")),
            created=str(created) if created else None,
            version=str(version) if version else None,
            memory=str(memory) if memory else None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation (keyed by name in the manifest)."""
        payload: dict[str, object] = {
            "port": self.port,
            "status": self.status.value,
            "created": self.created,
        }
        if self.version:
            payload["version"] = self.version
        if self.memory:
            payload["memory"] = self.memory
        return payload

    def to_api(self) -> dict[str, object]:
        """Return the representation served by the control API."""
        return {
            "name": self.name,
            "port": self.port,
            "status": self.status.value,
            "created": self.created,
            "version": self.version,
            "memory": self.memory,
        }


Manifest = dict[str, InstanceRecord]


class ManifestStore:
    """Own the ``instances.json`` document."""

    def __init__(self, path: Path, *, locks: LockManager, ports: PortAllocator) -> None:
        """Bind the store to *path* using *locks* for writer serialisation."""
        self.path = Path(path).expanduser()
        self.ports = ports
        self._locks = locks

    # Reads ------------------------------------------------------------
    async def load(self) -> Manifest:
        """Return a fresh snapshot of the manifest (empty when unreadable)."""
        return await asyncio.to_thread(self._read)

    async def get(self, name: str) -> InstanceRecord | None:
        """Return the record for *name*, if registered."""
        return (await self.load()).get(name)

    async def require(self, name: str) -> InstanceRecord:
        """Return the record for *name* or raise :class:`InstanceNotFoundError`."""
        record = await self.get(name)
        if record is None:
            raise InstanceNotFoundError(f"Instance '{name}' not found")
        return record

    async def used_ports(self) -> list[dict[str, object]]:
        """Return ``{port, instance}`` pairs sorted by port."""
        manifest = await self.load()
        entries = [{"port": record.port, "instance": name} for name, record in manifest.items()]
        entries.sort(key=lambda entry: int(str(entry["port"])))
        return entries

    async def allocate_port(
        self,
        requested: int | None = None,
        manifest: Mapping[str, InstanceRecord] | None = None,
    ) -> int:
        """Validate *requested* or pick the smallest free port (no reservation)."""
        if manifest is None:
            manifest = await self.load()
        return self.ports.allocate(
            (record.port for record in manifest.values()), requested=requested
        )

    # Writes -----------------------------------------------------------
    async def save(self, manifest: Mapping[str, InstanceRecord]) -> None:
        """Persist *manifest* atomically under the manifest lock."""
        async with self._locks.manifest_lock():
            await asyncio.to_thread(self._write, manifest)

    @asynccontextmanager
    async def mutate(self) -> AsyncIterator[Manifest]:
        """Yield a snapshot for read-modify-write; persist it on clean exit."""
        async with self._locks.manifest_lock():
            manifest = await asyncio.to_thread(self._read)
            yield manifest
            await asyncio.to_thread(self._write, manifest)

    async def add(
        self,
        name: str,
        *,
        port: int | None = None,
        memory: str | None = None,
        version: str | None = None,
        status: InstanceStatus = InstanceStatus.STOPPED,
    ) -> InstanceRecord:
        """Register *name*, allocating its port inside the single writer path."""
        normalized = validate_instance_name(name)
        async with self.mutate() as manifest:
            if normalized in manifest:
                raise InstanceExistsError(f"Instance '{normalized}' already exists")
            allocated = self.ports.allocate(
                (record.port for record in manifest.values()), requested=port
            )
            record = InstanceRecord(
                name=normalized,
                port=allocated,
                status=status,
                created=_now_iso(),
                version=version or None,
                memory=memory or None,
            )
            manifest[normalized] = record
        LOGGER.info("Registered instance %s on port %s", normalized, allocated)
        return record

    async def remove(self, name: str) -> InstanceRecord:
        """Drop *name* from the manifest and return the removed record."""
        async with self.mutate() as manifest:
            record = manifest.pop(name, None)
            if record is None:
                raise InstanceNotFoundError(f"Instance '{name}' not found")
        return record

    async def update(
        self,
        name: str,
        *,
        status: InstanceStatus | None = None,
        version: str | None = None,
        memory: str | None = None,
    ) -> InstanceRecord:
        """Apply mutable field changes to *name*; ``created`` never changes."""
        async with self.mutate() as manifest:
            record = manifest.get(name)
            if record is None:
                raise InstanceNotFoundError(f"Instance '{name}' not found")
            if status is not None:
                record.status = status
            if version is not None:
                record.version = version
            if memory is not None:
                record.memory = memory
        return record

    # Internal helpers -------------------------------------------------
    def _read(self) -> Manifest:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            LOGGER.warning("Failed to read manifest %s: %s", self.path, exc)
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            LOGGER.warning("Manifest %s is corrupt, treating as empty: %s", self.path, exc)
            return {}
        if not isinstance(data, Mapping):
            LOGGER.warning("Manifest %s must be a JSON object, treating as empty", self.path)
            return {}

        manifest: Manifest = {}
        for name, raw in data.items():
            if not isinstance(name, str) or not isinstance(raw, Mapping):
                continue
            try:
                record = InstanceRecord.from_mapping(name, raw)
            except ValueError as exc:
                LOGGER.warning("Skipping malformed manifest entry %r: %s", name, exc)
                continue
            if not self.ports.in_range(record.port):
                LOGGER.warning(
                    "Instance %s uses port %s outside the reserved range", name, record.port
                )
            manifest[name] = record
        return manifest

    def _write(self, manifest: Mapping[str, InstanceRecord]) -> None:
        payload = {name: record.to_dict() for name, record in manifest.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise ManifestError(f"Failed to prepare manifest {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise ManifestError(f"Failed to write manifest {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "InstanceExistsError",
    "InstanceNameError",
    "InstanceNotFoundError",
    "InstanceRecord",
    "InstanceStatus",
    "Manifest",
    "ManifestError",
    "ManifestStore",
    "validate_instance_name",
]
