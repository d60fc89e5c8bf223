"""Backend release management through the ``manage-versions.sh`` helper."""
from __future__ import annotations

import logging

from packaging.version import InvalidVersion, Version

from .logging import StructuredLogger
from .providers.lifecycle import LifecycleGateway, LifecycleResult
from .state.manifest import ManifestStore

LOGGER = logging.getLogger(__name__)

RELEASE_OPERATION = "versions"


class ReleaseError(RuntimeError):
    """Raised when the release helper fails."""


class ReleaseInUseError(ReleaseError):
    """Raised when deleting a release that an instance still runs."""


class InvalidVersionError(RuntimeError):
    """Raised when a requested release tag is not a valid version."""


def normalize_version(value: str) -> str:
    """Return *value* stripped of whitespace after validating it as a version tag."""
    candidate = value.strip() if isinstance(value, str) else ""
    if not candidate:
        raise InvalidVersionError("Version required")
    try:
        Version(_bare(candidate))
    except InvalidVersion as exc:
        raise InvalidVersionError(f"Invalid version: {value}") from exc
    return candidate


def _bare(version: str) -> str:
    return version[1:] if version[:1] in {"v", "V"} else version


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


class ReleaseManager:
    """Query, download, and delete installed backend releases."""

    def __init__(
        self,
        *,
        lifecycle: LifecycleGateway,
        manifest: ManifestStore,
        logger: StructuredLogger,
    ) -> None:
        """Wire the manager to the script gateway and the manifest."""
        self._lifecycle = lifecycle
        self._manifest = manifest
        self._logger = logger

    async def latest(self) -> str:
        """Return the newest published release tag."""
        result = await self._query("latest")
        lines = _lines(result.stdout)
        if not lines:
            raise ReleaseError("Release helper returned no version")
        return lines[0]

    async def available(self) -> list[str]:
        """Return the release tags that can be downloaded."""
        return _lines((await self._query("available")).stdout)

    async def installed(self) -> list[str]:
        """Return the locally installed releases; failures yield an empty list."""
        result = await self._lifecycle.run(RELEASE_OPERATION, ["installed"])
        if not result.ok:
            LOGGER.warning("Listing installed releases failed: %s", result.detail)
            return []
        return _lines(result.stdout)

    async def fetch(self, version: str) -> LifecycleResult:
        """Download *version* unless it is already installed; returns the raw result."""
        return await self._lifecycle.run(RELEASE_OPERATION, ["download", version])

    async def download(self, version: str) -> str:
        """Download *version* and return the normalised tag."""
        release = normalize_version(version)
        with self._logger.operation("release download", args={"version": release}) as op:
            result = await self.fetch(release)
            if not result.ok:
                raise ReleaseError(result.detail)
            op.success(f"Downloaded release {release}.", changed=1)
        return release

    async def delete(self, version: str) -> None:
        """Remove an installed release that no instance uses."""
        release = normalize_version(version)
        with self._logger.operation("release delete", args={"version": release}) as op:
            manifest = await self._manifest.load()
            users = sorted(
                name
                for name, record in manifest.items()
                if record.version and _bare(record.version) == _bare(release)
            )
            if users:
                raise ReleaseInUseError(
                    f"Release {release} is used by: {', '.join(users)}"
                )
            result = await self._lifecycle.run(RELEASE_OPERATION, ["delete", release])
            if not result.ok:
                raise ReleaseError(result.detail)
            op.success(f"Deleted release {release}.", changed=1)

    async def _query(self, subcommand: str) -> LifecycleResult:
        result = await self._lifecycle.run(RELEASE_OPERATION, [subcommand])
        if not result.ok:
            raise ReleaseError(result.detail)
        return result


__all__ = [
    "InvalidVersionError",
    "ReleaseError",
    "ReleaseInUseError",
    "ReleaseManager",
    "normalize_version",
]
