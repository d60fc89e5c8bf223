"""Archive helpers used by the backup workflows."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

CHECKSUM_SUFFIX = ".sha256"


class ArchiveError(RuntimeError):
    """Raised when tar or checksum handling fails."""


def _tar_binary() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to handle archives.")
    return tar_bin


def _run_tar(cmd: list[str]) -> None:
    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())


def create_archive(source_dir: Path, archive_path: Path) -> None:
    """Write a gzip tarball of the *contents* of *source_dir* to *archive_path*."""
    _run_tar([_tar_binary(), "-czf", str(archive_path), "-C", str(source_dir), "."])
    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path) -> None:
    """Unpack the gzip tarball *archive_path* into the existing *destination*."""
    _run_tar([_tar_binary(), "-xzf", str(archive_path), "-C", str(destination)])


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the sidecar path ``<archive>.sha256``."""
    return archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum for *archive_path*, if a sidecar exists."""
    checksum_path = checksum_path_for(archive_path)
    try:
        content = checksum_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ArchiveError(f"Unable to read checksum file {checksum_path}: {exc}") from exc
    if not content:
        return None
    return content.split()[0]


def verify_checksum(archive_path: Path) -> None:
    """Raise :class:`ArchiveError` when the sidecar checksum does not match."""
    expected = read_checksum_file(archive_path)
    if expected is None:
        return
    actual = compute_checksum(archive_path)
    if actual != expected:
        raise ArchiveError(
            f"Checksum mismatch for {archive_path.name}: expected {expected}, got {actual}"
        )


def format_size(size_bytes: int) -> str:
    """Return a short human readable size such as ``1.5MB``."""
    if size_bytes <= 0:
        return "0B"
    value = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            rounded = round(value, 1)
            text = f"{rounded:.1f}".rstrip("0").rstrip(".")
            return f"{text}{unit}"
        value /= 1024
    return f"{size_bytes}B"  # pragma: no cover - loop always returns


def directory_size(path: Path) -> int:
    """Return the total size in bytes of regular files below *path*."""
    total = 0
    if not path.exists():
        return 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).lstat().st_size
            except OSError:
                continue
    return total


__all__ = [
    "ArchiveError",
    "CHECKSUM_SUFFIX",
    "checksum_path_for",
    "compute_checksum",
    "create_archive",
    "directory_size",
    "extract_archive",
    "format_size",
    "read_checksum_file",
    "verify_checksum",
    "write_checksum_file",
]
