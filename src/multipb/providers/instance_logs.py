"""Read the stdout/stderr logs the process supervisor writes per instance."""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from pathlib import Path

NO_LOGS_MESSAGE = "(No logs found)"


def tail_file(path: Path, lines: int) -> str | None:
    """Return the last *lines* lines of *path*, or ``None`` when it is unreadable."""
    if lines <= 0:
        return ""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=lines))
    except OSError:
        return None


@dataclass(frozen=True, slots=True)
class InstanceLogReader:
    """Locate and tail ``<logs_dir>/<name>.log`` and ``<name>.err.log``."""

    logs_dir: Path
    stdout_lines: int = 200
    stderr_lines: int = 50

    def paths(self, instance: str) -> tuple[Path, Path]:
        """Return the (stdout, stderr) log paths for *instance*."""
        root = Path(self.logs_dir)
        return root / f"{instance}.log", root / f"{instance}.err.log"

    async def read(self, instance: str, *, lines: int | None = None) -> dict[str, str]:
        """Return ``{"logs": ..., "errLogs": ...}`` for *instance*."""
        return await asyncio.to_thread(self._read, instance, lines)

    def _read(self, instance: str, lines: int | None) -> dict[str, str]:
        log_path, err_path = self.paths(instance)
        logs = tail_file(log_path, lines or self.stdout_lines)
        err_logs = tail_file(err_path, self.stderr_lines)
        return {
            "logs": NO_LOGS_MESSAGE if logs is None else logs,
            "errLogs": err_logs or "",
        }


__all__ = ["InstanceLogReader", "NO_LOGS_MESSAGE", "tail_file"]
