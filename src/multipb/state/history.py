"""Bounded per-instance health history persisted as one JSON document."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class HistoryError(RuntimeError):
    """Raised when the health history cannot be persisted."""


@dataclass(frozen=True, slots=True)
class HealthSample:
    """Outcome of one probe."""

    timestamp: str
    healthy: bool

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> HealthSample:
        """Build a sample from its persisted mapping."""
        timestamp = raw.get("timestamp")
        healthy = raw.get("healthy")
        if not isinstance(timestamp, str) or not isinstance(healthy, bool):
            raise ValueError("Health samples need a string timestamp and a boolean flag")
        return cls(timestamp=timestamp, healthy=healthy)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timestamp": self.timestamp, "healthy": self.healthy}


History = dict[str, list[HealthSample]]


class HealthHistoryStore:
    """Load, trim, and persist health samples keyed by instance name."""

    def __init__(self, path: Path) -> None:
        """Bind the store to *path*."""
        self.path = Path(path).expanduser()

    async def load(self) -> History:
        """Return the persisted history; unreadable documents yield ``{}``."""
        return await asyncio.to_thread(self._read)

    async def save(self, history: Mapping[str, list[HealthSample]]) -> None:
        """Persist *history* atomically."""
        await asyncio.to_thread(self._write, history)

    async def get(self, name: str) -> list[HealthSample]:
        """Return the samples recorded for *name* (oldest first)."""
        return list((await self.load()).get(name, []))

    @staticmethod
    def record(
        history: History,
        name: str,
        sample: HealthSample,
        limit: int,
    ) -> list[HealthSample]:
        """Append *sample* for *name* and evict the oldest entries beyond *limit*."""
        samples = history.setdefault(name, [])
        samples.append(sample)
        if limit > 0 and len(samples) > limit:
            del samples[: len(samples) - limit]
        return samples

    def _read(self) -> History:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable health history %s: %s", self.path, exc)
            return {}
        if not isinstance(data, Mapping):
            return {}

        history: History = {}
        for name, entries in data.items():
            if not isinstance(name, str) or not isinstance(entries, list):
                continue
            samples: list[HealthSample] = []
            for entry in entries:
                if not isinstance(entry, Mapping):
                    continue
                try:
                    samples.append(HealthSample.from_mapping(entry))
                except ValueError:
                    continue
            history[name] = samples
        return history

    def _write(self, history: Mapping[str, list[HealthSample]]) -> None:
        payload = {
            name: [sample.to_dict() for sample in samples]
            for name, samples in history.items()
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise HistoryError(f"Failed to prepare history file {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle)
                handle.write("\n")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise HistoryError(f"Failed to write history file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["HealthHistoryStore", "HealthSample", "History", "HistoryError"]
