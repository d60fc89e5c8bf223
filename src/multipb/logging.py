"""Structured operation logging for multipb.

Every mutating workflow (instance lifecycle, backups, restores) runs inside an
``operation`` scope. When the scope closes a single JSON document describing
the request, the individual steps, and the final result is appended to
``<logs_dir>/operations.jsonl``. Human-oriented diagnostics continue to flow
through the standard :mod:`logging` module.

The logger never takes the control plane down with it: when the log directory
cannot be created or a write fails, it disables itself and keeps going.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


def _as_list(values: Iterable[object] | None) -> list[object]:
    if values is None:
        return []
    if isinstance(values, str):
        return [values]
    return [_json_safe(item) for item in values]


class OperationScope:
    """Collects steps and the outcome for a single logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
        actor: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger* and capture the request metadata."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor = dict(actor) if actor else {"pid": os.getpid()}
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._lock_wait_ms: int | None = None
        self._started_at = _now_iso()
        self._started_monotonic = time.monotonic()

    # Context manager protocol ----------------------------------------
    def __enter__(self) -> OperationScope:
        """Return the scope so callers can record steps."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Flush the record, deriving a result when none was set explicitly."""
        if self.result is None:
            if exc is not None:
                message = str(exc) or type(exc).__name__
                self.error(message, errors=[message])
            else:
                self.success("Completed.")
        self._logger._emit(self)

    # Recording helpers -----------------------------------------------
    def add_step(self, name: str, *, status: str, detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        self.steps.append(step)
        LOGGER.debug("%s: %s (%s) %s", self.command, name, status, detail or "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self._lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[object] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            changed=changed,
            context=context,
            rc=rc,
        )

    # Internal helpers -------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[object] | None = None,
        errors: Iterable[object] | None = None,
        changed: int = 0,
        backups: Iterable[object] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": _as_list(warnings),
            "errors": _as_list(errors),
            "backups": _as_list(backups),
            "context": _json_safe(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON document describing this operation."""
        duration_ms = int((time.monotonic() - self._started_monotonic) * 1000)
        record: dict[str, object] = {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": duration_ms,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "actor": _json_safe(self.actor),
            "steps": self.steps,
            "result": self.result or {},
        }
        if self._lock_wait_ms is not None:
            record["lock_wait_ms"] = self._lock_wait_ms
        return record


class StructuredLogger:
    """Append-only JSON-lines logger for control plane operations."""

    def __init__(self, logs_dir: Path, *, filename: str = OPERATIONS_LOG_NAME) -> None:
        """Prepare *logs_dir*; disable structured output when it is unavailable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / filename
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled; cannot prepare %s: %s", self._logs_dir, exc
            )
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
        actor: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope that records *command* when it closes."""
        return OperationScope(self, command, args=args, target=target, actor=actor)

    def _emit(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record.get("result") or {}
        status = result.get("status") if isinstance(result, Mapping) else None
        level = logging.WARNING if status in {"warning", "error"} else logging.INFO
        message = result.get("message") if isinstance(result, Mapping) else ""
        LOGGER.log(level, "%s [%s]: %s", scope.command, status, message)

        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled after write failure to %s: %s",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
