"""Tests for the structured operations log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from multipb.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def test_operation_appends_one_json_line(tmp_path: Path) -> None:
    """Each closed scope appends a complete record."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "backup create",
        args={"instance": "acme"},
        target={"instance": "acme"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("backup.archive", status="success", detail=Path("/tmp/a.tar.gz"))
        op.success("Created backup.", changed=1, backups=["a.tar.gz"])

    with logger.operation("backup delete") as op:
        op.success("Deleted backup.", changed=1)

    records = _records(logger)
    assert [record["command"] for record in records] == ["backup create", "backup delete"]
    first = records[0]
    assert first["target"] == {"instance": "acme"}
    assert first["lock_wait_ms"] == 12
    assert first["steps"][0]["name"] == "backup.archive"
    assert first["steps"][0]["detail"] == "/tmp/a.tar.gz"
    assert first["result"]["status"] == "success"
    assert first["result"]["backups"] == ["a.tar.gz"]
    assert "lock_wait_ms" not in records[1]


def test_exception_inside_scope_is_recorded_as_error(tmp_path: Path) -> None:
    """An escaping exception yields an error result and still propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(RuntimeError, match="tar exploded"):
        with logger.operation("backup restore"):
            raise RuntimeError("tar exploded")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["errors"] == ["tar exploded"]


def test_scope_without_result_defaults_to_success(tmp_path: Path) -> None:
    """A scope closed without an explicit outcome is a success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instances list"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"


def test_error_records_return_code_and_context(tmp_path: Path) -> None:
    """Errors keep the return code and coerce context values to JSON."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instance start") as op:
        op.error("script failed", rc=3, context={"ports": {30000}})

    (record,) = _records(logger)
    result = record["result"]
    assert result["rc"] == 3
    assert result["errors"] == ["script failed"]
    assert result["context"] == {"ports": "{30000}"}


def test_logger_disables_when_directory_unavailable(tmp_path: Path) -> None:
    """A log directory that cannot be created does not break callers."""
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")

    logger = StructuredLogger(blocker)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo") as op:
        op.success("done")


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures disable the logger so later writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == logger.path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.warning("still fine")
