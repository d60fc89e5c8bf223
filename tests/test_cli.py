"""Tests for the multipb CLI."""
from __future__ import annotations

import json
from pathlib import Path

from conftest import write_manifest
from typer.testing import CliRunner

from multipb import __version__, get_version
from multipb.cli import app

runner = CliRunner()


def _prepare_environment(tmp_path: Path) -> dict[str, str]:
    """Return env vars pointing every multipb path into *tmp_path*."""
    return {
        "MULTIPB_CONFIG_FILE": str(tmp_path / "missing.yml"),
        "MULTIPB_DATA_DIR": str(tmp_path / "data"),
        "MULTIPB_LOGS_DIR": str(tmp_path / "logs"),
        "MULTIPB_INSTANCE_LOGS_DIR": str(tmp_path / "instance-logs"),
        "MULTIPB_RUNTIME_DIR": str(tmp_path / "run"),
        "MULTIPB_BACKUPS__ROOT": str(tmp_path / "backups"),
        "MULTIPB_LIFECYCLE__SCRIPTS_DIR": str(tmp_path / "scripts"),
        "MULTIPB_LOCK_TIMEOUT": "2",
    }


def _seed(tmp_path: Path) -> None:
    write_manifest(
        tmp_path / "data" / "instances.json",
        {
            "acme": {"port": 30001, "status": "running", "created": "2024-01-01T00:00:00Z"},
            "beta": {"port": 30000, "status": "stopped", "created": "2024-01-02T00:00:00Z"},
        },
    )


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def test_version_flag_prints_version(tmp_path: Path) -> None:
    """``--version`` reports the package version."""
    result = runner.invoke(app, ["--version"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert f"multipb {__version__}" in result.stdout
    assert get_version() == __version__


def test_no_command_shows_help(tmp_path: Path) -> None:
    """Running without a command prints usage."""
    result = runner.invoke(app, [], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0
    assert "serve" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors exit with code 2."""
    env = _prepare_environment(tmp_path)
    env["MULTIPB_PORTS__MIN"] = "40000"

    result = runner.invoke(app, ["ports", "list"], env=env)

    assert result.exit_code == 2
    assert "must not exceed" in result.stdout


def test_instances_list_json(tmp_path: Path) -> None:
    """Instances are listed straight from the manifest."""
    _seed(tmp_path)

    result = runner.invoke(
        app, ["instances", "list", "--json"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert [entry["name"] for entry in payload["instances"]] == ["acme", "beta"]
    assert payload["instances"][0]["status"] == "running"


def test_ports_list_json_sorted(tmp_path: Path) -> None:
    """Port listings are ordered by port and include the reserved range."""
    _seed(tmp_path)

    result = runner.invoke(app, ["ports", "list", "--json"], env=_prepare_environment(tmp_path))

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["ports"] == [
        {"port": 30000, "instance": "beta"},
        {"port": 30001, "instance": "acme"},
    ]
    assert payload["range"] == {"min": 30000, "max": 39999}


def test_ports_check(tmp_path: Path) -> None:
    """Port checks report usage and range in JSON and text."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)

    taken = runner.invoke(app, ["ports", "check", "30000", "--json"], env=env)
    assert taken.exit_code == 0, taken.stdout
    assert _extract_json(taken.stdout) == {
        "port": 30000,
        "available": False,
        "inRange": True,
        "inUse": True,
    }

    outside = runner.invoke(app, ["ports", "check", "20000"], env=env)
    assert outside.exit_code == 0
    assert "outside the reserved range" in outside.stdout

    free = runner.invoke(app, ["ports", "check", "30002"], env=env)
    assert "is available" in free.stdout


def test_backup_pending_reports_markers(tmp_path: Path) -> None:
    """Interrupted restores are listed; none is not an error."""
    env = _prepare_environment(tmp_path)

    empty = runner.invoke(app, ["backup", "pending"], env=env)
    assert empty.exit_code == 0
    assert "No interrupted restores." in empty.stdout

    data_dir = tmp_path / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / ".acme.restore.json").write_text(
        json.dumps(
            {
                "instance": "acme",
                "artifact": "backup-1.tar.gz",
                "holding_dir": str(data_dir / ".acme.restore-1"),
                "started_at": "2024-01-01T00:00:00+00:00",
            }
        ),
        encoding="utf-8",
    )

    result = runner.invoke(app, ["backup", "pending", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (marker,) = _extract_json(result.stdout)["pending"]
    assert marker["instance"] == "acme"
    assert marker["artifact"] == "backup-1.tar.gz"


def test_backup_commands_map_errors_to_exit_codes(tmp_path: Path) -> None:
    """Unknown instances and artifacts are validation failures."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)

    unknown = runner.invoke(app, ["backup", "create", "ghost"], env=env)
    assert unknown.exit_code == 2
    assert "Instance 'ghost' not found" in unknown.stdout

    missing = runner.invoke(app, ["backup", "delete", "acme", "backup-x.tar.gz"], env=env)
    assert missing.exit_code == 2

    escape = runner.invoke(app, ["backup", "restore", "acme", "../x", "--yes"], env=env)
    assert escape.exit_code == 2


def test_backup_create_and_list(tmp_path: Path) -> None:
    """Backups created from the CLI show up in the listing."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)
    live = tmp_path / "data" / "acme"
    live.mkdir(parents=True)
    (live / "data.db").write_bytes(b"acme database")

    created = runner.invoke(app, ["backup", "create", "acme", "--json"], env=env)
    assert created.exit_code == 0, created.stdout
    name = _extract_json(created.stdout)["backup"]["name"]

    listed = runner.invoke(app, ["backup", "list", "acme", "--json"], env=env)
    assert listed.exit_code == 0, listed.stdout
    assert [entry["name"] for entry in _extract_json(listed.stdout)["backups"]] == [name]

    log_path = tmp_path / "logs" / "operations.jsonl"
    commands = [
        json.loads(line)["command"]
        for line in log_path.read_text(encoding="utf-8").splitlines()
    ]
    assert "backup create" in commands
    assert "backup list" in commands


def test_monitor_tick_without_instances(tmp_path: Path) -> None:
    """A tick over an empty manifest checks nothing."""
    result = runner.invoke(
        app, ["monitor", "tick", "--json"], env=_prepare_environment(tmp_path)
    )

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["skipped"] is False
    assert payload["checked"] == 0
    assert payload["events"] == []


def _script(tmp_path: Path, name: str, body: str) -> None:
    scripts = tmp_path / "scripts"
    scripts.mkdir(parents=True, exist_ok=True)
    path = scripts / name
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)


def test_versions_commands(tmp_path: Path) -> None:
    """Release commands print the helper's answers and map failures to exit codes."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)
    _script(
        tmp_path,
        "manage-versions.sh",
        'case "$1" in\n'
        "  latest) echo v0.23.1 ;;\n"
        '  available) printf "v0.23.1\\nv0.22.4\\n" ;;\n'
        "  installed) exit 1 ;;\n"
        '  download|delete) echo "$1 $2" ;;\n'
        "esac",
    )

    latest = runner.invoke(app, ["versions", "latest"], env=env)
    assert latest.exit_code == 0, latest.stdout
    assert "v0.23.1" in latest.stdout

    available = runner.invoke(app, ["versions", "available", "--json"], env=env)
    assert _extract_json(available.stdout) == {"versions": ["v0.23.1", "v0.22.4"]}

    installed = runner.invoke(app, ["versions", "installed"], env=env)
    assert installed.exit_code == 0
    assert "No releases installed." in installed.stdout

    downloaded = runner.invoke(app, ["versions", "download", "v0.23.1"], env=env)
    assert downloaded.exit_code == 0, downloaded.stdout
    assert "Downloaded release v0.23.1." in downloaded.stdout

    invalid = runner.invoke(app, ["versions", "download", "nope"], env=env)
    assert invalid.exit_code == 2

    deleted = runner.invoke(app, ["versions", "delete", "v0.22.4"], env=env)
    assert deleted.exit_code == 0, deleted.stdout
    assert "Deleted release v0.22.4." in deleted.stdout


def test_versions_delete_refuses_release_in_use(tmp_path: Path) -> None:
    write_manifest(
        tmp_path / "data" / "instances.json",
        {"acme": {"port": 30000, "status": "running", "version": "0.22.4"}},
    )
    env = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["versions", "delete", "v0.22.4"], env=env)

    assert result.exit_code == 2
    assert "used by: acme" in result.stdout


def test_instances_import(tmp_path: Path) -> None:
    """Imports reserve the next free port and hand it to the import script."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)
    _script(tmp_path, "import-instance.sh", 'echo "$@" > "$(dirname "$0")/import.args"')
    archive = tmp_path / "export.zip"
    archive.write_bytes(b"PK exported instance")

    result = runner.invoke(app, ["instances", "import", "gamma", str(archive)], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Imported instance gamma on port 30002." in result.stdout
    args = (tmp_path / "scripts" / "import.args").read_text(encoding="utf-8").split()
    assert args == [str(archive), "gamma", "--port", "30002"]

    duplicate = runner.invoke(app, ["instances", "import", "acme", str(archive)], env=env)
    assert duplicate.exit_code == 2
    assert "Import failed" in duplicate.stdout


def test_backup_recover_moves_held_data_back(tmp_path: Path) -> None:
    """Recovery swaps the held directory in and clears the marker."""
    _seed(tmp_path)
    env = _prepare_environment(tmp_path)
    for name in ("start-instance.sh", "stop-instance.sh"):
        _script(tmp_path, name, "exit 0")
    data_dir = tmp_path / "data"
    holding = data_dir / ".acme.restore-20240101000000-abcd"
    holding.mkdir(parents=True)
    (holding / "data.db").write_bytes(b"acme database")
    (data_dir / "acme").mkdir()
    archive = tmp_path / "backups" / "acme" / "backup-1.tar.gz"
    archive.parent.mkdir(parents=True)
    archive.write_bytes(b"archive")
    marker = data_dir / ".acme.restore.json"
    marker.write_text(
        json.dumps(
            {
                "instance": "acme",
                "artifact": "backup-1.tar.gz",
                "holding_dir": str(holding),
                "started_at": "2024-01-01T00:00:00+00:00",
            }
        ),
        encoding="utf-8",
    )

    blocked = runner.invoke(
        app, ["backup", "restore", "acme", "backup-1.tar.gz", "--yes"], env=env
    )
    assert blocked.exit_code == 3
    assert "recover it first" in blocked.stdout

    result = runner.invoke(app, ["backup", "recover", "acme", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Recovered data for acme" in result.stdout
    assert (data_dir / "acme" / "data.db").read_bytes() == b"acme database"
    assert not holding.exists()
    assert not marker.exists()

    again = runner.invoke(app, ["backup", "recover", "acme", "--yes"], env=env)
    assert again.exit_code == 2
