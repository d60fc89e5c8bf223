"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx
import pytest

from multipb.config import AppConfig, load_config
from multipb.providers.lifecycle import LifecycleResult
from multipb.providers.notifications import NotificationEvent
from multipb.runtime import Runtime, build_runtime

Handler = Callable[[httpx.Request], httpx.Response]


class FakeGateway:
    """Lifecycle gateway double that records every invocation."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir
        self.calls: list[tuple[str, str | None, tuple[str, ...]]] = []
        self.failures: dict[str, LifecycleResult] = {}
        self.replies: dict[str, str] = {}

    def fail(self, operation: str, message: str = "boom", returncode: int = 1) -> None:
        """Make every later *operation* call fail with *message*.

        *operation* may name a script subcommand too, for example
        ``"versions download"``.
        """
        self.failures[operation] = LifecycleResult(
            ok=False, stderr=message, returncode=returncode
        )

    def reply(self, operation: str, stdout: str) -> None:
        """Answer later *operation* calls with *stdout*."""
        self.replies[operation] = stdout

    def operations(self, instance: str | None = None) -> list[str]:
        """Return the recorded operation names, optionally for one instance."""
        return [op for op, name, _args in self.calls if instance is None or name == instance]

    async def invoke(
        self,
        operation: str,
        instance: str,
        args: Sequence[str] = (),
    ) -> LifecycleResult:
        self.calls.append((operation, instance, tuple(args)))
        failure = self.failures.get(operation)
        if failure is not None:
            return failure
        if operation == "add":
            self._provision(instance)
        return LifecycleResult(ok=True, stdout=f"{operation} ok", returncode=0)

    async def run(self, operation: str, args: Sequence[str] = ()) -> LifecycleResult:
        arguments = tuple(args)
        self.calls.append((operation, None, arguments))
        key = f"{operation} {arguments[0]}" if arguments else operation
        failure = self.failures.get(key) or self.failures.get(operation)
        if failure is not None:
            return failure
        if operation == "import":
            self._provision(arguments[1])
        stdout = self.replies.get(key, self.replies.get(operation, f"{key} ok"))
        return LifecycleResult(ok=True, stdout=stdout, returncode=0)

    def _provision(self, instance: str) -> None:
        if self.data_dir is None:
            return
        target = self.data_dir / instance
        target.mkdir(parents=True, exist_ok=True)
        (target / "data.db").write_text(f"{instance} database\n", encoding="utf-8")


class RecordingSink:
    """Notification sink double that keeps every event."""

    def __init__(self) -> None:
        self.events: list[NotificationEvent] = []
        self.closed = False

    def send(self, event: NotificationEvent) -> None:
        self.events.append(event)

    async def aclose(self) -> None:
        self.closed = True


def unreachable(request: httpx.Request) -> httpx.Response:
    """Transport handler simulating instances that refuse connections."""
    raise httpx.ConnectError("Connection refused", request=request)


def write_manifest(path: Path, entries: dict[str, dict[str, object]]) -> None:
    """Seed a manifest document without going through the store."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(entries), encoding="utf-8")


def config_overrides(tmp_path: Path) -> dict[str, object]:
    """Return overrides that keep every path inside *tmp_path*."""
    return {
        "data_dir": str(tmp_path / "data"),
        "logs_dir": str(tmp_path / "logs"),
        "instance_logs_dir": str(tmp_path / "instance-logs"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 2,
        "backups": {"root": str(tmp_path / "backups")},
        "lifecycle": {"scripts_dir": str(tmp_path / "scripts")},
    }


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in the test's temporary directory."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides=config_overrides(tmp_path),
    )


@pytest.fixture
def gateway(config: AppConfig) -> FakeGateway:
    """Lifecycle gateway double that provisions data directories on add."""
    return FakeGateway(config.data_dir)


@pytest.fixture
def sink() -> RecordingSink:
    """Notification sink double."""
    return RecordingSink()


@pytest.fixture
def make_runtime(
    config: AppConfig,
    gateway: FakeGateway,
    sink: RecordingSink,
) -> Callable[..., Runtime]:
    """Return a factory building a runtime around the test doubles."""

    def _factory(
        handler: Handler | None = None,
        *,
        app_config: AppConfig | None = None,
    ) -> Runtime:
        return build_runtime(
            app_config or config,
            lifecycle=gateway,
            notifier=sink,
            transport=httpx.MockTransport(handler or unreachable),
        )

    return _factory
