"""Adapter around the external instance lifecycle scripts."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

SCRIPT_NAMES: Mapping[str, str] = {
    "add": "add-instance.sh",
    "remove": "remove-instance.sh",
    "start": "start-instance.sh",
    "stop": "stop-instance.sh",
    "upgrade": "upgrade-instance.sh",
    "import": "import-instance.sh",
    "versions": "manage-versions.sh",
}


class LifecycleError(RuntimeError):
    """Raised when a lifecycle operation cannot be dispatched at all."""


@dataclass(frozen=True, slots=True)
class LifecycleResult:
    """Outcome of one lifecycle script invocation."""

    ok: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None

    @property
    def detail(self) -> str:
        """Return the most useful diagnostic text for error reporting."""
        return self.stderr.strip() or self.stdout.strip() or "no output"


class LifecycleGateway(Protocol):
    """Anything able to run lifecycle operations for an instance."""

    async def invoke(
        self,
        operation: str,
        instance: str,
        args: Sequence[str] = (),
    ) -> LifecycleResult:
        """Run *operation* for *instance* and report the outcome."""
        ...

    async def run(self, operation: str, args: Sequence[str] = ()) -> LifecycleResult:
        """Run the script behind *operation* with exactly *args*."""
        ...


@dataclass(slots=True)
class ScriptLifecycleGateway:
    """Run ``<scripts_dir>/<script> <args...>`` as a child process.

    Instance operations pass the instance name as the first argument; release
    management and imports use :meth:`run` with their own argument layout.
    """

    scripts_dir: Path = Path("/usr/local/bin")
    timeout: float = 300.0
    scripts: Mapping[str, str] = field(default_factory=lambda: dict(SCRIPT_NAMES))

    def script_path(self, operation: str) -> Path:
        """Return the script path for *operation*."""
        try:
            script = self.scripts[operation]
        except KeyError as exc:
            raise LifecycleError(f"Unknown lifecycle operation: {operation}") from exc
        return Path(self.scripts_dir) / script

    async def invoke(
        self,
        operation: str,
        instance: str,
        args: Sequence[str] = (),
    ) -> LifecycleResult:
        """Run the script for *operation* on *instance*; never raises for script failures."""
        return await self.run(operation, [instance, *args])

    async def run(self, operation: str, args: Sequence[str] = ()) -> LifecycleResult:
        """Run the script for *operation* with *args*; never raises for script failures."""
        script = self.script_path(operation)
        arguments = [str(arg) for arg in args]
        command = [str(script), *arguments]
        subject = arguments[0] if arguments else ""
        LOGGER.info("Executing %s %s", script.name, subject)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            message = f"Lifecycle script not found: {script}"
            LOGGER.error(message)
            return LifecycleResult(ok=False, stderr=message)
        except OSError as exc:
            message = f"Failed to execute {script}: {exc}"
            LOGGER.error(message)
            return LifecycleResult(ok=False, stderr=message)

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            message = f"{script.name} timed out after {self.timeout:g}s"
            LOGGER.error("%s (%s)", message, subject)
            return LifecycleResult(ok=False, stderr=message, returncode=process.returncode)

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        result = LifecycleResult(
            ok=process.returncode == 0,
            stdout=stdout,
            stderr=stderr,
            returncode=process.returncode,
        )
        if result.ok:
            LOGGER.debug("%s %s succeeded: %s", script.name, subject, stdout.strip())
        else:
            LOGGER.error(
                "%s %s failed (rc=%s): %s",
                script.name,
                subject,
                process.returncode,
                result.detail,
            )
        return result


async def restart(gateway: LifecycleGateway, instance: str) -> LifecycleResult:
    """Stop then start *instance*; a failed stop does not prevent the start."""
    stopped = await gateway.invoke("stop", instance)
    if not stopped.ok:
        LOGGER.warning("Stop before restart of %s failed: %s", instance, stopped.detail)
    return await gateway.invoke("start", instance)


__all__ = [
    "LifecycleError",
    "LifecycleGateway",
    "LifecycleResult",
    "SCRIPT_NAMES",
    "ScriptLifecycleGateway",
    "restart",
]
