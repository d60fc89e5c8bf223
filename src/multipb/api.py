"""FastAPI control API for multipb."""
from __future__ import annotations

import asyncio
import logging
import re
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import psutil
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel

from . import __version__
from .archive import directory_size, format_size
from .backups import (
    BackupError,
    BackupNotFoundError,
    InvalidBackupNameError,
    RestoreError,
    RestorePendingError,
)
from .instances import ImportArchiveError, InstanceOperationError
from .locking import LockTimeoutError
from .ports import PortAllocationError
from .providers.lifecycle import LifecycleError
from .proxy import BODY_METHODS, UpstreamUnavailableError
from .releases import InvalidVersionError, ReleaseError, ReleaseInUseError
from .runtime import Runtime
from .state.history import HistoryError
from .state.manifest import (
    InstanceExistsError,
    InstanceNameError,
    InstanceNotFoundError,
    ManifestError,
)

LOGGER = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = "Unauthorized: Valid admin token required"
WRITE_METHODS = frozenset({"POST", "PUT", "DELETE", "PATCH"})
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_BEARER_PATTERN = re.compile(r"^Bearer\s+", re.IGNORECASE)

# Most specific classes first; the first isinstance match wins.
ERROR_STATUS: tuple[tuple[type[BaseException], int], ...] = (
    (InstanceNameError, 400),
    (PortAllocationError, 400),
    (InvalidVersionError, 400),
    (InvalidBackupNameError, 400),
    (ImportArchiveError, 400),
    (InstanceNotFoundError, 404),
    (BackupNotFoundError, 404),
    (InstanceExistsError, 409),
    (LockTimeoutError, 409),
    (RestorePendingError, 409),
    (ReleaseInUseError, 409),
    (UpstreamUnavailableError, 502),
    (RestoreError, 500),
    (BackupError, 500),
    (InstanceOperationError, 500),
    (ReleaseError, 500),
    (LifecycleError, 500),
    (ManifestError, 500),
    (HistoryError, 500),
)


class CreateInstanceRequest(BaseModel):
    """Body accepted by ``POST /instances``."""

    name: str | None = None
    email: str | None = None
    password: str | None = None
    port: int | str | None = None
    memory: str | None = None
    version: str | None = None


class VersionRequest(BaseModel):
    """Body accepted by the upgrade and release download routes."""

    version: str | None = None


def error_response(status_code: int, message: str) -> JSONResponse:
    """Return the standard ``{"error": message}`` payload."""
    return JSONResponse(status_code=status_code, content={"error": message})


def is_authorized(header: str | None, token: str | None) -> bool:
    """Return ``True`` when *header* carries ``Bearer <token>`` (or no token is set)."""
    if not token:
        return True
    if not header or not _BEARER_PATTERN.match(header):
        return False
    supplied = _BEARER_PATTERN.sub("", header, count=1).strip()
    return secrets.compare_digest(supplied.encode("utf-8"), token.encode("utf-8"))


def _status_for(exc: BaseException) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(runtime: Runtime, *, start_monitor: bool = True) -> FastAPI:
    """Return the control API bound to *runtime*."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        for marker in await runtime.backups.interrupted_restores():
            LOGGER.warning(
                "Interrupted restore detected for %s (artifact %s, holding dir %s)",
                marker.instance,
                marker.artifact,
                marker.holding_dir,
            )
        if runtime.config.admin_token:
            LOGGER.info("Admin token configured - API authorization enabled")
        if start_monitor and runtime.config.monitoring.enabled:
            runtime.monitor.start()
        try:
            yield
        finally:
            await runtime.aclose()

    app = FastAPI(title="multipb", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def require_admin_token(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Reject mutating requests that lack the configured bearer token."""
        if request.method in WRITE_METHODS and not is_authorized(
            request.headers.get("authorization"), runtime.config.admin_token
        ):
            return error_response(401, UNAUTHORIZED_MESSAGE)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def handle_domain_error(_request: Request, exc: Exception) -> JSONResponse:
        status_code = _status_for(exc)
        message = str(exc) or type(exc).__name__
        if status_code >= 500:
            LOGGER.error("Request failed: %s", message)
        return error_response(status_code, message)

    for error_type, _status in ERROR_STATUS:
        app.add_exception_handler(error_type, handle_domain_error)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return error_response(400, str(message))

    # Instances --------------------------------------------------------
    @app.get("/instances")
    async def list_instances() -> dict[str, Any]:
        """List instances with live status, size, and health."""
        return {"instances": await runtime.instances.list_instances()}

    @app.post("/instances")
    async def create_instance(body: CreateInstanceRequest) -> dict[str, Any]:
        """Create an instance, allocating a port when none is given."""
        return await runtime.instances.create(
            body.name,
            email=body.email,
            password=body.password,
            port=body.port,
            memory=body.memory,
            version=body.version,
        )

    @app.get("/instances/{name}")
    async def get_instance(name: str) -> dict[str, Any]:
        """Return instance detail including backups and health history."""
        return await runtime.instances.describe(name)

    @app.delete("/instances/{name}")
    async def delete_instance(name: str) -> dict[str, Any]:
        """Remove the instance and delete its data."""
        await runtime.instances.remove(name)
        return {"success": True}

    @app.post("/instances/{name}/start")
    async def start_instance(name: str) -> dict[str, Any]:
        """Start the instance."""
        await runtime.instances.start(name)
        return {"success": True}

    @app.post("/instances/{name}/stop")
    async def stop_instance(name: str) -> dict[str, Any]:
        """Stop the instance."""
        await runtime.instances.stop(name)
        return {"success": True}

    @app.post("/instances/{name}/restart")
    async def restart_instance(name: str) -> dict[str, Any]:
        """Restart the instance (stop, then start)."""
        await runtime.instances.restart(name)
        return {"success": True}

    @app.post("/instances/{name}/upgrade")
    async def upgrade_instance(name: str, body: VersionRequest) -> dict[str, Any]:
        """Install another release for the instance and restart it."""
        return await runtime.instances.upgrade(name, body.version or "")

    @app.get("/instances/{name}/logs")
    async def instance_logs(name: str) -> dict[str, str]:
        """Tail the instance stdout and stderr logs."""
        await runtime.manifest.require(name)
        return await runtime.logs.read(name)

    @app.get("/instances/{name}/history")
    async def instance_history(name: str) -> dict[str, Any]:
        """Return recorded health samples, oldest first."""
        await runtime.manifest.require(name)
        samples = await runtime.history.get(name)
        return {"history": [sample.to_dict() for sample in samples]}

    # Backups ----------------------------------------------------------
    @app.get("/instances/{name}/backups")
    async def list_backups(name: str) -> dict[str, Any]:
        """List backups, newest first."""
        artifacts = await runtime.backups.list(name)
        return {"backups": [artifact.to_dict() for artifact in artifacts]}

    @app.post("/instances/{name}/backups")
    async def create_backup(name: str) -> dict[str, Any]:
        """Archive the instance data directory."""
        artifact = await runtime.backups.create(name)
        return {"success": True, "backup": artifact.to_dict()}

    @app.delete("/instances/{name}/backups/{backup_id}")
    async def delete_backup(name: str, backup_id: str) -> dict[str, Any]:
        """Delete a backup archive."""
        await runtime.backups.delete(name, backup_id)
        return {"success": True}

    @app.post("/instances/{name}/backups/{backup_id}/restore")
    async def restore_backup(name: str, backup_id: str) -> dict[str, Any]:
        """Replace the instance data with the backup contents."""
        await runtime.backups.restore(name, backup_id)
        return {"success": True}

    @app.get("/instances/{name}/backups/{backup_id}/download")
    async def download_backup(name: str, backup_id: str) -> FileResponse:
        """Stream a backup archive."""
        path = runtime.backups.path_for(name, backup_id)
        return FileResponse(path, media_type="application/gzip", filename=path.name)

    @app.post("/instances/{name}/recover")
    async def recover_restore(name: str) -> dict[str, Any]:
        """Move the data held by an unfinished restore back in place."""
        await runtime.backups.recover(name)
        return {"success": True}

    # Import -----------------------------------------------------------
    @app.post("/import")
    async def import_instance(request: Request, name: str | None = None) -> dict[str, Any]:
        """Create an instance from an uploaded export archive."""
        return await runtime.instances.import_upload(name, request.stream())

    # Releases ---------------------------------------------------------
    @app.get("/versions/latest")
    async def latest_version() -> dict[str, Any]:
        """Return the newest published release."""
        return {"version": await runtime.releases.latest()}

    @app.get("/versions/available")
    async def available_versions() -> dict[str, Any]:
        """List releases that can be downloaded."""
        return {"versions": await runtime.releases.available()}

    @app.get("/versions/installed")
    async def installed_versions() -> dict[str, Any]:
        """List releases present on this host."""
        return {"versions": await runtime.releases.installed()}

    @app.post("/versions/download")
    async def download_version(body: VersionRequest) -> dict[str, Any]:
        """Download a release so instances can use it."""
        release = await runtime.releases.download(body.version or "")
        return {"success": True, "version": release}

    @app.delete("/versions/{version}")
    async def delete_version(version: str) -> dict[str, Any]:
        """Remove an installed release no instance uses."""
        await runtime.releases.delete(version)
        return {"success": True}

    # Proxy ------------------------------------------------------------
    @app.api_route("/instances/{name}/pb/{path:path}", methods=PROXY_METHODS)
    async def proxy_to_instance(name: str, path: str, request: Request) -> Response:
        """Relay the request to the instance's own HTTP API."""
        body = await request.body() if request.method in BODY_METHODS else None
        result = await runtime.proxy.forward(
            name,
            request.method,
            f"/{path}",
            query=request.url.query,
            body=body,
            authorization=request.headers.get("authorization"),
            content_type=request.headers.get("content-type"),
        )
        return Response(
            content=result.content,
            status_code=result.status_code,
            media_type=result.content_type,
        )

    # Ports ------------------------------------------------------------
    @app.get("/ports/check/{port}")
    async def check_port(port: int) -> dict[str, Any]:
        """Report whether *port* could be assigned to a new instance."""
        manifest = await runtime.manifest.load()
        return runtime.allocator.describe(port, (record.port for record in manifest.values()))

    @app.get("/ports/used")
    async def used_ports() -> dict[str, Any]:
        """List allocated ports and the reserved range."""
        return {
            "ports": await runtime.manifest.used_ports(),
            "range": {"min": runtime.allocator.minimum, "max": runtime.allocator.maximum},
        }

    # System -----------------------------------------------------------
    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        """Return host load, memory usage, and total data size."""
        load = psutil.getloadavg()[0]
        memory = psutil.virtual_memory().percent
        size_bytes = await asyncio.to_thread(directory_size, runtime.config.data_dir)
        return {
            "load": f"{load:.2f}",
            "memoryPercent": round(memory, 1),
            "diskUsage": format_size(size_bytes),
        }

    @app.get("/notifications/config")
    async def notifications_config() -> dict[str, Any]:
        """Return the configured webhook URL."""
        return {"webhookUrl": runtime.config.notifications.webhook_url}

    return app


__all__ = ["create_app", "error_response", "is_authorized"]
