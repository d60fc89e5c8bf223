"""Forward tenant-scoped HTTP calls to the owning instance."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

from .state.manifest import InstanceNotFoundError, ManifestStore

LOGGER = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


class ProxyError(RuntimeError):
    """Base class for proxy failures."""


class UpstreamUnavailableError(ProxyError):
    """Raised when the instance cannot be reached or does not answer in time."""


@dataclass(frozen=True, slots=True)
class ProxyResponse:
    """Upstream answer relayed to the caller."""

    status_code: int
    content_type: str | None
    content: bytes


class ProxyRouter:
    """Resolve an instance to its loopback port and relay one request."""

    def __init__(
        self,
        *,
        manifest: ManifestStore,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
        host: str = "127.0.0.1",
    ) -> None:
        """Bind the router to the manifest and a shared HTTP client."""
        self._manifest = manifest
        self._client = client
        self.timeout = float(timeout)
        self.host = host

    def upstream_url(self, port: int, path: str) -> str:
        """Return the instance URL for *path* (always rooted at ``/``)."""
        if not path.startswith("/"):
            path = f"/{path}"
        return f"http://{self.host}:{port}{path}"

    async def forward(
        self,
        instance: str,
        method: str,
        path: str,
        *,
        query: str = "",
        body: bytes | None = None,
        authorization: str | None = None,
        content_type: str | None = None,
    ) -> ProxyResponse:
        """Relay the request to *instance* and return its response verbatim.

        Raises :class:`InstanceNotFoundError` before any network activity when
        *instance* is unknown, and :class:`UpstreamUnavailableError` when the
        upstream call fails.
        """
        record = await self._manifest.get(instance)
        if record is None:
            raise InstanceNotFoundError(f"Instance '{instance}' not found")

        method = method.upper()
        url = self.upstream_url(record.port, path)
        if query:
            url = f"{url}?{query}"
        headers: dict[str, str] = {}
        if authorization:
            headers["Authorization"] = authorization
        content: bytes | None = None
        if method in BODY_METHODS:
            content = body or b""
            headers["Content-Type"] = content_type or "application/json"

        started = time.monotonic()
        try:
            response = await self._client.request(
                method,
                url,
                content=content,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            LOGGER.warning(
                "Proxy %s %s for %s failed after %sms: %s",
                method,
                url,
                instance,
                duration_ms,
                exc,
            )
            raise UpstreamUnavailableError(f"Instance '{instance}' is unavailable") from exc

        if response.status_code >= 400:
            LOGGER.info(
                "Instance %s returned %s for %s %s", instance, response.status_code, method, path
            )
        return ProxyResponse(
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            content=response.content,
        )


__all__ = ["ProxyError", "ProxyResponse", "ProxyRouter", "UpstreamUnavailableError"]
