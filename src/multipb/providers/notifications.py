"""Notification sinks for health transitions."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx

LOGGER = logging.getLogger(__name__)

WEBHOOK_USERNAME = "Multi-PB Monitor"
CONTENT_PREFIX = "[Multi-PB]"


class Transition(str, Enum):
    """Health state flips worth telling an operator about."""

    DOWN = "down"
    RECOVERED = "recovered"


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """A single health transition for one instance."""

    instance: str
    transition: Transition
    message: str
    severity: str

    @classmethod
    def down(cls, instance: str) -> NotificationEvent:
        """Return the event emitted when *instance* stops answering probes."""
        return cls(
            instance=instance,
            transition=Transition.DOWN,
            message=f"Instance **{instance}** is DOWN!",
            severity="ALERT",
        )

    @classmethod
    def recovered(cls, instance: str) -> NotificationEvent:
        """Return the event emitted when *instance* answers probes again."""
        return cls(
            instance=instance,
            transition=Transition.RECOVERED,
            message=f"Instance **{instance}** has recovered.",
            severity="INFO",
        )

    def to_payload(self) -> dict[str, str]:
        """Return the webhook body for this event."""
        return {
            "content": f"{CONTENT_PREFIX} {self.severity}: {self.message}",
            "username": WEBHOOK_USERNAME,
        }


class NotificationSink(Protocol):
    """Receives transition events; ``send`` must return promptly."""

    def send(self, event: NotificationEvent) -> None:
        """Hand *event* off for delivery."""
        ...

    async def aclose(self) -> None:
        """Flush pending deliveries and release resources."""
        ...


class NullNotificationSink:
    """Sink used when no webhook is configured; events are only logged."""

    def send(self, event: NotificationEvent) -> None:
        """Log *event* at debug level."""
        LOGGER.debug("Notification (no webhook configured): %s", event.message)

    async def aclose(self) -> None:
        """Nothing to release."""


class WebhookNotificationSink:
    """Post events to a chat-style webhook from background tasks."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Configure the sink; an owned client is created when none is given."""
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending: set[asyncio.Task[None]] = set()

    def send(self, event: NotificationEvent) -> None:
        """Schedule delivery of *event* without waiting for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("Dropping notification for %s: no running event loop", event.instance)
            return
        task = loop.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def aclose(self) -> None:
        """Wait for in-flight deliveries, then close the owned client."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def _deliver(self, event: NotificationEvent) -> None:
        try:
            response = await self._client.post(self.url, json=event.to_payload())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.error("Failed to deliver notification for %s: %s", event.instance, exc)
            return
        LOGGER.info("Delivered %s notification for %s", event.transition.value, event.instance)


def build_sink(
    webhook_url: str,
    *,
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> NotificationSink:
    """Return a webhook sink when *webhook_url* is set, otherwise a null sink."""
    if webhook_url:
        return WebhookNotificationSink(webhook_url, timeout=timeout, client=client)
    return NullNotificationSink()


__all__ = [
    "NotificationEvent",
    "NotificationSink",
    "NullNotificationSink",
    "Transition",
    "WebhookNotificationSink",
    "build_sink",
]
