"""Provider interfaces for multipb."""
from __future__ import annotations

from .instance_logs import InstanceLogReader
from .lifecycle import (
    LifecycleError,
    LifecycleGateway,
    LifecycleResult,
    ScriptLifecycleGateway,
)
from .notifications import (
    NotificationEvent,
    NotificationSink,
    NullNotificationSink,
    Transition,
    WebhookNotificationSink,
)

__all__ = [
    "InstanceLogReader",
    "LifecycleError",
    "LifecycleGateway",
    "LifecycleResult",
    "NotificationEvent",
    "NotificationSink",
    "NullNotificationSink",
    "ScriptLifecycleGateway",
    "Transition",
    "WebhookNotificationSink",
]
