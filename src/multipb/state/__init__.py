"""Persistent state helpers (instance manifest and health history)."""
from __future__ import annotations

from .history import HealthHistoryStore, HealthSample, HistoryError
from .manifest import (
    InstanceExistsError,
    InstanceNameError,
    InstanceNotFoundError,
    InstanceRecord,
    InstanceStatus,
    ManifestError,
    ManifestStore,
    validate_instance_name,
)

__all__ = [
    "HealthHistoryStore",
    "HealthSample",
    "HistoryError",
    "InstanceExistsError",
    "InstanceNameError",
    "InstanceNotFoundError",
    "InstanceRecord",
    "InstanceStatus",
    "ManifestError",
    "ManifestStore",
    "validate_instance_name",
]
