"""Configuration loader for multipb.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/multipb/config.yml`` (or an override path).
3. Environment variables prefixed with ``MULTIPB_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MULTIPB_PORTS__MIN=31000
    export MULTIPB_MONITORING__INTERVAL_SECONDS=30
    export MULTIPB_ADMIN_TOKEN=s3cret

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load multipb configuration. Install with "
        "`pip install multipb` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MULTIPB_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Reserved port range for instance processes (inclusive)."""

    min: int = 30000
    max: int = 39999

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class MonitoringConfig:
    """Health monitor cadence, probe, and retention settings."""

    enabled: bool = True
    interval_seconds: float = 60.0
    history_retention: int = 100
    probe_timeout: float = 2.0
    health_path: str = "/api/health"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "history_retention": self.history_retention,
            "probe_timeout": self.probe_timeout,
            "health_path": self.health_path,
        }


@dataclass(frozen=True)
class NotificationsConfig:
    """Webhook used for health transition notifications."""

    webhook_url: str = ""
    timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"webhook_url": self.webhook_url, "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root)}


@dataclass(frozen=True)
class LifecycleConfig:
    """Location and timeout of the external lifecycle scripts."""

    scripts_dir: Path = Path("/usr/local/bin")
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"scripts_dir": str(self.scripts_dir), "timeout": self.timeout}


@dataclass(frozen=True)
class ProxyConfig:
    """Outbound proxy settings."""

    timeout: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout}


@dataclass(frozen=True)
class ApiConfig:
    """Control API bind address."""

    host: str = "127.0.0.1"
    port: int = 3001

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "port": self.port}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for multipb."""

    config_file: Path
    data_dir: Path
    manifest_file: Path
    history_file: Path
    logs_dir: Path
    instance_logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    admin_token: str | None
    ports: PortsConfig
    monitoring: MonitoringConfig
    notifications: NotificationsConfig
    backups: BackupConfig
    lifecycle: LifecycleConfig
    proxy: ProxyConfig
    api: ApiConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "data_dir": str(self.data_dir),
            "manifest_file": str(self.manifest_file),
            "history_file": str(self.history_file),
            "logs_dir": str(self.logs_dir),
            "instance_logs_dir": str(self.instance_logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "admin_token": "***" if self.admin_token else None,
            "ports": self.ports.to_dict(),
            "monitoring": self.monitoring.to_dict(),
            "notifications": self.notifications.to_dict(),
            "backups": self.backups.to_dict(),
            "lifecycle": self.lifecycle.to_dict(),
            "proxy": self.proxy.to_dict(),
            "api": self.api.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/multipb/config.yml",
    "data_dir": "/var/multipb/data",
    "manifest_file": None,  # derived from data_dir when absent
    "history_file": None,  # derived from data_dir when absent
    "logs_dir": "/var/log/multipb/control",
    "instance_logs_dir": "/var/log/multipb",
    "runtime_dir": "/run/multipb",
    "lock_timeout": 30.0,
    "admin_token": None,
    "ports": {
        "min": 30000,
        "max": 39999,
    },
    "monitoring": {
        "enabled": True,
        "interval_seconds": 60,
        "history_retention": 100,
        "probe_timeout": 2.0,
        "health_path": "/api/health",
    },
    "notifications": {
        "webhook_url": "",
        "timeout": 10.0,
    },
    "backups": {
        "root": "/var/multipb/backups",
    },
    "lifecycle": {
        "scripts_dir": "/usr/local/bin",
        "timeout": 300.0,
    },
    "proxy": {
        "timeout": 30.0,
    },
    "api": {
        "host": "127.0.0.1",
        "port": 3001,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"min", "max"},
    "monitoring": {
        "enabled",
        "interval_seconds",
        "history_retention",
        "probe_timeout",
        "health_path",
    },
    "notifications": {"webhook_url", "timeout"},
    "backups": {"root"},
    "lifecycle": {"scripts_dir", "timeout"},
    "proxy": {"timeout"},
    "api": {"host", "port"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    data_dir = _to_path(raw.get("data_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    instance_logs_dir = _to_path(raw.get("instance_logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    manifest_value = raw.get("manifest_file")
    manifest_file = _to_path(manifest_value) if manifest_value else data_dir / "instances.json"
    history_value = raw.get("history_file")
    history_file = (
        _to_path(history_value) if history_value else data_dir / "health_history.json"
    )

    token_value = raw.get("admin_token")
    admin_token: str | None = None
    if token_value is not None:
        if not isinstance(token_value, (str, int)) or isinstance(token_value, bool):
            raise ConfigError("admin_token must be a string when provided.")
        admin_token = str(token_value).strip() or None

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        min=_expect_int(ports_mapping.get("min"), "ports.min", default=30000),
        max=_expect_int(ports_mapping.get("max"), "ports.max", default=39999),
    )
    if ports.min < 1 or ports.max > 65535:
        raise ConfigError("ports.min and ports.max must lie between 1 and 65535.")
    if ports.min > ports.max:
        raise ConfigError(
            f"ports.min ({ports.min}) must not exceed ports.max ({ports.max})."
        )

    monitoring_mapping = _as_dict(raw.get("monitoring"), "monitoring")
    retention = _expect_int(
        monitoring_mapping.get("history_retention"),
        "monitoring.history_retention",
        default=100,
    )
    if retention < 1:
        raise ConfigError("monitoring.history_retention must be at least 1.")
    health_path = str(monitoring_mapping.get("health_path", "/api/health"))
    if not health_path.startswith("/"):
        raise ConfigError("monitoring.health_path must start with '/'.")
    monitoring = MonitoringConfig(
        enabled=bool(monitoring_mapping.get("enabled", True)),
        interval_seconds=_expect_positive_float(
            monitoring_mapping.get("interval_seconds"),
            "monitoring.interval_seconds",
            default=60.0,
        ),
        history_retention=retention,
        probe_timeout=_expect_positive_float(
            monitoring_mapping.get("probe_timeout"),
            "monitoring.probe_timeout",
            default=2.0,
        ),
        health_path=health_path,
    )

    notifications_mapping = _as_dict(raw.get("notifications"), "notifications")
    webhook_raw = notifications_mapping.get("webhook_url")
    notifications = NotificationsConfig(
        webhook_url=str(webhook_raw).strip() if webhook_raw else "",
        timeout=_expect_positive_float(
            notifications_mapping.get("timeout"),
            "notifications.timeout",
            default=10.0,
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(root=_to_path(backups_mapping.get("root", "/var/multipb/backups")))

    lifecycle_mapping = _as_dict(raw.get("lifecycle"), "lifecycle")
    lifecycle = LifecycleConfig(
        scripts_dir=_to_path(lifecycle_mapping.get("scripts_dir", "/usr/local/bin")),
        timeout=_expect_positive_float(
            lifecycle_mapping.get("timeout"),
            "lifecycle.timeout",
            default=300.0,
        ),
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        timeout=_expect_positive_float(proxy_mapping.get("timeout"), "proxy.timeout", default=30.0)
    )

    api_mapping = _as_dict(raw.get("api"), "api")
    api = ApiConfig(
        host=str(api_mapping.get("host", "127.0.0.1")),
        port=_expect_int(api_mapping.get("port"), "api.port", default=3001),
    )

    return AppConfig(
        config_file=config_file,
        data_dir=data_dir,
        manifest_file=manifest_file,
        history_file=history_file,
        logs_dir=logs_dir,
        instance_logs_dir=instance_logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        admin_token=admin_token,
        ports=ports,
        monitoring=monitoring,
        notifications=notifications,
        backups=backups,
        lifecycle=lifecycle,
        proxy=proxy,
        api=api,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments == ["admin_token"]:
            # Tokens are opaque; never let YAML coerce them into numbers or booleans.
            overrides["admin_token"] = value.strip()
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ApiConfig",
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "LifecycleConfig",
    "MonitoringConfig",
    "NotificationsConfig",
    "PortsConfig",
    "ProxyConfig",
    "load_config",
]
