from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch, or ``None`` for all namespaces.
        workers: Number of reconcile worker threads.
        health_port: Port of the health and metrics server.
        max_conflict_retries: Attempts per owner reference write before giving up.
        watch_timeout_seconds: Server-side timeout of each watch stream.
        resync_period_seconds: Interval between full workload re-lists (``0`` disables).
        log_level: Root logger level name.
    """

    namespace: str | None = None
    workers: int = 2
    health_port: int = 8080
    max_conflict_retries: int = 5
    watch_timeout_seconds: int = 300
    resync_period_seconds: int = 600
    log_level: str = "INFO"


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``         namespace to watch (empty: all namespaces).
        ``WORKERS``                 reconcile worker threads (``2``).
        ``HEALTH_PORT``             health/metrics port (``8080``).
        ``MAX_CONFLICT_RETRIES``    owner reference write attempts (``5``).
        ``WATCH_TIMEOUT_SECONDS``   watch stream timeout (``300``).
        ``RESYNC_PERIOD_SECONDS``   full workload re-list interval (``600``, ``0`` disables).
        ``LOG_LEVEL``               logging level (``INFO``).
    """
    values = env if env is not None else os.environ

    namespace = (values.get("WATCH_NAMESPACE") or "").strip() or None

    log_level = (values.get("LOG_LEVEL") or "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got: {log_level!r}")

    return ControllerConfig(
        namespace=namespace,
        workers=env_int(values, "WORKERS", 2, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        max_conflict_retries=env_int(values, "MAX_CONFLICT_RETRIES", 5, minimum=1),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 300, minimum=1),
        resync_period_seconds=env_int(values, "RESYNC_PERIOD_SECONDS", 600, minimum=0),
        log_level=log_level,
    )
