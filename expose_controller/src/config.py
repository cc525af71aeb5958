from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from expose_controller.src.workqueue import DEFAULT_BASE_DELAY_SECONDS, DEFAULT_MAX_DELAY_SECONDS


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch; empty means all namespaces.
        workers: Number of concurrent reconcile workers.
        resync_seconds: Period for re-delivering cached Deployments, 0 disables.
        retry_base_delay_seconds: First backoff delay after a failed sync.
        retry_max_delay_seconds: Backoff ceiling for repeatedly failing keys.
        health_port: Port of the health and metrics server.
        log_level: Root logger level name.
    """

    namespace: str = ""
    workers: int = 2
    resync_seconds: int = 0
    retry_base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    health_port: int = 8080
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


def env_float(values: Mapping[str, str], name: str, default: float) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load controller config from the environment.

    Variables: ``WATCH_NAMESPACE``, ``WORKERS``, ``RESYNC_SECONDS``,
    ``RETRY_BASE_DELAY_SECONDS``, ``RETRY_MAX_DELAY_SECONDS``,
    ``HEALTH_PORT`` and ``LOG_LEVEL``.
    """
    values = env if env is not None else os.environ

    base_delay = env_float(values, "RETRY_BASE_DELAY_SECONDS", DEFAULT_BASE_DELAY_SECONDS)
    max_delay = env_float(values, "RETRY_MAX_DELAY_SECONDS", DEFAULT_MAX_DELAY_SECONDS)
    if max_delay < base_delay:
        raise ConfigError(
            "RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS"
        )

    return ControllerConfig(
        namespace=values.get("WATCH_NAMESPACE", "").strip(),
        workers=env_int(values, "WORKERS", 2, minimum=1, maximum=64),
        resync_seconds=env_int(values, "RESYNC_SECONDS", 0, minimum=0),
        retry_base_delay_seconds=base_delay,
        retry_max_delay_seconds=max_delay,
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        log_level=values.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
