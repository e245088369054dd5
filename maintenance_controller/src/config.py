from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace:       Fleet partition whose Pods are watched.
        label_selector:  Optional selector narrowing the watched units.
        max_unavailable: Units allowed to be unavailable at once.
        resync_period_seconds: Interval of the full cache re-delivery (0 disables).
        workers:         Number of worker threads draining the queue.
        max_attempts:    Retries before a failing key is dropped.
        cache_sync_timeout_seconds: Startup bound on the initial cache sync.
        strict_admission: Serialize admission and count unobserved approvals.
        health_port:     Port for ``/healthz``, ``/readyz`` and ``/metrics``.
        kubeconfig:      Explicit kubeconfig path; in-cluster config when unset.
    """

    namespace: str = "default"
    label_selector: str | None = None
    max_unavailable: int = 1
    resync_period_seconds: float = 10.0
    workers: int = 1
    max_attempts: int = 5
    cache_sync_timeout_seconds: float = 60.0
    strict_admission: bool = False
    health_port: int = 8080
    kubeconfig: str | None = None


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    environ: Mapping[str, str] | None = None,
) -> int:
    raw = (os.environ if environ is None else environ).get(name)
    if raw is None:
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


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    environ: Mapping[str, str] | None = None,
) -> float:
    raw = (os.environ if environ is None else environ).get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def load_config(environ: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``       : namespace holding the fleet (``default``).
        ``UNIT_LABEL_SELECTOR``   : label selector for watched units (none).
        ``MAX_UNAVAILABLE``       : admission threshold (``1``).
        ``RESYNC_PERIOD_SECONDS`` : cache resync interval (``10``).
        ``WORKER_COUNT``          : worker threads (``1``).
        ``MAX_RETRY_ATTEMPTS``    : retries before dropping a key (``5``).
        ``CACHE_SYNC_TIMEOUT_SECONDS`` : startup sync bound (``60``).
        ``STRICT_ADMISSION``      : serialize admission decisions (``false``).
        ``HEALTH_PORT``           : health/metrics port (``8080``).
        ``KUBECONFIG``            : explicit kubeconfig path (unset).
    """
    env = os.environ if environ is None else environ

    namespace = env.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    label_selector = env.get("UNIT_LABEL_SELECTOR", "").strip() or None
    kubeconfig = env.get("KUBECONFIG", "").strip() or None

    return ControllerConfig(
        namespace=namespace.strip(),
        label_selector=label_selector,
        max_unavailable=env_int("MAX_UNAVAILABLE", 1, minimum=1, environ=env),
        resync_period_seconds=env_float("RESYNC_PERIOD_SECONDS", 10.0, minimum=0.0, environ=env),
        workers=env_int("WORKER_COUNT", 1, minimum=1, environ=env),
        max_attempts=env_int("MAX_RETRY_ATTEMPTS", 5, minimum=0, environ=env),
        cache_sync_timeout_seconds=env_float(
            "CACHE_SYNC_TIMEOUT_SECONDS", 60.0, minimum=1.0, environ=env
        ),
        strict_admission=parse_bool(env.get("STRICT_ADMISSION")),
        health_port=env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, environ=env),
        kubeconfig=kubeconfig,
    )
