from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from maintenance_controller.src.config import ConfigError, load_config
from maintenance_controller.src.controller import (
    CacheSyncTimeoutError,
    CacheWatchStoppedError,
    build_controller,
)
from maintenance_controller.src.health import start_health_server
from maintenance_controller.src.kube import build_core_api, load_kube_configuration
from maintenance_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("maintenance_controller")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint.

    Exits with status 1 when the configuration is invalid, the Kubernetes
    client cannot be built, the fleet cache never syncs, or the cache
    watch stops after sync.  Otherwise runs until SIGTERM/SIGINT.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.critical("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc

    try:
        load_kube_configuration(config.kubeconfig)
        core_api = build_core_api()
    except Exception as exc:
        LOGGER.critical("Failed to build Kubernetes client", exc_info=True)
        raise SystemExit(1) from exc

    controller = build_controller(core_api=core_api, config=config)
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    LOGGER.info(
        "Watching namespace %s (max unavailable %d, %d worker(s), strict admission %s)",
        config.namespace,
        config.max_unavailable,
        config.workers,
        config.strict_admission,
    )
    try:
        controller.run(stop_event=shutdown_event)
    except CacheSyncTimeoutError as exc:
        LOGGER.critical("Fleet cache never synced: %s", exc)
        raise SystemExit(1) from exc
    except CacheWatchStoppedError as exc:
        LOGGER.critical("Lost the fleet cache watch: %s", exc)
        raise SystemExit(1) from exc
    finally:
        health_server.shutdown()


if __name__ == "__main__":
    main()
