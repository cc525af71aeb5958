from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from kubernetes.config.config_exception import ConfigException

from expose_controller.src.config import ConfigError, load_config
from expose_controller.src.controller import CacheSyncError, build_controller
from expose_controller.src.health import start_health_server
from expose_controller.src.kube import build_clients, load_kube_configuration
from expose_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|client[_-]?key|secret)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


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


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="expose-controller",
        description="Keep a <name>-expose Service in sync with every Deployment.",
    )
    parser.add_argument(
        "--kubeconfig",
        default="",
        help="Path to a kubeconfig file; in-cluster config is used when omitted",
    )
    parser.add_argument(
        "--master",
        default="",
        help="Kubernetes API server address, overrides the kubeconfig value",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Controller entrypoint: configure logging, wire the controller, and run until signalled."""
    args = parse_args(argv)
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging("INFO")
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    configure_logging(config.log_level)
    LOGGER.info("Starting expose-controller %s", RUNTIME_VERSION)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(kubeconfig=args.kubeconfig or None, master=args.master or None)
    except ConfigException as exc:
        LOGGER.error("Error building Kubernetes configuration: %s", exc)
        return 1

    core_api, apps_api = build_clients()
    controller = build_controller(core_api=core_api, apps_api=apps_api, config=config)
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        checks=controller.readiness_checks(),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        controller.run(workers=config.workers, stop_event=shutdown_event)
    except CacheSyncError as exc:
        LOGGER.error("Controller failed to start: %s", exc)
        return 1
    finally:
        health_server.shutdown()

    LOGGER.info("Controller stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
