from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

ReadinessCheck = Callable[[], bool]


def readiness_report(
    ready: threading.Event, checks: Mapping[str, ReadinessCheck]
) -> tuple[bool, str]:
    """Evaluate the readiness gate and every named check.

    The body lists ``name=true|false`` pairs, ``ready`` first, one per line.
    A check that raises counts as failing.
    """
    results = [("ready", ready.is_set())]
    for name, check in checks.items():
        try:
            passed = bool(check())
        except Exception:
            LOGGER.exception("Readiness check %s failed", name)
            passed = False
        results.append((name, passed))

    body = "\n".join(f"{name}={'true' if passed else 'false'}" for name, passed in results)
    return all(passed for _, passed in results), body


class _ProbeHandler(BaseHTTPRequestHandler):
    ready_event: threading.Event
    checks: Mapping[str, ReadinessCheck]

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._respond(200, b"ok")

    def _readyz(self) -> None:
        passed, body = readiness_report(self.ready_event, self.checks)
        self._respond(200 if passed else 503, body.encode())

    def _metrics(self) -> None:
        self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        routes = {
            "/healthz": self._healthz,
            "/readyz": self._readyz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._respond(404, b"not found")
            return
        route()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_probe_handler(
    ready: threading.Event, checks: Mapping[str, ReadinessCheck] | None = None
) -> type[_ProbeHandler]:
    """Bind *ready* and *checks* onto a handler class the stdlib server can instantiate."""
    bound_checks = dict(checks or {})

    class _BoundProbeHandler(_ProbeHandler):
        ready_event = ready
        checks = bound_checks

    return _BoundProbeHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    checks: Mapping[str, ReadinessCheck] | None = None,
) -> ThreadingHTTPServer:
    """Serve ``/healthz``, ``/readyz`` and ``/metrics`` from a daemon thread."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(ready, checks))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
