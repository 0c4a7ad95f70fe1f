from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class ReconcileStatus:
    """Thread-safe record of the most recent reconcile outcomes.

    Workers report every finished reconcile here.  ``/statusz`` exposes the
    snapshot so that a workload stuck on a missing child or a conflict shows
    up without digging through logs.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._successes = 0
        self._failures = 0
        self._last_success: dict[str, Any] | None = None
        self._last_error: dict[str, Any] | None = None
        self._failing: dict[str, str] = {}

    def record_success(self, key: object) -> None:
        with self._lock:
            self._successes += 1
            self._last_success = {"key": str(key), "at": self._clock()}
            self._failing.pop(str(key), None)

    def record_failure(self, key: object, error: BaseException) -> None:
        message = f"{type(error).__name__}: {error}"
        with self._lock:
            self._failures += 1
            self._last_error = {"key": str(key), "error": message, "at": self._clock()}
            self._failing[str(key)] = message

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "reconciles": {"succeeded": self._successes, "failed": self._failures},
                "last_success": self._last_success,
                "last_error": self._last_error,
                "failing": dict(sorted(self._failing.items())),
            }


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, reconcile status and metrics."""

    ready_event: threading.Event
    status: ReconcileStatus | None = None

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/statusz" and self.status is not None:
            body = json.dumps(self.status.snapshot(), sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("wave_controller.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, status: ReconcileStatus | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the readiness event and reconcile status.

    The stdlib HTTPServer instantiates handlers without extra arguments, so
    both are bound as class attributes.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.status = status
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, status: ReconcileStatus | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, status))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
