from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from wave_controller.src.config import load_config
from wave_controller.src.controller import WaveController
from wave_controller.src.handler import Handler
from wave_controller.src.health import ReconcileStatus, start_health_server
from wave_controller.src.kube import EventRecorder, build_clients, load_kube_configuration
from wave_controller.src.metrics import METRICS
from wave_controller.src.ownership import OwnershipReconciler

RUNTIME_VERSION = "0.5.0"
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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, start the health server, and run the controller."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()

    handler = Handler(
        core_api=core_api,
        apps_api=apps_api,
        ownership=OwnershipReconciler(core_api, max_conflict_retries=config.max_conflict_retries),
        recorder=EventRecorder(core_api),
    )
    status = ReconcileStatus()
    controller = WaveController(
        core_api=core_api,
        apps_api=apps_api,
        handler=handler,
        namespace=config.namespace,
        workers=config.workers,
        watch_timeout_seconds=config.watch_timeout_seconds,
        status=status,
        resync_period_seconds=config.resync_period_seconds,
    )
    health_server = start_health_server(
        ready=controller.ready, port=config.health_port, status=status
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logging.getLogger(__name__).info("Controller stopped")


if __name__ == "__main__":
    main()
