from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from revision_controller.src.config import load_config
from revision_controller.src.controller import RevisionController, build_controller
from revision_controller.src.health import start_health_server
from revision_controller.src.kube import build_clients, load_kube_configuration
from revision_controller.src.leader import LeaderElectionConfig
from revision_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

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
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects; credentials in messages are redacted."""

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
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


class LeadershipSupervisor:
    """Runs the controller on a thread while this replica leads, and stops it on handoff.

    A controller thread that does not stop within ``stop_timeout_seconds``
    forces process shutdown: starting a second one would let two
    reconciliations overlap.
    """

    def __init__(
        self,
        controller: RevisionController,
        shutdown_event: threading.Event,
        leader_ready: threading.Event,
        stop_timeout_seconds: int,
    ) -> None:
        self.controller = controller
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.stop_timeout_seconds = stop_timeout_seconds
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def _run_controller(self, stop: threading.Event) -> None:
        try:
            self.controller.run(shutdown_event=stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
            self.shutdown_event.set()
            return
        if not stop.is_set() and not self.shutdown_event.is_set():
            LOGGER.error("Controller exited without a stop signal; terminating process")
            self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error("Previous controller thread still running; refusing to start another")
                self.shutdown_event.set()
                return
            self._stop = threading.Event()
            self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_controller, args=(self._stop,), name="controller", daemon=True
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            self.leader_ready.clear()
            self.controller.request_stop()
            self._stop.set()
            if self._thread is None:
                return
            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller thread did not stop within %ss; forcing process shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def main() -> None:
    """Controller entrypoint: configure logging, elect a leader and run the revision controller."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    controller_config = load_config()
    leader_config = LeaderElectionConfig.from_env(default_namespace=controller_config.target_namespace)

    load_kube_configuration()
    core_api, custom_api = build_clients()
    controller = build_controller(controller_config, core_api=core_api, custom_api=custom_api)

    leader_ready = threading.Event() if leader_config.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=controller_config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        from kubernetes.client import CoordinationV1Api

        from revision_controller.src.leader import LeaseLeaderElector

        supervisor = LeadershipSupervisor(
            controller=controller,
            shutdown_event=shutdown_event,
            leader_ready=leader_ready,
            stop_timeout_seconds=leader_config.stop_timeout_seconds,
        )
        elector = LeaseLeaderElector(coordination_api=CoordinationV1Api(), config=leader_config)
        elector.run(
            on_started_leading=supervisor.on_started_leading,
            on_stopped_leading=supervisor.on_stopped_leading,
            stop_event=shutdown_event,
        )
        supervisor.on_stopped_leading()
    else:
        controller.run(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
