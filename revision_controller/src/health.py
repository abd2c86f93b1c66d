from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    ``/readyz`` succeeds only when the informers have synced and, with
    leader election enabled, this replica holds the lease.  Standby
    replicas therefore report not-ready while staying live.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _write(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._write(200, b"ok")

    def _leadz(self) -> None:
        if self._is_leader():
            self._write(200, b"ok")
        else:
            self._write(503, b"not leader")

    def _readyz(self) -> None:
        synced = self.synced_event.is_set()
        leader = self._is_leader()
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        self._write(200 if synced and leader else 503, body)

    def _metrics(self) -> None:
        self._write(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        route = {
            "/healthz": self._healthz,
            "/readyz": self._readyz,
            "/leadz": self._leadz,
            "/metrics": self._metrics,
        }.get(self.path.split("?", 1)[0])
        if route is None:
            self._write(404, b"not found")
            return
        route()

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("revision_controller.health").debug(fmt, *args)


def start_health_server(
    ready: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the probe/metrics server on a daemon thread and return it."""
    handler_class = type(
        "_BoundProbeHandler",
        (_ProbeHandler,),
        {"synced_event": ready, "leader_event": leader},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
