from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

_Reply = tuple[int, bytes, str | None]


class _ProbeHandler(BaseHTTPRequestHandler):
    """Kubelet probes plus the Prometheus scrape endpoint.

    Liveness fails only once the controller has aborted (missing RBAC), so
    the pod restarts instead of idling.  Readiness tracks the sync loop.
    """

    ready_event: threading.Event
    aborted_event: threading.Event | None

    def _liveness(self) -> _Reply:
        if self.aborted_event is not None and self.aborted_event.is_set():
            return 503, b"aborted", None
        return 200, b"ok", None

    def _readiness(self) -> _Reply:
        if self.ready_event.is_set():
            return 200, b"ready=true", None
        return 503, b"ready=false", None

    def _metrics(self) -> _Reply:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def do_GET(self) -> None:
        routes: dict[str, Callable[[], _Reply]] = {
            "/healthz": self._liveness,
            "/readyz": self._readiness,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path)
        status, body, content_type = route() if route else (404, b"", None)

        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, aborted: threading.Event | None = None
) -> type[_ProbeHandler]:
    """Bind the controller's ``ready`` and ``aborted`` events to a handler class."""
    return type(
        "BoundProbeHandler",
        (_ProbeHandler,),
        {"ready_event": ready, "aborted_event": aborted},
    )


def start_health_server(
    ready: threading.Event, port: int, aborted: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve probes and metrics on *port* from a background thread.

    Pass ``port=0`` to bind an ephemeral port; the chosen one is in
    ``server.server_address``.  Call ``shutdown()`` on the result to stop.
    """
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, aborted))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
