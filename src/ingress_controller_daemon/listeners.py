"""Background HTTP listeners for the probe and metrics endpoints."""

from __future__ import annotations

import logging
import os
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer


class QuietHandler(BaseHTTPRequestHandler):
    """Request handler that keeps the stdlib access log out of stderr."""

    def log_message(self, format: str, *args) -> None:
        pass

    def send_text(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)


class Listener:
    """HTTP server bound at construction and served from a daemon thread.

    Binding in the constructor makes address conflicts surface while the
    manager is being built, not after the run loop has started.
    """

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        handler_class: type[BaseHTTPRequestHandler],
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.logger = logger or logging.getLogger(
            os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")).getChild("listeners")
        self._server = ThreadingHTTPServer((host, port), handler_class)
        self._server.daemon_threads = True
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        host, port = self._server.server_address[:2]
        return host, port

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name=f"{self.name}-listener",
        )
        self._thread.start()
        host, port = self.address
        self.logger.info(f"Serving {self.name} on {host}:{port}")

    def stop(self) -> None:
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._server.server_close()
