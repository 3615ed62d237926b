"""
Minimal HTTP health endpoint for the reconciler worker.

The worker has no web framework, so GET /health is served from a daemon
thread. It reports the sync loop's own view of itself: whether this instance
holds leadership and how the last cycle went. No-op when PORT is not set.
"""
from __future__ import annotations

import json
import os
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)

StatusFn = Callable[[], dict[str, Any]]


def health_body(service_name: str, status_fn: Optional[StatusFn] = None) -> bytes:
    payload: dict[str, Any] = {"status": "ok", "service": service_name}
    if status_fn is not None:
        payload.update(status_fn())
    return json.dumps(payload, sort_keys=True).encode("utf-8")


def start_health_server(
    service_name: str, status_fn: Optional[StatusFn] = None, port: Optional[int] = None
) -> Optional[HTTPServer]:
    """
    Start a daemon thread that answers GET /health.

    The port comes from the argument or the PORT environment variable;
    with neither, nothing is started and None is returned.
    """
    if port is None:
        port_str = os.environ.get("PORT")
        if not port_str:
            return None
        try:
            port = int(port_str)
        except ValueError:
            logger.warning("health_server_bad_port", port=port_str)
            return None

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.rstrip("/") != "/health":
                self.send_response(404)
                self.end_headers()
                return
            body = health_body(service_name, status_fn)
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args: object) -> None:
            pass  # probes are not worth a log line

    server = HTTPServer(("0.0.0.0", port), Handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logger.info("health_server_started", service=service_name, port=port)
    return server
