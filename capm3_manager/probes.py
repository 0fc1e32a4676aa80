"""Health probe and metrics HTTP endpoints."""

import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from .metrics import ControllerMetrics

logger = logging.getLogger(__name__)

# A check returns normally when healthy and raises when not
Checker = Callable[[], None]


def parse_bind_address(address: str) -> Optional[Tuple[str, int]]:
    """
    Split "host:port" into a bind tuple.

    Examples:
        ":9440" -> ("", 9440)
        "localhost:8080" -> ("localhost", 8080)
        "0" -> None (endpoint disabled)

    Raises:
        ValueError: If the address has no valid port
    """
    if address in ("", "0"):
        return None
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"bind address {address!r} is missing a port")
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"bind address {address!r} has an invalid port") from None
    if not 0 <= port_number < 65536:
        raise ValueError(f"bind address {address!r} has an invalid port")
    return host.strip("[]"), port_number


class ProbeHandler(BaseHTTPRequestHandler):
    """Serves /healthz, /readyz and /metrics."""

    healthz: Dict[str, Checker] = {}
    readyz: Dict[str, Checker] = {}
    metrics: Optional[ControllerMetrics] = None

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def send_text(self, body: str, status: int = 200, content_type: str = "text/plain; charset=utf-8"):
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _run_checks(self, checks: Dict[str, Checker]):
        failed = []
        lines = []
        for name, check in sorted(checks.items()):
            try:
                check()
                lines.append(f"[+]{name} ok")
            except Exception as e:
                failed.append(name)
                lines.append(f"[-]{name} failed: {e}")
        if failed:
            self.send_text("\n".join(lines) + "\nhealthz check failed\n", 500)
        else:
            self.send_text("ok")

    def do_GET(self):
        """Handle GET requests."""
        path = urlparse(self.path).path.rstrip("/")

        if path == "/healthz":
            self._run_checks(self.healthz)
        elif path == "/readyz":
            self._run_checks(self.readyz)
        elif path == "/metrics" and self.metrics is not None:
            self.send_text(self.metrics.render(), content_type="text/plain; version=0.0.4")
        else:
            self.send_text("404 page not found\n", 404)


class _IPv6HTTPServer(ThreadingHTTPServer):
    address_family = socket.AF_INET6


class ProbeServer:
    """Background HTTP server for one bind address."""

    def __init__(
        self,
        name: str,
        address: Tuple[str, int],
        healthz: Optional[Dict[str, Checker]] = None,
        readyz: Optional[Dict[str, Checker]] = None,
        metrics: Optional[ControllerMetrics] = None,
    ):
        self.name = name
        self.address = address
        handler = type(
            f"{name.title()}Handler",
            (ProbeHandler,),
            {
                "healthz": {} if healthz is None else healthz,
                "readyz": {} if readyz is None else readyz,
                "metrics": metrics,
            },
        )
        self._handler = handler
        self._httpd: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._httpd.server_address[1] if self._httpd else self.address[1]

    def start(self) -> None:
        server_class = _IPv6HTTPServer if ":" in self.address[0] else ThreadingHTTPServer
        self._httpd = server_class(self.address, self._handler)
        self._httpd.daemon_threads = True
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name=f"{self.name}-server", daemon=True
        )
        self._thread.start()
        logger.info(f"Serving {self.name} endpoint on {self.address[0] or '0.0.0.0'}:{self.port}")

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        self._httpd = None
