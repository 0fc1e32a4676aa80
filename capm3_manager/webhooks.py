"""Admission webhook server and the webhook registrations for Metal3 kinds."""

import json
import logging
import os
import socket
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from .config import INFRA_GROUP, INFRA_VERSION
from .errors import RegistrationError
from .scheme import METAL3_INFRA_KINDS, ResourceDefinition
from .tls_policy import TLSMutator, apply_tls_mutators

logger = logging.getLogger(__name__)

CERT_NAME = "tls.crt"
KEY_NAME = "tls.key"
HANDSHAKE_TIMEOUT_SECONDS = 10
REQUEST_TIMEOUT_SECONDS = 30

AdmissionHandler = Callable[[Dict[str, Any]], Dict[str, Any]]

# Kinds that get a mutating and a validating endpoint
WEBHOOK_KINDS = METAL3_INFRA_KINDS


def allow_admission(request: Dict[str, Any]) -> Dict[str, Any]:
    """Admit the object unchanged."""
    return {"uid": request.get("uid", ""), "allowed": True}


def webhook_path(prefix: str, definition: ResourceDefinition) -> str:
    """
    Build the endpoint path for a kind.

    Example:
        ("mutate", Metal3Machine v1beta1) ->
        "/mutate-infrastructure-cluster-x-k8s-io-v1beta1-metal3machine"
    """
    group = definition.group.replace(".", "-")
    return f"/{prefix}-{group}-{definition.version}-{definition.kind.lower()}"


class AdmissionRequestHandler(BaseHTTPRequestHandler):
    """Dispatches AdmissionReview POSTs to the handler registered for the path."""

    server: "_WebhookHTTPServer"
    timeout = REQUEST_TIMEOUT_SECONDS

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.debug("%s - %s", self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        """Handle admission review requests."""
        path = urlparse(self.path).path
        handler = self.server.handlers.get(path)
        if handler is None:
            self.send_json({"error": f"Unknown endpoint: {path}"}, 404)
            return

        length = int(self.headers.get("Content-Length", 0))
        try:
            review = json.loads(self.rfile.read(length) or b"{}")
        except json.JSONDecodeError as e:
            self.send_json({"error": f"invalid admission review: {e}"}, 400)
            return

        request = review.get("request") or {}
        try:
            response = handler(request)
        except Exception as e:
            logger.error(f"Admission handler for {path} failed: {e}")
            response = {
                "uid": request.get("uid", ""),
                "allowed": False,
                "status": {"code": 500, "message": str(e)},
            }

        self.send_json({
            "apiVersion": review.get("apiVersion", "admission.k8s.io/v1"),
            "kind": "AdmissionReview",
            "response": response,
        })


class _WebhookHTTPServer(ThreadingHTTPServer):
    """
    Threading server that runs the TLS handshake in the request thread.

    The listening socket stays plain so a client that never completes its
    handshake only holds up its own thread.
    """

    daemon_threads = True
    handlers: Dict[str, AdmissionHandler]
    ssl_context: ssl.SSLContext
    handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS

    def get_request(self):
        sock, addr = self.socket.accept()
        return self.ssl_context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False), addr

    def finish_request(self, request, client_address):
        request.settimeout(self.handshake_timeout)
        try:
            request.do_handshake()
        except OSError as e:
            logger.debug(f"TLS handshake with {client_address[0]} failed: {e}")
            return
        super().finish_request(request, client_address)


class WebhookServer:
    """
    HTTPS server for admission webhooks.

    The SSLContext is built when the server starts; that is when the TLS
    mutators are applied.
    """

    def __init__(
        self,
        port: int,
        cert_dir: str,
        tls_mutators: Optional[List[TLSMutator]] = None,
        host: str = "",
    ):
        self.port = port
        self.host = host
        self.cert_dir = cert_dir
        self.tls_mutators = list(tls_mutators or [])
        self.handlers: Dict[str, AdmissionHandler] = {}
        self._httpd: Optional[_WebhookHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()
        self._lock = threading.Lock()

    def register(self, path: str, handler: AdmissionHandler) -> None:
        """
        Register a handler for path.

        Raises:
            ValueError: If the path is already registered
        """
        with self._lock:
            if path in self.handlers:
                raise ValueError(f"can't register duplicate path: {path}")
            self.handlers[path] = handler
        logger.info(f"Registering webhook path={path}")

    def build_ssl_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        apply_tls_mutators(context, self.tls_mutators)
        context.load_cert_chain(
            os.path.join(self.cert_dir, CERT_NAME),
            os.path.join(self.cert_dir, KEY_NAME),
        )
        return context

    def start(self) -> None:
        """Bind the port and serve in a background thread."""
        context = self.build_ssl_context()
        httpd = _WebhookHTTPServer((self.host, self.port), AdmissionRequestHandler)
        # port 0 binds an ephemeral port
        self.port = httpd.server_address[1]
        httpd.handlers = self.handlers
        httpd.ssl_context = context
        self._httpd = httpd
        self._thread = threading.Thread(target=httpd.serve_forever, name="webhook-server", daemon=True)
        self._thread.start()
        self._started.set()
        logger.info(f"Serving webhook server on port {self.port} (cert dir {self.cert_dir})")

    def stop(self) -> None:
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        self._httpd = None
        self._started.clear()

    def started_checker(self) -> Callable[[], None]:
        """Return a check that passes once the server accepts connections."""
        def check() -> None:
            if not self._started.is_set():
                raise RuntimeError("webhook server has not been started yet")
            with socket.create_connection(("localhost", self.port), timeout=10):
                pass
        return check


def setup_webhooks(mgr, kinds=WEBHOOK_KINDS, handler: AdmissionHandler = allow_admission) -> int:
    """
    Register a mutating and a validating endpoint for each kind.

    Stops at the first rejected registration.

    Returns:
        Number of kinds registered

    Raises:
        RegistrationError: If a registration fails
    """
    server = mgr.get_webhook_server()
    for kind in kinds:
        definition = mgr.scheme.lookup(f"{INFRA_GROUP}/{INFRA_VERSION}", kind)
        if definition is None:
            raise RegistrationError("webhook", kind, "kind is not registered in the scheme")
        try:
            server.register(webhook_path("mutate", definition), handler)
            server.register(webhook_path("validate", definition), handler)
        except ValueError as e:
            raise RegistrationError("webhook", kind, str(e)) from e
    return len(kinds)
