from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from .. import __version__
from ..protocol import error_code_of, error_frame, frame_style, parse_message
from ..server import McpServer
from ..shared.errors import InternalError, InvalidRequest, TransportDecodeError
from .session import TransportSession

logger = logging.getLogger(__name__)

MCP_PATHS = ("/mcp", "/")
MAX_BODY_BYTES = 4 * 1024 * 1024

STATUS_BY_CODE = {
    "TransportDecodeError": 400,
    "InvalidRequest": 400,
    "MethodNotFound": 400,
    "UnknownTool": 400,
    "InvalidArguments": 400,
    "ToolExecutionError": 422,
    "WorkerStartError": 500,
    "WorkerCrashedError": 500,
    "InternalError": 500,
    "ServerUnavailable": 503,
    "TimeoutError": 504,
}


def status_for(response: Dict[str, Any]) -> int:
    code = error_code_of(response)
    if code is None:
        return 200
    return STATUS_BY_CODE.get(code, 500)


class McpRequestHandler(BaseHTTPRequestHandler):
    server_version = f"bpy-mcp/{__version__}"
    server: "_McpHttpServer"

    def log_message(self, format: str, *args) -> None:  # noqa: A003
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, payload, status=200):
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_empty(self, status):
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):  # noqa: N802
        if self.path == "/health":
            payload = self.server.transport.health()
            self._send_json(payload, status=503 if payload.get("status") == "stopping" else 200)
            return
        self._send_json({"ok": False, "error": "Not found"}, status=404)

    def do_POST(self):  # noqa: N802
        if self.path not in MCP_PATHS:
            self._send_json({"ok": False, "error": "Not found"}, status=404)
            return
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY_BYTES:
            error = InvalidRequest("Invalid Content-Length")
            self._send_json(error_frame(None, error.code, error.message, "jsonrpc"), status=400)
            return
        raw = self.rfile.read(length) if length > 0 else b""
        status, payload = self.server.transport.handle_body(raw)
        if payload is None:
            self._send_empty(status)
        else:
            self._send_json(payload, status=status)


class _McpHttpServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], transport: "HttpTransport") -> None:
        self.transport = transport
        super().__init__(address, McpRequestHandler)


class HttpTransport:
    """POST /mcp for protocol frames, GET /health for liveness."""

    def __init__(
        self,
        server: McpServer,
        host: str = "127.0.0.1",
        port: int = 4000,
        health: Optional[Callable[[], Dict[str, Any]]] = None,
    ) -> None:
        self.server = server
        self.host = host
        self.port = port
        self._health = health
        self._lock = threading.Lock()
        self._httpd: Optional[_McpHttpServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        httpd = self._httpd
        if httpd is None:
            return None
        host, port = httpd.server_address[:2]
        return str(host), int(port)

    def health(self) -> Dict[str, Any]:
        if self._health is None:
            return {"status": "ok"}
        return self._health()

    def handle_body(self, raw: bytes) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Answer one POSTed frame. A ``None`` payload means no body (notification)."""
        try:
            message = parse_message(raw)
        except TransportDecodeError as exc:
            return 400, error_frame(None, exc.code, exc.message, "jsonrpc")

        session = TransportSession("http")
        request_id = message.get("id")
        session.open(request_id)
        try:
            response = self.server.handle_message(message)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error for request %r", request_id)
            response = error_frame(request_id, InternalError.code, "Internal error", frame_style(message))
        finally:
            session.finish(request_id)
        if response is None:
            return 202, None
        return status_for(response), response

    def start(self) -> Tuple[str, int]:
        with self._lock:
            if self._httpd is None:
                httpd = _McpHttpServer((self.host, self.port), self)
                self._httpd = httpd
                self._thread = threading.Thread(target=httpd.serve_forever, name="bpy-mcp-http", daemon=True)
                self._thread.start()
                host, port = self.address
                logger.info("HTTP server listening on %s:%s", host, port)
        return self.address

    def close(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            httpd, self._httpd = self._httpd, None
            thread, self._thread = self._thread, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if thread is not None:
            thread.join(timeout)
        logger.info("HTTP server stopped")
