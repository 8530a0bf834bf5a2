from __future__ import annotations

import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Any, Dict, Optional, TextIO, Union

from ..protocol import error_frame, frame_style, parse_message, serialize_message
from ..server import McpServer
from ..shared.errors import InternalError, InvalidRequest, ServerUnavailable, TransportDecodeError
from ..shared.logging import protected_stdout
from .session import TransportSession

logger = logging.getLogger(__name__)


class StdioTransport:
    """
    Newline-delimited JSON over stdin/stdout.

    Frames are read on the calling thread and handled on a small pool, so
    responses may be written out of order; each one is written as a single
    line under a lock. While serving, ``sys.stdout`` points at stderr so
    nothing but protocol frames reaches the real stdout.
    """

    def __init__(
        self,
        server: McpServer,
        stdin: Optional[IO[Any]] = None,
        stdout: Optional[TextIO] = None,
        max_workers: int = 8,
        drain_timeout: float = 5.0,
    ) -> None:
        self.server = server
        # Bytes by default; parse_message reports bad UTF-8 as TransportDecodeError.
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout
        self._drain_timeout = drain_timeout
        self._session = TransportSession("stdio")
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="bpy-mcp-stdio")
        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._drained = threading.Event()
        self._broken = False

    @property
    def session(self) -> TransportSession:
        return self._session

    def serve(self) -> None:
        """Read frames until EOF, then wait (bounded) for pending responses."""
        logger.info("Serving MCP over stdio")
        with protected_stdout():
            try:
                while not self._closed.is_set():
                    line = self._stdin.readline()
                    if not line:
                        logger.info("stdin closed")
                        break
                    if not line.strip():
                        continue
                    self._accept(line)
            finally:
                self.close(self._drain_timeout)

    def _accept(self, line: Union[str, bytes]) -> None:
        try:
            message = parse_message(line)
        except TransportDecodeError as exc:
            logger.warning("Undecodable frame on stdin: %s", exc.message)
            self.write(error_frame(None, exc.code, exc.message, "jsonrpc"))
            return

        style = frame_style(message)
        if style == "jsonrpc" and "id" not in message:
            # Notification: nothing to track, nothing to send back.
            self._respond(message)
            return

        request_id = message.get("id")
        if not self._session.open(request_id):
            if self._session.closed:
                self.write(error_frame(request_id, ServerUnavailable.code, "Server is shutting down", style))
            else:
                self.write(error_frame(request_id, InvalidRequest.code, f"Request id {request_id!r} is already in flight", style))
            return
        try:
            self._executor.submit(self._process, message)
        except RuntimeError:
            self._session.finish(request_id)
            self.write(error_frame(request_id, ServerUnavailable.code, "Server is shutting down", style))

    def _process(self, message: Dict[str, Any]) -> None:
        request_id = message.get("id")
        try:
            self._respond(message, request_id=request_id)
        finally:
            self._session.finish(request_id)

    def _respond(self, message: Dict[str, Any], request_id: Any = None) -> None:
        try:
            response = self.server.handle_message(message)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error for request %r", request_id)
            response = error_frame(request_id, InternalError.code, "Internal error", frame_style(message))
        if response is None:
            return
        if "id" in message and not self._session.is_pending(request_id):
            logger.warning("Dropping response for abandoned request %r", request_id)
            return
        self.write(response)

    def write(self, message: Dict[str, Any]) -> None:
        try:
            data = serialize_message(message)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialize response: %s", exc)
            data = serialize_message(
                error_frame(message.get("id"), InternalError.code, "Response was not serializable", frame_style(message))
            )
        with self._write_lock:
            if self._broken:
                return
            try:
                self._stdout.write(data)
                self._stdout.flush()
            except (OSError, ValueError) as exc:
                logger.error("Failed to write response: %s", exc)
                self._broken = True

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop reading, give pending requests ``timeout`` seconds, then abandon the rest."""
        timeout = self._drain_timeout if timeout is None else timeout
        with self._close_lock:
            first = not self._closed.is_set()
            self._closed.set()
        if not first:
            self._drained.wait(timeout)
            return
        if not self._session.wait_idle(timeout):
            logger.warning("Abandoning %d pending stdio request(s)", self._session.in_flight)
        self._session.close()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._drained.set()
