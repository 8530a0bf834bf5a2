from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional, Protocol

from .contracts import ToolRequest, ToolResponse, ToolResult
from .shared.errors import BpyMcpError, InternalError, ServerUnavailable, ToolExecutionError
from .tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class Invoker(Protocol):
    def invoke(self, tool_name: str, arguments: Dict[str, Any], timeout: float) -> ToolResult: ...


class Dispatcher:
    """
    Turns a ToolRequest into exactly one ToolResponse.

    Lookup and validation failures are answered here and never reach the
    worker. Every error raised by the invoker becomes a failure response
    carrying its stable code.
    """

    def __init__(self, registry: ToolRegistry, invoker: Invoker, timeout: float) -> None:
        self.registry = registry
        self._invoker = invoker
        self._timeout = timeout
        self._cond = threading.Condition()
        self._in_flight = 0
        self._accepting = True

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def accepting(self) -> bool:
        with self._cond:
            return self._accepting

    def submit(self, request: ToolRequest) -> ToolResponse:
        with self._cond:
            if not self._accepting:
                return ToolResponse.failure(request.id, ServerUnavailable.code, "Server is shutting down")
            self._in_flight += 1
        try:
            return self.handle(request)
        finally:
            with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    def handle(self, request: ToolRequest) -> ToolResponse:
        started = time.monotonic()
        try:
            descriptor = self.registry.resolve(request.tool_name)
            arguments = self.registry.validate(descriptor, request.arguments)
            result = self._invoker.invoke(descriptor.capability, arguments, self._timeout)
        except BpyMcpError as exc:
            logger.info("Tool '%s' (id=%r) failed: %s: %s", request.tool_name, request.id, exc.code, exc.message)
            return ToolResponse.failure(request.id, exc.code, exc.message, exc.data)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error handling tool '%s' (id=%r)", request.tool_name, request.id)
            return ToolResponse.failure(request.id, InternalError.code, f"Internal error: {exc}")

        elapsed = time.monotonic() - started
        if not result.ok:
            logger.info("Tool '%s' (id=%r) reported %s in %.3fs", request.tool_name, request.id, result.error_code, elapsed)
            return ToolResponse.failure(
                request.id,
                ToolExecutionError.code,
                result.error_message or "tool failed",
                {"worker_code": result.error_code},
            )
        logger.debug("Tool '%s' (id=%r) completed in %.3fs", request.tool_name, request.id, elapsed)
        return ToolResponse.success(request.id, result.data)

    def close(self) -> None:
        """Stop admitting new requests; in-flight ones keep running."""
        with self._cond:
            self._accepting = False

    def drain(self, timeout: Optional[float]) -> bool:
        """Wait until no request is in flight. Returns False if the wait timed out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True
