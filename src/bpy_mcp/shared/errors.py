from __future__ import annotations

from typing import Any, Dict, Optional

from mcp.types import INTERNAL_ERROR, INVALID_PARAMS, INVALID_REQUEST, METHOD_NOT_FOUND, PARSE_ERROR

# JSON-RPC code for failures raised on the server side of a tool call.
SERVER_ERROR = -32000


class BpyMcpError(Exception):
    code = "InternalError"
    rpc_code = INTERNAL_ERROR

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data or {}


class UnknownTool(BpyMcpError):
    code = "UnknownTool"
    rpc_code = INVALID_PARAMS


class DuplicateToolError(BpyMcpError):
    code = "DuplicateTool"


class InvalidArguments(BpyMcpError):
    code = "InvalidArguments"
    rpc_code = INVALID_PARAMS


class WorkerStartError(BpyMcpError):
    code = "WorkerStartError"
    rpc_code = SERVER_ERROR


class WorkerCrashedError(BpyMcpError):
    code = "WorkerCrashedError"
    rpc_code = SERVER_ERROR


class WorkerTimeout(BpyMcpError):
    code = "TimeoutError"
    rpc_code = SERVER_ERROR


class ToolExecutionError(BpyMcpError):
    code = "ToolExecutionError"
    rpc_code = SERVER_ERROR


class TransportDecodeError(BpyMcpError):
    code = "TransportDecodeError"
    rpc_code = PARSE_ERROR


class InvalidRequest(BpyMcpError):
    code = "InvalidRequest"
    rpc_code = INVALID_REQUEST


class MethodNotFound(BpyMcpError):
    code = "MethodNotFound"
    rpc_code = METHOD_NOT_FOUND


class ServerUnavailable(BpyMcpError):
    code = "ServerUnavailable"
    rpc_code = SERVER_ERROR


class InternalError(BpyMcpError):
    code = "InternalError"


_BY_CODE = {
    cls.code: cls
    for cls in (
        UnknownTool,
        InvalidArguments,
        WorkerStartError,
        WorkerCrashedError,
        WorkerTimeout,
        ToolExecutionError,
        TransportDecodeError,
        InvalidRequest,
        MethodNotFound,
        ServerUnavailable,
        InternalError,
    )
}


def rpc_code_for(code: str) -> int:
    """JSON-RPC integer code for a stable error code string."""
    cls = _BY_CODE.get(code)
    return cls.rpc_code if cls else SERVER_ERROR


def error_for(code: str, message: str, data: Optional[Dict[str, Any]] = None) -> BpyMcpError:
    """Rebuild the exception for a stable code carried by a failed response."""
    cls = _BY_CODE.get(code, InternalError)
    return cls(message, data)
