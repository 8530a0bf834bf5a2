from __future__ import annotations

import json
from typing import Any, Dict, Optional, Union

from mcp.types import CallToolResult, TextContent

from .contracts import FrameStyle, ToolResponse
from .shared.errors import TransportDecodeError, rpc_code_for

PROTOCOL_VERSION = "2024-11-05"


def parse_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Decode one frame.

    Two shapes are accepted: JSON-RPC 2.0 messages, and compact tool frames
    of the form {"id": ..., "tool": ..., "args": {...}}.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise TransportDecodeError("Invalid JSON") from exc
    if not isinstance(message, dict):
        raise TransportDecodeError("Message must be a JSON object")
    if "jsonrpc" in message:
        if message["jsonrpc"] != "2.0":
            raise TransportDecodeError("Invalid or missing jsonrpc version")
    elif "tool" not in message:
        raise TransportDecodeError("Message is neither JSON-RPC 2.0 nor a tool frame")
    return message


def frame_style(message: Dict[str, Any]) -> FrameStyle:
    return "jsonrpc" if "jsonrpc" in message else "compact"


def serialize_message(message: Dict[str, Any]) -> str:
    """Serialize a message as a compact JSON line."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n"


def make_result(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def make_error(
    request_id: Any, code: int, message: str, data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def make_compact_result(request_id: Any, value: Any) -> Dict[str, Any]:
    return {"id": request_id, "result": value}


def make_compact_error(
    request_id: Any, code: str, message: str, data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data:
        error["data"] = data
    return {"id": request_id, "error": error}


def error_frame(request_id: Any, code: str, message: str, style: FrameStyle, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Error envelope in either frame style; JSON-RPC errors carry the stable code in ``data.code``."""
    if style == "compact":
        return make_compact_error(request_id, code, message, data)
    return make_error(request_id, rpc_code_for(code), message, {"code": code, **(data or {})})


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def call_tool_result(value: Any) -> Dict[str, Any]:
    content = [TextContent(type="text", text=_as_text(value))]
    if isinstance(value, dict):
        result = CallToolResult(content=content, isError=False, structuredContent=value)
    else:
        result = CallToolResult(content=content, isError=False)
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


def encode_response(response: ToolResponse, style: FrameStyle) -> Dict[str, Any]:
    if not response.ok:
        return error_frame(response.id, response.error_code or "InternalError", response.message or "", style, response.data)
    if style == "compact":
        return make_compact_result(response.id, response.value)
    return make_result(response.id, call_tool_result(response.value))


def error_code_of(message: Dict[str, Any]) -> Optional[str]:
    """Stable error code carried by an encoded response, if it is an error."""
    error = message.get("error")
    if not isinstance(error, dict):
        return None
    code = error.get("code")
    if isinstance(code, str):
        return code
    data = error.get("data")
    if isinstance(data, dict) and isinstance(data.get("code"), str):
        return data["code"]
    return "InternalError"
