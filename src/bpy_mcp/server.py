from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from mcp.types import Tool

from . import SERVER_NAME, __version__
from .contracts import ToolRequest
from .dispatcher import Dispatcher
from .prompts import get_prompt, list_prompts
from .protocol import (
    PROTOCOL_VERSION,
    encode_response,
    error_frame,
    frame_style,
    make_result,
    parse_message,
)
from .resources import ResourceCatalog
from .shared.errors import BpyMcpError, InvalidArguments, InvalidRequest, MethodNotFound, TransportDecodeError

logger = logging.getLogger(__name__)

SERVER_INFO = {"name": SERVER_NAME, "version": __version__}


def _valid_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


class McpServer:
    """
    Protocol core shared by every transport.

    Takes one decoded frame and returns at most one response frame. JSON-RPC
    notifications get no response; every request with an id gets exactly one.
    """

    def __init__(self, dispatcher: Dispatcher, status: Optional[Callable[[], Dict[str, Any]]] = None) -> None:
        self.dispatcher = dispatcher
        self.resources = ResourceCatalog(dispatcher, status)

    def list_tools(self) -> List[Dict[str, Any]]:
        tools = []
        for descriptor in self.dispatcher.registry.list_descriptors():
            tool = Tool(name=descriptor.name, description=descriptor.description, inputSchema=descriptor.input_schema)
            tools.append(tool.model_dump(mode="json", by_alias=True, exclude_none=True))
        return tools

    def handle_line(self, line: str) -> Optional[Dict[str, Any]]:
        try:
            message = parse_message(line)
        except TransportDecodeError as exc:
            return error_frame(None, exc.code, exc.message, "jsonrpc")
        return self.handle_message(message)

    def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        style = frame_style(message)
        try:
            if style == "compact":
                return self._handle_tool_frame(message)
            return self._handle_rpc(message)
        except BpyMcpError as exc:
            return error_frame(message.get("id"), exc.code, exc.message, style, exc.data)

    def _handle_tool_frame(self, message: Dict[str, Any]) -> Dict[str, Any]:
        request_id = message.get("id")
        name = message.get("tool")
        arguments = message.get("args")
        if arguments is None:
            arguments = message.get("arguments", {})
        if not isinstance(name, str) or not name:
            raise InvalidRequest("'tool' must be a non-empty string")
        if not isinstance(arguments, dict):
            raise InvalidArguments("'args' must be an object")
        request = ToolRequest(id=request_id, tool_name=name, arguments=arguments, style="compact")
        return encode_response(self.dispatcher.submit(request), "compact")

    def _handle_rpc(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        method = message.get("method")
        request_id = message.get("id")

        # Notifications have no id and produce no response
        if "id" not in message:
            if method != "notifications/initialized":
                logger.debug("Ignoring notification %r", method)
            return None

        if not _valid_id(request_id):
            raise InvalidRequest("'id' must be a string or integer")
        if not isinstance(method, str):
            raise InvalidRequest("'method' must be a string")

        raw_params = message.get("params")
        if raw_params is None:
            params: Dict[str, Any] = {}
        elif isinstance(raw_params, dict):
            params = raw_params
        else:
            raise InvalidArguments("Invalid params")

        if method == "initialize":
            result = {
                "protocolVersion": PROTOCOL_VERSION,
                "serverInfo": SERVER_INFO,
                "capabilities": {"tools": {}, "prompts": {}, "resources": {}},
            }
            return make_result(request_id, result)

        if method == "ping":
            return make_result(request_id, {})

        if method == "tools/list":
            return make_result(request_id, {"tools": self.list_tools()})

        if method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments")
            if arguments is None:
                arguments = {}
            if not isinstance(name, str) or not name:
                raise InvalidArguments("'name' must be a non-empty string")
            if not isinstance(arguments, dict):
                raise InvalidArguments("Invalid arguments")
            request = ToolRequest(id=request_id, tool_name=name, arguments=arguments, style="jsonrpc")
            return encode_response(self.dispatcher.submit(request), "jsonrpc")

        if method == "prompts/list":
            return make_result(request_id, {"prompts": list_prompts()})

        if method == "prompts/get":
            return make_result(request_id, get_prompt(params.get("name")))

        if method == "resources/list":
            return make_result(request_id, {"resources": self.resources.list_resources()})

        if method == "resources/read":
            return make_result(request_id, self.resources.read(params.get("uri"), request_id))

        raise MethodNotFound(f"Method not found: {method}")
