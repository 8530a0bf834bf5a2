import json

import pytest

from conftest import src_env
from bpy_mcp.contracts import ToolResponse, ToolResult
from bpy_mcp.dispatcher import Dispatcher
from bpy_mcp.protocol import PROTOCOL_VERSION, encode_response, error_code_of, parse_message
from bpy_mcp.server import McpServer
from bpy_mcp.shared.config import default_worker_command
from bpy_mcp.shared.errors import TransportDecodeError, WorkerStartError
from bpy_mcp.tools import default_registry
from bpy_mcp.worker.bridge import WorkerBridge


class EchoInvoker:
    def __init__(self):
        self.calls = []

    def invoke(self, tool_name, arguments, timeout):
        self.calls.append(tool_name)
        if tool_name == "get_scene_info":
            return ToolResult.success({"objects": []})
        return ToolResult.success(f"ran {tool_name}")


def _server(invoker=None):
    invoker = invoker or EchoInvoker()
    return McpServer(Dispatcher(default_registry(), invoker, timeout=2.0)), invoker


def test_parse_message_rejects_garbage():
    for raw in ["{not json", "[1, 2]", '{"jsonrpc": "1.0", "id": 1}', '{"id": 1}', b"\xff\xfe"]:
        with pytest.raises(TransportDecodeError):
            parse_message(raw)


def test_initialize_and_ping():
    server, _ = _server()
    init = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
    assert init["result"]["protocolVersion"] == PROTOCOL_VERSION
    assert init["result"]["serverInfo"]["name"] == "bpy-mcp"
    assert init["result"]["capabilities"] == {"tools": {}, "prompts": {}, "resources": {}}
    assert server.handle_message({"jsonrpc": "2.0", "id": 2, "method": "ping"}) == {"jsonrpc": "2.0", "id": 2, "result": {}}


def test_notifications_get_no_response():
    server, _ = _server()
    assert server.handle_message({"jsonrpc": "2.0", "method": "notifications/initialized"}) is None
    assert server.handle_message({"jsonrpc": "2.0", "method": "tools/call", "params": {"name": "reset_scene"}}) is None


def test_tools_list_exposes_input_schemas():
    server, _ = _server()
    response = server.handle_message({"jsonrpc": "2.0", "id": "t", "method": "tools/list"})
    tools = {tool["name"]: tool for tool in response["result"]["tools"]}
    assert set(tools) == {"reset_scene", "get_scene_info", "create_cube", "create_sphere", "set_material", "render_image"}
    assert tools["set_material"]["inputSchema"]["required"] == ["object_name"]


def test_tools_call_returns_text_content():
    server, invoker = _server()
    response = server.handle_message(
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "reset_scene", "arguments": {}}}
    )
    assert response["id"] == 3
    assert response["result"]["isError"] is False
    assert response["result"]["content"] == [{"type": "text", "text": "ran reset_scene"}]
    assert invoker.calls == ["reset_scene"]


def test_tools_call_with_structured_value():
    server, _ = _server()
    response = server.handle_message({"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "get_scene_info"}})
    assert json.loads(response["result"]["content"][0]["text"]) == {"objects": []}
    assert response["result"]["structuredContent"] == {"objects": []}


def test_jsonrpc_errors_carry_stable_code():
    server, invoker = _server()
    response = server.handle_message(
        {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "create_cone"}}
    )
    assert response["error"]["code"] == -32602
    assert response["error"]["data"]["code"] == "UnknownTool"
    assert error_code_of(response) == "UnknownTool"
    assert invoker.calls == []


def test_unknown_method_and_bad_envelopes():
    server, _ = _server()
    missing = server.handle_message({"jsonrpc": "2.0", "id": 6, "method": "sampling/createMessage"})
    assert missing["error"]["code"] == -32601
    bad_params = server.handle_message({"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": [1]})
    assert bad_params["error"]["data"]["code"] == "InvalidArguments"
    bad_id = server.handle_message({"jsonrpc": "2.0", "id": {"x": 1}, "method": "ping"})
    assert bad_id["error"]["code"] == -32600


def test_prompts_list_and_get():
    server, invoker = _server()
    listed = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "prompts/list"})
    names = [prompt["name"] for prompt in listed["result"]["prompts"]]
    assert names == [
        "basic_scene_setup",
        "cube_grid_plan",
        "sphere_pattern_plan",
        "mixed_objects_plan",
        "hierarchical_scene_plan",
    ]

    prompt = server.handle_message(
        {"jsonrpc": "2.0", "id": 2, "method": "prompts/get", "params": {"name": "basic_scene_setup"}}
    )
    [message] = prompt["result"]["messages"]
    assert message["role"] == "user"
    assert message["content"]["type"] == "text"
    assert "create_sphere" in message["content"]["text"]
    assert invoker.calls == []


def test_unknown_prompt_is_invalid_params():
    server, _ = _server()
    response = server.handle_message({"jsonrpc": "2.0", "id": 3, "method": "prompts/get", "params": {"name": "nope"}})
    assert response["error"]["code"] == -32602
    assert response["error"]["data"]["code"] == "InvalidArguments"
    assert "nope" in response["error"]["message"]

    missing = server.handle_message({"jsonrpc": "2.0", "id": 4, "method": "prompts/get"})
    assert missing["error"]["code"] == -32602


def test_resources_list_and_read():
    invoker = EchoInvoker()
    server = McpServer(Dispatcher(default_registry(), invoker, timeout=2.0), status=lambda: {"status": "ok"})
    listed = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "resources/list"})
    uris = {entry["name"]: entry["uri"] for entry in listed["result"]["resources"]}
    assert set(uris) == {"Scene: default", "Tool catalogue", "Server status"}
    assert all(entry["mimeType"] == "application/json" for entry in listed["result"]["resources"])

    def _read(request_id, uri):
        response = server.handle_message(
            {"jsonrpc": "2.0", "id": request_id, "method": "resources/read", "params": {"uri": uri}}
        )
        [contents] = response["result"]["contents"]
        assert contents["uri"] == uri
        return json.loads(contents["text"])

    assert _read(2, uris["Scene: default"]) == {"objects": []}
    assert invoker.calls == ["get_scene_info"]
    assert len(_read(3, uris["Tool catalogue"])["tools"]) == 6
    assert _read(4, uris["Server status"]) == {"status": "ok"}


def test_resources_without_status_provider_and_unknown_uri():
    server, _ = _server()
    listed = server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "resources/list"})
    assert len(listed["result"]["resources"]) == 2

    response = server.handle_message(
        {"jsonrpc": "2.0", "id": 2, "method": "resources/read", "params": {"uri": "bpy-mcp://server/status"}}
    )
    assert response["error"]["code"] == -32602
    assert response["error"]["data"]["code"] == "InvalidArguments"


def test_scene_resource_reports_worker_errors():
    class BrokenInvoker:
        def invoke(self, tool_name, arguments, timeout):
            raise WorkerStartError("worker would not start")

    server, _ = _server(BrokenInvoker())
    response = server.handle_message(
        {"jsonrpc": "2.0", "id": 1, "method": "resources/read", "params": {"uri": "bpy-mcp://scene/default"}}
    )
    assert response["error"]["code"] == -32000
    assert response["error"]["data"]["code"] == "WorkerStartError"


def test_handle_line_reports_parse_errors():
    server, _ = _server()
    response = server.handle_line("{oops")
    assert response["id"] is None
    assert response["error"]["code"] == -32700
    assert response["error"]["data"]["code"] == "TransportDecodeError"


def test_compact_frames_use_compact_envelopes():
    server, _ = _server()
    ok = server.handle_message({"id": "1", "tool": "reset_scene", "args": {}})
    assert ok == {"id": "1", "result": "ran reset_scene"}

    unknown = server.handle_message({"id": "1", "tool": "create_cone", "args": {}})
    assert unknown["id"] == "1"
    assert unknown["error"]["code"] == "UnknownTool"

    bad = server.handle_message({"id": "2", "tool": "create_cube", "args": "nope"})
    assert bad["error"]["code"] == "InvalidArguments"


def test_encode_failure_in_both_styles():
    failure = ToolResponse.failure("9", "TimeoutError", "too slow")
    assert encode_response(failure, "compact") == {"id": "9", "error": {"code": "TimeoutError", "message": "too slow"}}
    rpc = encode_response(failure, "jsonrpc")
    assert rpc["error"]["code"] == -32000
    assert rpc["error"]["data"] == {"code": "TimeoutError"}


def test_create_cube_against_default_worker():
    bridge = WorkerBridge(default_worker_command(), env=src_env(), start_timeout=15.0)
    server = McpServer(Dispatcher(default_registry(), bridge, timeout=20.0))
    try:
        response = server.handle_message(
            {"id": "1", "tool": "create_cube", "args": {"name": "Cube", "location": [0, 0, 0], "size": 2.0}}
        )
        assert response == {"id": "1", "result": "Created cube 'Cube' at [0.0, 0.0, 0.0] with size 2.0"}

        unknown = server.handle_message(
            {"id": "1", "tool": "create_cone", "args": {"name": "Cube", "location": [0, 0, 0], "size": 2.0}}
        )
        assert unknown["error"]["code"] == "UnknownTool"
        assert bridge.invocations == 1
    finally:
        bridge.stop()
