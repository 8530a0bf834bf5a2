import json
import threading
import urllib.error
import urllib.request

import pytest

from bpy_mcp.contracts import ToolResult
from bpy_mcp.dispatcher import Dispatcher
from bpy_mcp.server import McpServer
from bpy_mcp.shared.errors import WorkerTimeout
from bpy_mcp.tools import default_registry
from bpy_mcp.transports import HttpTransport
from bpy_mcp.transports.http import status_for


class ScriptedInvoker:
    def __init__(self):
        self.calls = []

    def invoke(self, tool_name, arguments, timeout):
        self.calls.append(tool_name)
        if tool_name == "render_image":
            raise WorkerTimeout("render took too long")
        if tool_name == "set_material":
            return ToolResult.failure("ToolError", f"Object '{arguments['object_name']}' not found")
        return ToolResult.success(f"ran {tool_name}")


@pytest.fixture
def http_server():
    invoker = ScriptedInvoker()
    server = McpServer(Dispatcher(default_registry(), invoker, timeout=2.0))
    transport = HttpTransport(server, host="127.0.0.1", port=0, health=lambda: {"status": "ok", "server": "bpy-mcp"})
    host, port = transport.start()
    yield f"http://{host}:{port}", invoker, transport
    transport.close()


def _request(url, body=None, method="POST"):
    data = None
    if body is not None:
        data = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            raw = resp.read()
            return resp.status, json.loads(raw) if raw else None
    except urllib.error.HTTPError as exc:
        raw = exc.read()
        return exc.code, json.loads(raw) if raw else None


def test_health_endpoint(http_server):
    base, _, _ = http_server
    status, payload = _request(base + "/health", method="GET")
    assert status == 200
    assert payload == {"status": "ok", "server": "bpy-mcp"}


def test_unknown_route_is_404(http_server):
    base, _, _ = http_server
    assert _request(base + "/nope", method="GET")[0] == 404
    assert _request(base + "/nope", {"id": 1})[0] == 404


def test_compact_tool_call(http_server):
    base, invoker, _ = http_server
    status, payload = _request(base + "/mcp", {"id": "1", "tool": "create_cube", "args": {"size": 2.0}})
    assert status == 200
    assert payload == {"id": "1", "result": "ran create_cube"}
    assert invoker.calls == ["create_cube"]


def test_jsonrpc_tools_list(http_server):
    base, _, _ = http_server
    status, payload = _request(base + "/mcp", {"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
    assert status == 200
    assert len(payload["result"]["tools"]) == 6


def test_notification_gets_202_without_body(http_server):
    base, _, _ = http_server
    status, payload = _request(base + "/mcp", {"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert status == 202
    assert payload is None


def test_client_errors_are_4xx(http_server):
    base, invoker, _ = http_server
    status, payload = _request(base + "/mcp", b"{not json")
    assert status == 400
    assert payload["error"]["data"]["code"] == "TransportDecodeError"

    status, payload = _request(base + "/mcp", {"id": "1", "tool": "create_cone", "args": {}})
    assert status == 400
    assert payload["error"]["code"] == "UnknownTool"

    status, payload = _request(base + "/mcp", {"id": "2", "tool": "set_material", "args": {}})
    assert status == 400
    assert payload["error"]["code"] == "InvalidArguments"
    assert invoker.calls == []


def test_worker_errors_map_to_status(http_server):
    base, _, _ = http_server
    status, payload = _request(base + "/mcp", {"id": "r", "tool": "render_image", "args": {}})
    assert status == 504
    assert payload["error"]["code"] == "TimeoutError"

    status, payload = _request(base + "/mcp", {"id": "m", "tool": "set_material", "args": {"object_name": "Nope"}})
    assert status == 422
    assert payload["error"]["code"] == "ToolExecutionError"


def test_concurrent_posts_are_all_answered(http_server):
    base, _, _ = http_server
    results = {}

    def _post(i):
        results[i] = _request(base + "/mcp", {"id": i, "tool": "reset_scene", "args": {}})

    threads = [threading.Thread(target=_post, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    assert sorted(results) == list(range(8))
    assert all(results[i] == (200, {"id": i, "result": "ran reset_scene"}) for i in range(8))


def test_close_is_idempotent(http_server):
    _, _, transport = http_server
    transport.close()
    transport.close()
    assert transport.address is None


def test_status_for_success_and_unknown_codes():
    assert status_for({"id": 1, "result": "x"}) == 200
    assert status_for({"id": 1, "error": {"code": "ServerUnavailable", "message": ""}}) == 503
    assert status_for({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "", "data": {"code": "WorkerCrashedError"}}}) == 500
