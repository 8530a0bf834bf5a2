import io
import json
import queue
import subprocess
import sys
import threading
import time
from pathlib import Path

from conftest import src_env
from bpy_mcp.contracts import ToolResult
from bpy_mcp.dispatcher import Dispatcher
from bpy_mcp.server import McpServer
from bpy_mcp.tools import default_registry
from bpy_mcp.transports import StdioTransport

ROOT = Path(__file__).resolve().parents[1]
SERVER_CMD = [sys.executable, "-u", str(ROOT / "scripts" / "mcp_stdio_server.py")]


class NoisyInvoker:
    def invoke(self, tool_name, arguments, timeout):
        print("stray output from a tool body")
        return ToolResult.success(f"ran {tool_name}")


class GatedInvoker:
    def __init__(self):
        self.release = threading.Event()
        self.entered = threading.Event()

    def invoke(self, tool_name, arguments, timeout):
        self.entered.set()
        self.release.wait(10)
        return ToolResult.success("finally")


def _lines(*messages):
    return io.StringIO("".join((m if isinstance(m, str) else json.dumps(m)) + "\n" for m in messages))


def _transport(invoker, stdin, **kwargs):
    server = McpServer(Dispatcher(default_registry(), invoker, timeout=5.0))
    out = io.StringIO()
    return StdioTransport(server, stdin=stdin, stdout=out, **kwargs), out


def _responses(out):
    return [json.loads(line) for line in out.getvalue().splitlines()]


def test_pipelined_frames_each_get_one_response():
    stdin = _lines(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}},
        {"jsonrpc": "2.0", "method": "notifications/initialized"},
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list"},
        "",
        "{this is not json",
        {"id": "c1", "tool": "reset_scene", "args": {}},
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "create_cube", "arguments": {}}},
    )
    transport, out = _transport(NoisyInvoker(), stdin)
    transport.serve()

    responses = _responses(out)
    by_id = {json.dumps(r.get("id")): r for r in responses}
    assert len(responses) == 5
    assert set(by_id) == {"1", "2", '"c1"', "3", "null"}
    assert by_id["null"]["error"]["code"] == -32700
    assert by_id['"c1"'] == {"id": "c1", "result": "ran reset_scene"}
    assert by_id["3"]["result"]["content"][0]["text"] == "ran create_cube"
    assert "stray output" not in out.getvalue()


def test_binary_stdin_answers_bad_utf8_and_keeps_reading():
    stdin = io.BytesIO(
        b"\xff\xfe bad bytes\n"
        + json.dumps({"jsonrpc": "2.0", "id": 2, "method": "ping"}).encode("utf-8")
        + b"\n"
    )
    transport, out = _transport(NoisyInvoker(), stdin)
    transport.serve()

    responses = _responses(out)
    assert len(responses) == 2
    assert responses[0]["id"] is None
    assert responses[0]["error"]["data"]["code"] == "TransportDecodeError"
    assert responses[1] == {"jsonrpc": "2.0", "id": 2, "result": {}}


def test_duplicate_in_flight_id_is_rejected():
    invoker = GatedInvoker()
    stdin = _lines(
        {"id": 1, "tool": "reset_scene", "args": {}},
        {"id": 1, "tool": "reset_scene", "args": {}},
    )
    transport, out = _transport(invoker, stdin)
    threading.Timer(0.3, invoker.release.set).start()
    transport.serve()

    responses = _responses(out)
    assert len(responses) == 2
    assert responses[0] == {
        "id": 1,
        "error": {"code": "InvalidRequest", "message": "Request id 1 is already in flight"},
    }
    assert responses[1] == {"id": 1, "result": "finally"}


def test_same_id_may_be_reused_after_completion():
    stdin = io.StringIO()
    transport, out = _transport(NoisyInvoker(), stdin)
    assert transport.session.open("a") is True
    assert transport.session.open("a") is False
    assert transport.session.finish("a") is True
    assert transport.session.open("a") is True
    # 1 and "1" are different ids.
    assert transport.session.open(1) is True
    assert transport.session.open("1") is True


def test_pending_requests_are_abandoned_after_drain_timeout():
    invoker = GatedInvoker()
    stdin = _lines({"id": "slow", "tool": "reset_scene", "args": {}})
    transport, out = _transport(invoker, stdin, drain_timeout=0.2)
    try:
        started = time.monotonic()
        transport.serve()
        assert time.monotonic() - started < 2.0
        assert invoker.entered.is_set()
        assert out.getvalue() == ""
        assert transport.session.closed is True
    finally:
        invoker.release.set()


def _start_server(extra_env=None):
    proc = subprocess.Popen(
        SERVER_CMD,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=ROOT,
        env=src_env(BPY_MCP_LOG_LEVEL="DEBUG", **(extra_env or {})),
    )
    out_queue: "queue.Queue[str]" = queue.Queue()
    err_lines = []

    def _reader():
        for line in proc.stdout:
            out_queue.put(line)

    def _err_reader():
        for line in proc.stderr:
            err_lines.append(line)

    threading.Thread(target=_reader, daemon=True).start()
    threading.Thread(target=_err_reader, daemon=True).start()
    return proc, out_queue, err_lines


def _send(proc, message):
    proc.stdin.write(json.dumps(message) + "\n")
    proc.stdin.flush()


def _read(out_queue, timeout=1.0):
    try:
        return out_queue.get(timeout=timeout)
    except queue.Empty:
        return None


def test_stdio_subprocess_keeps_stdout_clean():
    proc, out_queue, err_lines = _start_server()
    try:
        _send(proc, {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"protocolVersion": "2024-11-05"}})
        init_line = _read(out_queue, timeout=10.0)
        assert init_line is not None, "initialize response missing"
        assert json.loads(init_line)["result"]["protocolVersion"] == "2024-11-05"

        _send(proc, {"id": "1", "tool": "create_cube", "args": {"name": "Cube", "location": [0, 0, 0], "size": 2.0}})
        cube_line = _read(out_queue, timeout=20.0)
        assert cube_line is not None, "create_cube response missing"
        assert json.loads(cube_line) == {"id": "1", "result": "Created cube 'Cube' at [0.0, 0.0, 0.0] with size 2.0"}

        _send(proc, {"id": "2", "tool": "create_cone", "args": {}})
        cone = json.loads(_read(out_queue, timeout=5.0))
        assert cone["error"]["code"] == "UnknownTool"

        proc.stdin.close()
        assert proc.wait(timeout=20) == 0
        time.sleep(0.1)
        assert out_queue.empty()
        assert any("Starting worker" in line for line in err_lines)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_stdio_subprocess_survives_malformed_input():
    proc, out_queue, _ = _start_server()
    try:
        proc.stdin.write("definitely not json\n")
        proc.stdin.flush()
        error = json.loads(_read(out_queue, timeout=10.0))
        assert error["error"]["code"] == -32700

        _send(proc, {"jsonrpc": "2.0", "id": 2, "method": "ping"})
        assert json.loads(_read(out_queue, timeout=5.0)) == {"jsonrpc": "2.0", "id": 2, "result": {}}
    finally:
        proc.stdin.close()
        try:
            proc.wait(timeout=20)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
    assert proc.returncode == 0


def test_stdio_subprocess_survives_invalid_utf8():
    proc, out_queue, err_lines = _start_server()
    try:
        proc.stdin.buffer.write(b"\xff\xfe bad bytes\n")
        proc.stdin.buffer.flush()
        error = json.loads(_read(out_queue, timeout=10.0))
        assert error["id"] is None
        assert error["error"]["code"] == -32700
        assert error["error"]["data"]["code"] == "TransportDecodeError"

        _send(proc, {"jsonrpc": "2.0", "id": 2, "method": "ping"})
        assert json.loads(_read(out_queue, timeout=5.0)) == {"jsonrpc": "2.0", "id": 2, "result": {}}
    finally:
        proc.stdin.close()
        try:
            proc.wait(timeout=20)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
    assert proc.returncode == 0
    assert not any("UnicodeDecodeError" in line for line in err_lines)
