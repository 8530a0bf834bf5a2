import logging
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
FAKE_WORKER = Path(__file__).resolve().parent / "fake_worker.py"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def src_env(**extra):
    # Child interpreters (default worker, server subprocesses) import from src/.
    pythonpath = os.pathsep.join(filter(None, [str(SRC), os.environ.get("PYTHONPATH")]))
    return {**os.environ, "PYTHONPATH": pythonpath, "PYTHONUNBUFFERED": "1", **extra}


def fake_worker_cmd(mode="ok"):
    return [sys.executable, "-u", str(FAKE_WORKER), mode]


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    # keep a developer's shell configuration out of config-sensitive tests
    for name in list(os.environ):
        if name.startswith("BPY_MCP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_bridge():
    from bpy_mcp.worker.bridge import WorkerBridge

    bridges = []

    def _make(mode="ok", command=None, **kwargs):
        kwargs.setdefault("start_timeout", 5.0)
        kwargs.setdefault("stop_timeout", 2.0)
        bridge = WorkerBridge(command or fake_worker_cmd(mode), **kwargs)
        bridges.append(bridge)
        return bridge

    yield _make
    for bridge in bridges:
        bridge.stop()


@pytest.fixture(autouse=True)
def _restore_logging():
    # configure_logging(force=True) replaces root handlers; put them back after each test
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.captureWarnings(False)
