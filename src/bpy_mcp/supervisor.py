"""
Process lifecycle: Starting -> Running -> Stopping -> Stopped.

The supervisor wires registry, worker bridge, dispatcher and one transport
together, and tears them down in the reverse order. It never starts the
worker itself; the first tool call does.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from enum import Enum
from pathlib import Path
from typing import IO, Any, Dict, Optional, TextIO, Union

from . import SERVER_NAME, __version__
from .dispatcher import Dispatcher
from .server import McpServer
from .shared.config import AppConfig
from .tools.registry import ToolRegistry, default_registry
from .transports.http import HttpTransport
from .transports.stdio import StdioTransport
from .worker.bridge import WorkerBridge

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Supervisor:
    def __init__(
        self,
        config: AppConfig,
        *,
        registry: Optional[ToolRegistry] = None,
        bridge: Optional[WorkerBridge] = None,
        stdin: Optional[IO[Any]] = None,
        stdout: Optional[TextIO] = None,
    ) -> None:
        self.config = config
        self.registry = registry or default_registry()
        self.bridge = bridge or WorkerBridge.from_config(config.worker)
        self.dispatcher = Dispatcher(self.registry, self.bridge, timeout=config.server.timeout_ms / 1000.0)
        self.mcp = McpServer(self.dispatcher, status=self.health)
        self.state = ServerState.STOPPED
        self._stdin = stdin
        self._stdout = stdout
        self._transport: Union[HttpTransport, StdioTransport, None] = None
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._started = False
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()

    @property
    def transport(self) -> Union[HttpTransport, StdioTransport, None]:
        return self._transport

    def start(self) -> None:
        with self._lock:
            if self._started:
                raise RuntimeError("Supervisor can only be started once")
            self._started = True
            self.state = ServerState.STARTING

        server = self.config.server
        logger.info("Starting %s %s (transport=%s)", SERVER_NAME, __version__, server.transport)
        if server.transport == "http":
            transport = HttpTransport(self.mcp, host=server.host, port=server.port, health=self.health)
            self._transport = transport
            transport.start()
        else:
            transport = StdioTransport(
                self.mcp,
                stdin=self._stdin,
                stdout=self._stdout,
                max_workers=server.max_concurrency,
                drain_timeout=server.shutdown_grace_ms / 1000.0,
            )
            self._transport = transport
            self._reader = threading.Thread(target=self._run_stdio, args=(transport,), name="bpy-mcp-stdin", daemon=True)
            self._reader.start()

        with self._lock:
            if self.state is ServerState.STARTING:
                self.state = ServerState.RUNNING
        logger.info("Server running; worker starts on first tool call")

    def _run_stdio(self, transport: StdioTransport) -> None:
        try:
            transport.serve()
        except Exception:  # noqa: BLE001
            logger.exception("stdio transport failed")
        finally:
            self.request_stop()

    def request_stop(self) -> None:
        """Ask the main loop to stop. Safe to call from a signal handler."""
        self._stop_requested.set()

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handler(signum, frame) -> None:
            logger.info("Received signal %s", signum)
            self.request_stop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handler)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop_requested.wait(timeout)

    def run(self) -> int:
        """Start, block until a signal or end of input, then stop."""
        self.install_signal_handlers()
        self.start()
        try:
            # Short waits keep the main thread responsive to signals.
            while not self._stop_requested.wait(0.2):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.stop()
        return 0

    def stop(self) -> None:
        """Idempotent: the second and later calls wait for the first to finish."""
        with self._lock:
            if self.state is ServerState.STOPPED and not self._started:
                return
            if self.state in (ServerState.STOPPING, ServerState.STOPPED):
                first = False
            else:
                first = True
                self.state = ServerState.STOPPING
        if not first:
            self._stopped.wait(self._grace + self.config.worker.stop_timeout_ms / 1000.0)
            return

        logger.info("Stopping %s", SERVER_NAME)
        self._stop_requested.set()
        self.dispatcher.close()
        if not self.dispatcher.drain(self._grace):
            logger.warning("%d request(s) still running after %.1fs", self.dispatcher.in_flight, self._grace)
        self.bridge.stop()
        if self._transport is not None:
            self._transport.close(self._grace)
        with self._lock:
            self.state = ServerState.STOPPED
        self._stopped.set()
        logger.info("Stopped")

    @property
    def _grace(self) -> float:
        return self.config.server.shutdown_grace_ms / 1000.0

    def health(self) -> Dict[str, Any]:
        worker = self.bridge.status()
        state = self.state
        if state in (ServerState.STOPPING, ServerState.STOPPED):
            status = "stopping"
        elif worker.get("degraded"):
            status = "degraded"
        else:
            status = "ok"
        return {
            "status": status,
            "server": SERVER_NAME,
            "version": __version__,
            "state": state.value,
            "transport": self.config.server.transport,
            "in_flight": self.dispatcher.in_flight,
            "worker": worker,
        }


class PidFile:
    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def read(self) -> Optional[int]:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(text)
        except ValueError:
            logger.warning("Ignoring malformed pid file %s", self.path)
            return None

    def write(self, pid: Optional[int] = None) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{pid or os.getpid()}\n", encoding="utf-8")

    def remove(self, only_pid: Optional[int] = None) -> None:
        if only_pid is not None and self.read() != only_pid:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def pid_alive(pid: int) -> bool:
    if hasattr(os, "WNOHANG"):
        try:
            # Reap our own exited children so they do not look alive.
            waited, _ = os.waitpid(pid, os.WNOHANG)
            if waited == pid:
                return False
        except ChildProcessError:
            pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _wait_gone(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return not pid_alive(pid)


def stop_instance(pidfile: PidFile, timeout: float = 5.0) -> bool:
    """
    Stop the instance recorded in ``pidfile``: SIGTERM, wait, then SIGKILL.

    Returns True if a live process was signalled. Stale pid files are removed.
    """
    pid = pidfile.read()
    if pid is None:
        return False
    if pid == os.getpid():
        return False
    if not pid_alive(pid):
        logger.info("Removing stale pid file %s (pid %s)", pidfile.path, pid)
        pidfile.remove()
        return False

    logger.info("Stopping instance pid %s", pid)
    try:
        os.kill(pid, signal.SIGTERM)
        if not _wait_gone(pid, timeout):
            logger.warning("pid %s ignored SIGTERM, killing", pid)
            os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
            _wait_gone(pid, timeout)
    except ProcessLookupError:
        pass
    pidfile.remove()
    return True
