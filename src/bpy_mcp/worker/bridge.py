"""
Owner of the single scene worker process.

The worker is a child process speaking newline-delimited JSON on its
stdin/stdout:

    worker -> server   {"ready": true, "pid": 1234}            (once, at startup)
    server -> worker   {"id": 7, "tool": "create_cube", "arguments": {...}}
    worker -> server   {"id": 7, "success": <value>}
                       {"id": 7, "failure": {"code": "...", "message": "..."}}

Only one call runs at a time. Callers queue FIFO on the worker slot, the
worker is started lazily on the first call and again after a crash, and a
call that exceeds its deadline kills the worker so the slot is never held
by a hung process.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import queue
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Mapping, Optional, Sequence

from ..contracts import JsonDict, ToolResult
from ..shared.config import WorkerConfig
from ..shared.errors import (
    InternalError,
    ServerUnavailable,
    WorkerCrashedError,
    WorkerStartError,
    WorkerTimeout,
)

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    CRASHED = "crashed"
    STOPPED = "stopped"


@dataclass
class WorkerHandle:
    process: subprocess.Popen
    state: WorkerState = WorkerState.STARTING
    pending_request: Optional[JsonDict] = None
    started_at: float = field(default_factory=time.monotonic)
    calls_served: int = 0
    # Parsed stdout frames; None marks end of stream (process gone).
    replies: "queue.Queue[Optional[JsonDict]]" = field(default_factory=queue.Queue)

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.poll() is None


class _FifoSlot:
    """A lock whose waiters are admitted strictly in arrival order."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._waiters: Deque[object] = deque()
        self._held = False

    def acquire(self, timeout: float) -> bool:
        ticket = object()
        deadline = time.monotonic() + timeout
        with self._cond:
            self._waiters.append(ticket)
            while self._held or self._waiters[0] is not ticket:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._waiters.remove(ticket)
                    self._cond.notify_all()
                    return False
                self._cond.wait(remaining)
            self._waiters.popleft()
            self._held = True
            return True

    def release(self) -> None:
        with self._cond:
            self._held = False
            self._cond.notify_all()

    @property
    def waiting(self) -> int:
        with self._cond:
            return len(self._waiters)


class WorkerBridge:
    def __init__(
        self,
        command: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        start_timeout: float = 10.0,
        stop_timeout: float = 5.0,
        max_start_failures: int = 3,
        failure_window: float = 30.0,
        cooldown: Optional[float] = None,
    ) -> None:
        if not command:
            raise ValueError("worker command must not be empty")
        self._command = list(command)
        self._env = dict(env) if env is not None else {**os.environ, "PYTHONUNBUFFERED": "1"}
        self._cwd = cwd
        self._start_timeout = start_timeout
        self._stop_timeout = stop_timeout
        self._max_start_failures = max(1, max_start_failures)
        self._failure_window = failure_window
        self._cooldown = failure_window if cooldown is None else cooldown

        self._slot = _FifoSlot()
        self._lock = threading.RLock()
        self._handle: Optional[WorkerHandle] = None
        self._call_ids = itertools.count(1)
        self._failures: Deque[float] = deque()
        self._degraded_at: Optional[float] = None
        self._closed = False
        self._invocations = 0
        self._starts = 0

    @classmethod
    def from_config(cls, config: WorkerConfig, env: Optional[Mapping[str, str]] = None) -> "WorkerBridge":
        return cls(
            config.command,
            env=env,
            start_timeout=config.start_timeout_ms / 1000.0,
            stop_timeout=config.stop_timeout_ms / 1000.0,
            max_start_failures=config.max_start_failures,
            failure_window=config.failure_window_ms / 1000.0,
        )

    # -------------------------
    # Public API
    # -------------------------

    @property
    def degraded(self) -> bool:
        with self._lock:
            return self._degraded_at is not None

    @property
    def invocations(self) -> int:
        with self._lock:
            return self._invocations

    @property
    def starts(self) -> int:
        with self._lock:
            return self._starts

    def invoke(self, tool_name: str, arguments: Dict[str, Any], timeout: float) -> ToolResult:
        """Run one tool call on the worker, waiting at most ``timeout`` seconds overall."""
        deadline = time.monotonic() + timeout
        if self._closed:
            raise ServerUnavailable("Worker bridge is stopped")
        if not self._slot.acquire(timeout):
            raise WorkerTimeout(f"Timed out after {timeout:.3f}s waiting for the worker")
        try:
            if self._closed:
                raise ServerUnavailable("Worker bridge is stopped")
            handle = self._ensure_worker(deadline)
            return self._call(handle, tool_name, arguments, deadline)
        finally:
            self._slot.release()

    def stop(self) -> None:
        """Terminate the worker. Safe to call repeatedly."""
        with self._lock:
            self._closed = True
            handle = self._handle
            if handle is None or handle.state is WorkerState.STOPPED:
                return
            handle.state = WorkerState.STOPPED
            handle.pending_request = None
        self._terminate(handle)
        logger.info("Worker pid=%s stopped (code=%s)", handle.pid, handle.process.returncode)

    def status(self) -> JsonDict:
        with self._lock:
            handle = self._handle
            return {
                "state": handle.state.value if handle else "not_started",
                "pid": handle.pid if handle and handle.is_alive() else None,
                "degraded": self._degraded_at is not None,
                "queued": self._slot.waiting,
                "invocations": self._invocations,
                "starts": self._starts,
            }

    # -------------------------
    # Process lifecycle
    # -------------------------

    def _ensure_worker(self, deadline: float) -> WorkerHandle:
        with self._lock:
            handle = self._handle
            if handle is not None and handle.state is WorkerState.READY:
                if handle.is_alive():
                    return handle
                logger.warning("Worker pid=%s exited while idle (code=%s)", handle.pid, handle.process.returncode)
                handle.state = WorkerState.CRASHED
                if handle.calls_served == 0:
                    self._note_start_failure()

        if handle is not None:
            # The previous process must be gone before a replacement starts.
            self._kill(handle)
            with self._lock:
                if self._handle is handle:
                    self._handle = None

        self._check_degraded()
        return self._start(deadline)

    def _start(self, deadline: float) -> WorkerHandle:
        budget = deadline - time.monotonic()
        if budget <= 0:
            raise WorkerTimeout("No time left to start the worker")
        wait = min(self._start_timeout, budget)

        logger.info("Starting worker: %s", " ".join(self._command))
        try:
            process = subprocess.Popen(
                self._command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                bufsize=1,
                env=self._env,
                cwd=self._cwd,
            )
        except OSError as exc:
            self._note_start_failure()
            raise WorkerStartError(f"Failed to launch worker {self._command[0]!r}: {exc}") from exc

        handle = WorkerHandle(process=process)
        with self._lock:
            closed = self._closed
            if not closed:
                self._handle = handle
                self._starts += 1
        if closed:
            # stop() ran while the process was being spawned and never saw it.
            handle.state = WorkerState.STOPPED
            self._kill(handle)
            raise ServerUnavailable("Worker bridge is stopped")
        threading.Thread(
            target=self._read_stdout, args=(handle,), name=f"worker-{process.pid}-stdout", daemon=True
        ).start()
        threading.Thread(
            target=self._read_stderr, args=(handle,), name=f"worker-{process.pid}-stderr", daemon=True
        ).start()

        limit = time.monotonic() + wait
        while True:
            remaining = limit - time.monotonic()
            try:
                frame = handle.replies.get(timeout=max(remaining, 0.0))
            except queue.Empty:
                self._abandon(handle)
                if wait < self._start_timeout:
                    raise WorkerTimeout(f"Worker pid={process.pid} was still starting when the call timed out")
                self._note_start_failure()
                raise WorkerStartError(f"Worker pid={process.pid} did not become ready within {wait:.1f}s")
            if frame is None:
                self._abandon(handle)
                if self._closed:
                    raise ServerUnavailable("Worker bridge is stopped")
                self._note_start_failure()
                raise WorkerStartError(
                    f"Worker exited during startup (code={process.returncode})",
                    data={"returncode": process.returncode},
                )
            if frame.get("ready") is True:
                break
            logger.warning("Ignoring worker frame before ready: %r", frame)

        with self._lock:
            if handle.state is WorkerState.STOPPED:
                raise ServerUnavailable("Worker bridge is stopped")
            handle.state = WorkerState.READY
            self._failures.clear()
            if self._degraded_at is not None:
                logger.info("Worker recovered; clearing degraded state")
            self._degraded_at = None
        logger.info("Worker pid=%s ready in %.3fs", process.pid, time.monotonic() - handle.started_at)
        return handle

    def _abandon(self, handle: WorkerHandle) -> None:
        with self._lock:
            if handle.state is not WorkerState.STOPPED:
                handle.state = WorkerState.CRASHED
            handle.pending_request = None
        self._kill(handle)

    def _kill(self, handle: WorkerHandle) -> None:
        proc = handle.process
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=self._stop_timeout)
        except subprocess.TimeoutExpired:
            logger.error("Worker pid=%s did not exit after kill", proc.pid)
        self._close_stdin(proc)

    def _terminate(self, handle: WorkerHandle) -> None:
        proc = handle.process
        if proc.poll() is None:
            # A well-behaved worker exits when its stdin closes.
            self._close_stdin(proc)
            try:
                proc.wait(timeout=self._stop_timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=self._stop_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning("Worker pid=%s ignored SIGTERM; killing", proc.pid)
                    proc.kill()
                    proc.wait()
        else:
            proc.wait()
            self._close_stdin(proc)

    @staticmethod
    def _close_stdin(proc: subprocess.Popen) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.close()
        except OSError:
            pass

    # -------------------------
    # Calls
    # -------------------------

    def _call(self, handle: WorkerHandle, tool_name: str, arguments: Dict[str, Any], deadline: float) -> ToolResult:
        call_id = next(self._call_ids)
        frame = {"id": call_id, "tool": tool_name, "arguments": arguments}
        with self._lock:
            handle.state = WorkerState.BUSY
            handle.pending_request = frame
            self._invocations += 1

        try:
            handle.process.stdin.write(json.dumps(frame) + "\n")
            handle.process.stdin.flush()
        except (OSError, ValueError) as exc:
            self._abandon(handle)
            raise WorkerCrashedError(f"Worker pid={handle.pid} is not accepting calls: {exc}") from exc

        while True:
            remaining = deadline - time.monotonic()
            try:
                reply = handle.replies.get(timeout=max(remaining, 0.0))
            except queue.Empty:
                logger.error("Tool '%s' timed out on worker pid=%s; killing worker", tool_name, handle.pid)
                self._abandon(handle)
                raise WorkerTimeout(f"Tool '{tool_name}' did not complete in time")
            if reply is None:
                raise self._exit_error(handle, tool_name)
            if reply.get("id") != call_id:
                logger.warning("Discarding stale worker reply id=%r (awaiting %s)", reply.get("id"), call_id)
                continue
            break

        with self._lock:
            if handle.state is WorkerState.BUSY:
                handle.state = WorkerState.READY
            handle.pending_request = None
            handle.calls_served += 1
        return self._to_result(reply)

    def _exit_error(self, handle: WorkerHandle, tool_name: str) -> Exception:
        with self._lock:
            stopped = handle.state is WorkerState.STOPPED
            if not stopped:
                handle.state = WorkerState.CRASHED
            handle.pending_request = None
            unproven = handle.calls_served == 0
        if stopped:
            return ServerUnavailable(f"Worker was stopped while running '{tool_name}'")
        self._kill(handle)
        if unproven:
            self._note_start_failure()
        code = handle.process.returncode
        logger.error("Worker pid=%s exited (code=%s) while running '%s'", handle.pid, code, tool_name)
        return WorkerCrashedError(f"Worker exited (code={code}) while running '{tool_name}'", data={"returncode": code})

    @staticmethod
    def _to_result(reply: JsonDict) -> ToolResult:
        if "success" in reply:
            return ToolResult.success(reply["success"])
        if "failure" in reply:
            failure = reply["failure"]
            if isinstance(failure, dict):
                return ToolResult.failure(str(failure.get("code") or "ToolError"), str(failure.get("message", "")))
            return ToolResult.failure("ToolError", str(failure))
        raise InternalError(f"Malformed worker reply: {reply!r}")

    # -------------------------
    # Restart storm guard
    # -------------------------

    def _note_start_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self._failure_window:
                self._failures.popleft()
            if self._degraded_at is not None:
                self._degraded_at = now
            elif len(self._failures) >= self._max_start_failures:
                self._degraded_at = now
                logger.error(
                    "Worker failed to start %d times within %.1fs; marking degraded",
                    len(self._failures),
                    self._failure_window,
                )

    def _check_degraded(self) -> None:
        with self._lock:
            if self._degraded_at is None:
                return
            waited = time.monotonic() - self._degraded_at
            if waited < self._cooldown:
                raise WorkerStartError(
                    "Worker backend is degraded after repeated start failures; retry later",
                    data={"degraded": True, "retry_in": round(self._cooldown - waited, 3)},
                )
        logger.info("Degraded cooldown elapsed; probing worker start")

    # -------------------------
    # Stream readers
    # -------------------------

    def _read_stdout(self, handle: WorkerHandle) -> None:
        stream = handle.process.stdout
        try:
            for line in stream:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.info("worker[%s] stdout: %s", handle.pid, line[:500])
                    continue
                if not isinstance(message, dict):
                    logger.info("worker[%s] non-object frame dropped", handle.pid)
                    continue
                handle.replies.put(message)
        except (OSError, ValueError) as exc:
            logger.debug("worker[%s] stdout closed: %s", handle.pid, exc)
        finally:
            handle.replies.put(None)

    def _read_stderr(self, handle: WorkerHandle) -> None:
        try:
            for line in handle.process.stderr:
                line = line.rstrip()
                if line:
                    logger.info("worker[%s] %s", handle.pid, line)
        except (OSError, ValueError) as exc:
            logger.debug("worker[%s] stderr closed: %s", handle.pid, exc)
