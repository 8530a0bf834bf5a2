from __future__ import annotations

import json
import logging
import os
import shlex
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

TRANSPORTS = ("stdio", "http")


def default_worker_command() -> Tuple[str, ...]:
    return (sys.executable, "-m", "bpy_mcp.worker")


@dataclass(frozen=True)
class WorkerConfig:
    command: Tuple[str, ...] = field(default_factory=default_worker_command)
    start_timeout_ms: int = 10000
    stop_timeout_ms: int = 5000
    max_start_failures: int = 3
    failure_window_ms: int = 30000


@dataclass(frozen=True)
class ServerConfig:
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 4000
    timeout_ms: int = 30000
    max_concurrency: int = 8
    shutdown_grace_ms: int = 5000
    pidfile: Optional[str] = None


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass(frozen=True)
class AppConfig:
    server: ServerConfig = ServerConfig()
    worker: WorkerConfig = WorkerConfig()
    logging: LoggingConfig = LoggingConfig()


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _as_int(value: Any, default: int, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid %s=%r, using %s", name, value, default)
        return default
    if number < 0:
        logger.warning("Ignoring negative %s=%r, using %s", name, value, default)
        return default
    return number


def _as_transport(value: Any, default: str) -> str:
    mode = str(value).lower().strip()
    if mode not in TRANSPORTS:
        logger.warning("Unknown transport %r, falling back to %s", value, default)
        return default
    return mode


def _as_command(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        parts = [str(part) for part in value]
    else:
        parts = []
    if not parts:
        logger.warning("Ignoring empty worker command, using default")
        return default
    return tuple(parts)


def _from_file(raw: Mapping[str, Any]) -> AppConfig:
    base = AppConfig()
    server_raw = raw.get("server", {})
    worker_raw = raw.get("worker", {})
    logging_raw = raw.get("logging", {})
    server = base.server
    worker = base.worker
    return AppConfig(
        server=ServerConfig(
            transport=_as_transport(server_raw.get("transport", server.transport), server.transport),
            host=str(server_raw.get("host", server.host)),
            port=_as_int(server_raw.get("port", server.port), server.port, "server.port"),
            timeout_ms=_as_int(server_raw.get("timeout_ms", server.timeout_ms), server.timeout_ms, "server.timeout_ms"),
            max_concurrency=_as_int(
                server_raw.get("max_concurrency", server.max_concurrency), server.max_concurrency, "server.max_concurrency"
            ),
            shutdown_grace_ms=_as_int(
                server_raw.get("shutdown_grace_ms", server.shutdown_grace_ms),
                server.shutdown_grace_ms,
                "server.shutdown_grace_ms",
            ),
            pidfile=server_raw.get("pidfile"),
        ),
        worker=WorkerConfig(
            command=_as_command(worker_raw["command"], worker.command) if "command" in worker_raw else worker.command,
            start_timeout_ms=_as_int(
                worker_raw.get("start_timeout_ms", worker.start_timeout_ms),
                worker.start_timeout_ms,
                "worker.start_timeout_ms",
            ),
            stop_timeout_ms=_as_int(
                worker_raw.get("stop_timeout_ms", worker.stop_timeout_ms), worker.stop_timeout_ms, "worker.stop_timeout_ms"
            ),
            max_start_failures=_as_int(
                worker_raw.get("max_start_failures", worker.max_start_failures),
                worker.max_start_failures,
                "worker.max_start_failures",
            ),
            failure_window_ms=_as_int(
                worker_raw.get("failure_window_ms", worker.failure_window_ms),
                worker.failure_window_ms,
                "worker.failure_window_ms",
            ),
        ),
        logging=LoggingConfig(
            level=str(logging_raw.get("level", "INFO")),
            file=logging_raw.get("file"),
        ),
    )


def _apply_env(config: AppConfig, env: Mapping[str, str]) -> AppConfig:
    server = config.server
    worker = config.worker
    log = config.logging

    if "BPY_MCP_TRANSPORT" in env:
        server = replace(server, transport=_as_transport(env["BPY_MCP_TRANSPORT"], server.transport))
    if "BPY_MCP_HOST" in env:
        server = replace(server, host=env["BPY_MCP_HOST"])
    if "BPY_MCP_PORT" in env:
        server = replace(server, port=_as_int(env["BPY_MCP_PORT"], server.port, "BPY_MCP_PORT"))
    if "BPY_MCP_TIMEOUT_MS" in env:
        server = replace(server, timeout_ms=_as_int(env["BPY_MCP_TIMEOUT_MS"], server.timeout_ms, "BPY_MCP_TIMEOUT_MS"))
    if "BPY_MCP_PIDFILE" in env:
        server = replace(server, pidfile=env["BPY_MCP_PIDFILE"] or None)
    if "BPY_MCP_WORKER_CMD" in env:
        worker = replace(worker, command=_as_command(env["BPY_MCP_WORKER_CMD"], worker.command))
    if "BPY_MCP_WORKER_START_TIMEOUT_MS" in env:
        worker = replace(
            worker,
            start_timeout_ms=_as_int(
                env["BPY_MCP_WORKER_START_TIMEOUT_MS"], worker.start_timeout_ms, "BPY_MCP_WORKER_START_TIMEOUT_MS"
            ),
        )
    if "BPY_MCP_LOG_LEVEL" in env:
        log = replace(log, level=env["BPY_MCP_LOG_LEVEL"])
    if "BPY_MCP_LOG_FILE" in env:
        log = replace(log, file=env["BPY_MCP_LOG_FILE"] or None)

    return AppConfig(server=server, worker=worker, logging=log)


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if env is None else env
    config = AppConfig()

    config_path = env.get("BPY_MCP_CONFIG")
    if config_path:
        path = Path(config_path)
        if path.exists():
            config = _from_file(_load_json(path))
        else:
            logger.warning("Config file %s not found, using defaults", path)

    return _apply_env(config, env)
