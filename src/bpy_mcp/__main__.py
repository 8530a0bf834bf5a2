from __future__ import annotations

import argparse
import json
import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Optional

from . import SERVER_NAME, __version__
from .shared.config import TRANSPORTS, AppConfig, load_config
from .shared.logging import configure_logging, get_logger
from .supervisor import PidFile, Supervisor, pid_alive, stop_instance

logger = get_logger()


def default_pidfile() -> Path:
    return Path(tempfile.gettempdir()) / f"{SERVER_NAME}.pid"


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    common.add_argument("--transport", choices=TRANSPORTS)
    common.add_argument("--host")
    common.add_argument("--port", type=int)
    common.add_argument("--timeout-ms", type=int, dest="timeout_ms")
    common.add_argument("--pidfile")
    common.add_argument("--log-level", dest="log_level")

    parser = argparse.ArgumentParser(prog=SERVER_NAME, description="MCP server for 3D scene tools.", parents=[common])
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", parents=[common], help="run in the foreground (default)")
    sub.add_parser("start", parents=[common], help="stop any recorded instance, then serve")
    stop = sub.add_parser("stop", parents=[common], help="stop the recorded instance")
    stop.add_argument("--wait", type=float, default=5.0, help="seconds to wait before SIGKILL")
    sub.add_parser("status", parents=[common], help="report whether the recorded instance is alive")
    return parser


def apply_args(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    server = config.server
    for name in ("transport", "host", "port", "timeout_ms", "pidfile"):
        if hasattr(args, name):
            server = replace(server, **{name: getattr(args, name)})
    log = config.logging
    if hasattr(args, "log_level"):
        log = replace(log, level=args.log_level)
    return replace(config, server=server, logging=log)


def _serve(config: AppConfig, pidfile: Optional[PidFile]) -> int:
    supervisor = Supervisor(config)
    if pidfile is not None:
        pidfile.write()
    try:
        return supervisor.run()
    finally:
        if pidfile is not None:
            pidfile.remove(only_pid=os.getpid())


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "serve"
    config = apply_args(load_config(), args)
    configure_logging(config.logging)

    if command == "serve":
        pidfile = PidFile(config.server.pidfile) if config.server.pidfile else None
        return _serve(config, pidfile)

    pidfile = PidFile(config.server.pidfile or default_pidfile())
    if command == "start":
        # Replace whatever instance the pid file points at.
        stop_instance(pidfile, timeout=config.worker.stop_timeout_ms / 1000.0)
        return _serve(config, pidfile)

    if command == "stop":
        if not stop_instance(pidfile, timeout=args.wait):
            logger.info("No running instance recorded in %s", pidfile.path)
        return 0

    pid = pidfile.read()
    alive = pid is not None and pid_alive(pid)
    print(json.dumps({"pidfile": str(pidfile.path), "pid": pid, "running": alive}))
    return 0 if alive else 1


if __name__ == "__main__":
    sys.exit(main())
