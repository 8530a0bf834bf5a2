from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from typing import Any, Callable, Dict, Optional, TextIO

from ..shared.config import LoggingConfig
from ..shared.logging import configure_logging, protected_stdout
from .scene import MockScene, SceneError

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]


def _write(out: TextIO, message: JsonDict) -> None:
    # Exactly one JSON object per line.
    out.write(json.dumps(message, ensure_ascii=False))
    out.write("\n")
    out.flush()


def run_call(handlers: Dict[str, Callable[..., Any]], message: JsonDict) -> JsonDict:
    call_id = message.get("id")
    tool = message.get("tool")
    arguments = message.get("arguments") or {}

    handler = handlers.get(tool) if isinstance(tool, str) else None
    if handler is None:
        return {"id": call_id, "failure": {"code": "UnknownCapability", "message": f"worker has no tool '{tool}'"}}
    if not isinstance(arguments, dict):
        return {"id": call_id, "failure": {"code": "InvalidArguments", "message": "arguments must be an object"}}

    try:
        result = handler(**arguments)
    except SceneError as exc:
        return {"id": call_id, "failure": {"code": "ToolError", "message": str(exc)}}
    except Exception as exc:  # noqa: BLE001
        logger.error("Tool '%s' failed:\n%s", tool, traceback.format_exc())
        return {"id": call_id, "failure": {"code": "InternalError", "message": f"{type(exc).__name__}: {exc}"}}
    return {"id": call_id, "success": result}


def serve(
    handlers: Optional[Dict[str, Callable[..., Any]]] = None,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> int:
    """Announce readiness, then answer call frames until stdin closes."""
    handlers = handlers if handlers is not None else MockScene().handlers()
    stdin = stdin or sys.stdin
    out = stdout or sys.stdout

    _write(out, {"ready": True, "pid": os.getpid()})
    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Dropping malformed call frame: %s", exc)
            continue
        if not isinstance(message, dict):
            logger.warning("Dropping non-object call frame")
            continue
        _write(out, run_call(handlers, message))
    return 0


def main() -> int:
    # stderr only: the server forwards it into its own log.
    configure_logging(LoggingConfig(level=os.environ.get("BPY_MCP_LOG_LEVEL", "INFO")))
    with protected_stdout() as frames:
        return serve(stdout=frames)
