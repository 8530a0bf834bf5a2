"""
Diagnostics for the server and its worker.

Both processes use stdout as a protocol channel, so log records go to
stderr (or a file) and ``protected_stdout`` keeps stray ``print`` calls
out of the frame stream.
"""

from __future__ import annotations

import contextlib
import logging
import sys
from typing import Iterator, Optional, TextIO

from .config import LoggingConfig

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def configure_logging(config: LoggingConfig) -> None:
    handler: logging.Handler
    if config.file:
        handler = logging.FileHandler(config.file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    level = logging.getLevelName(config.level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=_FORMAT, handlers=[handler], force=True)
    logging.captureWarnings(True)


@contextlib.contextmanager
def protected_stdout() -> Iterator[TextIO]:
    """Send ``sys.stdout`` writes to stderr; yield the real stdout for frames."""
    frames = sys.stdout
    with contextlib.redirect_stdout(sys.stderr):
        yield frames


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name if name else "bpy_mcp")
