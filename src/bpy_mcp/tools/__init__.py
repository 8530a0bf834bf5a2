from .defs import TOOL_DEFINITIONS
from .registry import ToolRegistry, default_registry

__all__ = ["TOOL_DEFINITIONS", "ToolRegistry", "default_registry"]
