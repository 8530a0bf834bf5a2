from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

JsonDict = Dict[str, Any]

SemanticType = Literal["string", "number", "integer", "boolean", "vector3", "color4", "object"]
FrameStyle = Literal["jsonrpc", "compact"]


@dataclass(frozen=True)
class ParamSpec:
    name: str
    semantic_type: SemanticType
    required: bool = False
    default: Any = None
    description: str = ""
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass(frozen=True)
class ToolDescriptor:
    """A registered tool: its parameter schema and the worker capability that runs it."""

    name: str
    description: str
    params: Tuple[ParamSpec, ...] = ()
    handler: str = ""

    @property
    def capability(self) -> str:
        return self.handler or self.name

    @property
    def input_schema(self) -> JsonDict:
        properties: JsonDict = {}
        required = []
        for param in self.params:
            properties[param.name] = _json_schema_for(param)
            if param.required:
                required.append(param.name)
        schema: JsonDict = {"type": "object", "properties": properties, "additionalProperties": False}
        if required:
            schema["required"] = required
        return schema


def _json_schema_for(param: ParamSpec) -> JsonDict:
    t = param.semantic_type
    if t == "vector3":
        schema: JsonDict = {"type": "array", "items": {"type": "number"}, "minItems": 3, "maxItems": 3}
    elif t == "color4":
        schema = {
            "type": "array",
            "items": {"type": "number", "minimum": 0.0, "maximum": 1.0},
            "minItems": 4,
            "maxItems": 4,
        }
    else:
        schema = {"type": t}
    if param.minimum is not None:
        schema["minimum"] = param.minimum
    if param.maximum is not None:
        schema["maximum"] = param.maximum
    if param.description:
        schema["description"] = param.description
    if not param.required and param.default is not None:
        schema["default"] = param.default
    return schema


@dataclass(frozen=True)
class ToolRequest:
    id: Any
    tool_name: str
    arguments: JsonDict = field(default_factory=dict)
    style: FrameStyle = "jsonrpc"


@dataclass(frozen=True)
class ToolResponse:
    id: Any
    ok: bool
    value: Any = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    data: Optional[JsonDict] = None

    @staticmethod
    def success(request_id: Any, value: Any) -> "ToolResponse":
        return ToolResponse(id=request_id, ok=True, value=value)

    @staticmethod
    def failure(request_id: Any, code: str, message: str, data: Optional[JsonDict] = None) -> "ToolResponse":
        return ToolResponse(id=request_id, ok=False, error_code=code, message=message, data=data or None)


@dataclass(frozen=True)
class ToolResult:
    """Outcome reported by the worker for a single call."""

    ok: bool
    data: Optional[Any] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @staticmethod
    def success(data: Any = None) -> "ToolResult":
        return ToolResult(ok=True, data=data)

    @staticmethod
    def failure(code: str, message: str) -> "ToolResult":
        return ToolResult(ok=False, error_code=code, error_message=message)
