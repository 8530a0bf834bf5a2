from __future__ import annotations

import copy
import logging
import math
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Iterable, List

from jsonschema import Draft7Validator

from ..contracts import ParamSpec, ToolDescriptor
from ..shared.errors import DuplicateToolError, InvalidArguments, UnknownTool
from .defs import TOOL_DEFINITIONS

logger = logging.getLogger(__name__)

_INTEGER = re.compile(r"-?[0-9]+")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_float(param: ParamSpec, value: Any) -> float:
    number = None
    if _is_number(value):
        try:
            number = float(value)
        except OverflowError:
            number = math.inf
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            pass
    if number is None:
        raise InvalidArguments(f"param '{param.name}' must be a number")
    if not math.isfinite(number):
        raise InvalidArguments(f"param '{param.name}' must be a finite number")
    return number


def _coerce_string(param: ParamSpec, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidArguments(f"param '{param.name}' must be a string")
    return value


def _coerce_integer(param: ParamSpec, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidArguments(f"param '{param.name}' must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INTEGER.fullmatch(value.strip()):
        return int(value.strip())
    raise InvalidArguments(f"param '{param.name}' must be an integer")


def _coerce_boolean(param: ParamSpec, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidArguments(f"param '{param.name}' must be a boolean")
    return value


def _sequence(param: ParamSpec, value: Any) -> List[Any]:
    if isinstance(value, str):
        return [part for part in value.replace(" ", "").split(",") if part]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise InvalidArguments(f"param '{param.name}' must be an array")


def _coerce_vector3(param: ParamSpec, value: Any) -> List[float]:
    items = _sequence(param, value)
    if len(items) != 3:
        raise InvalidArguments(f"param '{param.name}' must have exactly 3 components")
    return [_to_float(param, item) for item in items]


def _coerce_color4(param: ParamSpec, value: Any) -> List[float]:
    items = [_to_float(param, item) for item in _sequence(param, value)]
    if len(items) == 3:
        items.append(1.0)
    if len(items) != 4:
        raise InvalidArguments(f"param '{param.name}' must have 3 or 4 components")
    return items


def _coerce_object(param: ParamSpec, value: Any) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidArguments(f"param '{param.name}' must be an object")
    return dict(value)


_COERCERS: Dict[str, Callable[[ParamSpec, Any], Any]] = {
    "string": _coerce_string,
    "number": _to_float,
    "integer": _coerce_integer,
    "boolean": _coerce_boolean,
    "vector3": _coerce_vector3,
    "color4": _coerce_color4,
    "object": _coerce_object,
}


class ToolRegistry:
    """Name -> ToolDescriptor mapping. Populated at startup, read-only afterwards."""

    def __init__(self, descriptors: Iterable[ToolDescriptor] = ()) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}
        self._validators: Dict[str, Draft7Validator] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise DuplicateToolError(f"Tool '{descriptor.name}' is already registered")
        for param in descriptor.params:
            if param.semantic_type not in _COERCERS:
                raise ValueError(f"Tool '{descriptor.name}': unsupported type '{param.semantic_type}' for '{param.name}'")
        schema = descriptor.input_schema
        Draft7Validator.check_schema(schema)
        self._tools[descriptor.name] = descriptor
        self._validators[descriptor.name] = Draft7Validator(schema)
        logger.debug("Registered tool: %s", descriptor.name)

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except (KeyError, TypeError) as exc:
            raise UnknownTool(f"Unknown tool '{name}'", data={"available": sorted(self._tools)}) from exc

    def list_descriptors(self) -> List[ToolDescriptor]:
        return list(self._tools.values())

    def validate(self, descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Normalize loosely-typed arguments against the descriptor's parameters.

        Defaults fill missing optional parameters, values are coerced to their
        semantic type, and the result is checked against the derived JSON schema.
        """
        if not isinstance(arguments, Mapping):
            raise InvalidArguments("arguments must be an object")

        known = {param.name for param in descriptor.params}
        unexpected = sorted(str(key) for key in arguments if key not in known)
        if unexpected:
            raise InvalidArguments(f"unexpected param: {unexpected[0]}", data={"unexpected": unexpected})

        normalized: Dict[str, Any] = {}
        for param in descriptor.params:
            if param.name in arguments and arguments[param.name] is not None:
                normalized[param.name] = _COERCERS[param.semantic_type](param, arguments[param.name])
            elif param.required:
                raise InvalidArguments(f"missing required param: {param.name}")
            elif param.default is not None:
                normalized[param.name] = copy.deepcopy(param.default)

        validator = self._validators.get(descriptor.name)
        if validator is None:
            raise UnknownTool(f"Unknown tool '{descriptor.name}'")
        errors = sorted(validator.iter_errors(normalized), key=lambda e: [str(p) for p in e.path])
        if errors:
            first = errors[0]
            path = ".".join(str(p) for p in first.path) or "<root>"
            raise InvalidArguments(f"{path}: {first.message}")

        return normalized


def default_registry() -> ToolRegistry:
    return ToolRegistry(TOOL_DEFINITIONS)
