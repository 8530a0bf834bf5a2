from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

from mcp.types import ReadResourceResult, Resource, TextResourceContents, Tool

from .contracts import ToolDescriptor, ToolRequest
from .dispatcher import Dispatcher
from .shared.errors import InvalidArguments, error_for

SCENE_URI = "bpy-mcp://scene/default"
TOOLS_URI = "bpy-mcp://server/tools"
STATUS_URI = "bpy-mcp://server/status"

_MIME = "application/json"


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _tool(descriptor: ToolDescriptor) -> Tool:
    return Tool(name=descriptor.name, description=descriptor.description, inputSchema=descriptor.input_schema)


class ResourceCatalog:
    """
    Read-only JSON views of the server.

    The scene resource is produced by the worker's ``get_scene_info`` tool,
    so reading it goes through the dispatcher like any other call. The
    status resource is listed only when a status provider is given.
    """

    def __init__(self, dispatcher: Dispatcher, status: Optional[Callable[[], Dict[str, Any]]] = None) -> None:
        self.dispatcher = dispatcher
        self._status = status

    def _entries(self) -> List[Resource]:
        entries = [
            Resource(uri=SCENE_URI, name="Scene: default", description="Objects in the worker's scene", mimeType=_MIME),
            Resource(uri=TOOLS_URI, name="Tool catalogue", description="Tools this server exposes", mimeType=_MIME),
        ]
        if self._status is not None:
            entries.append(
                Resource(uri=STATUS_URI, name="Server status", description="Server and worker health", mimeType=_MIME)
            )
        return entries

    def list_resources(self) -> List[Dict[str, Any]]:
        return [_dump(entry) for entry in self._entries()]

    def _find(self, uri: str) -> Optional[Resource]:
        # Compare without a trailing slash; URL normalization may add one.
        wanted = uri.rstrip("/")
        for entry in self._entries():
            if str(entry.uri).rstrip("/") == wanted:
                return entry
        return None

    def read(self, uri: Any, request_id: Any = None) -> Dict[str, Any]:
        if not isinstance(uri, str) or not uri:
            raise InvalidArguments("'uri' must be a non-empty string")
        entry = self._find(uri)
        if entry is None:
            available = sorted(str(e.uri) for e in self._entries())
            raise InvalidArguments(f"Unknown resource: {uri}", data={"available": available})

        listed = str(entry.uri).rstrip("/")
        if listed == SCENE_URI:
            payload = self._scene(request_id)
        elif listed == TOOLS_URI:
            payload = {"tools": [_dump(_tool(d)) for d in self.dispatcher.registry.list_descriptors()]}
        else:
            payload = self._status()

        contents = TextResourceContents(uri=entry.uri, mimeType=_MIME, text=json.dumps(payload, ensure_ascii=False))
        return _dump(ReadResourceResult(contents=[contents]))

    def _scene(self, request_id: Any) -> Any:
        response = self.dispatcher.submit(ToolRequest(id=request_id, tool_name="get_scene_info"))
        if not response.ok:
            raise error_for(response.error_code or "InternalError", response.message or "", response.data)
        return response.value

