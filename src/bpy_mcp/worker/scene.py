from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# Renders are capped to keep headless runs cheap.
MAX_RENDER_SIZE = 512


class SceneError(Exception):
    """A tool body refused the request (missing object, bad state)."""


@dataclass
class SceneObject:
    name: str
    type: str
    location: List[float] = field(default_factory=lambda: [0.0, 0.0, 0.0])
    dimensions: Dict[str, float] = field(default_factory=dict)
    material: Optional[str] = None


class MockScene:
    """In-memory stand-in for the Blender scene used when no engine is attached."""

    def __init__(self) -> None:
        self.name = "Scene"
        self.frame_start = 1
        self.frame_end = 250
        self.frame_current = 1
        self.fps = 30
        self.objects: Dict[str, SceneObject] = {}
        self.materials: Dict[str, List[float]] = {}
        self.active_object: Optional[str] = None

    def handlers(self) -> Dict[str, Callable[..., Any]]:
        return {
            "reset_scene": self.reset_scene,
            "get_scene_info": self.get_scene_info,
            "create_cube": self.create_cube,
            "create_sphere": self.create_sphere,
            "set_material": self.set_material,
            "render_image": self.render_image,
        }

    def _add(self, obj: SceneObject) -> None:
        # Re-creating an object replaces the old one of the same name.
        self.objects.pop(obj.name, None)
        self.objects[obj.name] = obj
        self.active_object = obj.name

    def reset_scene(self) -> str:
        self.objects.clear()
        self.materials.clear()
        self.active_object = None
        self.frame_current = self.frame_start
        return "Reset scene - cleared all objects"

    def get_scene_info(self) -> Dict[str, Any]:
        return {
            "scene_name": self.name,
            "frame_current": self.frame_current,
            "frame_start": self.frame_start,
            "frame_end": self.frame_end,
            "fps": self.fps,
            "fps_base": 1,
            "objects": list(self.objects),
            "active_object": self.active_object,
        }

    def create_cube(self, name: str = "Cube", location: Optional[List[float]] = None, size: float = 2.0) -> str:
        x, y, z = location or [0.0, 0.0, 0.0]
        self._add(SceneObject(name=name, type="MESH", location=[x, y, z], dimensions={"size": size}))
        return f"Created cube '{name}' at [{x}, {y}, {z}] with size {size}"

    def create_sphere(self, name: str = "Sphere", location: Optional[List[float]] = None, radius: float = 1.0) -> str:
        x, y, z = location or [0.0, 0.0, 0.0]
        self._add(SceneObject(name=name, type="MESH", location=[x, y, z], dimensions={"radius": radius}))
        return f"Created sphere '{name}' at [{x}, {y}, {z}] with radius {radius}"

    def set_material(
        self, object_name: str, material_name: str = "Material", color: Optional[List[float]] = None
    ) -> str:
        if object_name not in self.objects:
            raise SceneError(f"Object '{object_name}' not found")
        r, g, b, a = color or [0.8, 0.8, 0.8, 1.0]
        self.materials[material_name] = [r, g, b, a]
        self.objects[object_name].material = material_name
        return f"Set material '{material_name}' with color [{r}, {g}, {b}, {a}] on object '{object_name}'"

    def render_image(self, filepath: str = "render.png", resolution_x: int = 1920, resolution_y: int = 1080) -> Dict[str, Any]:
        width = min(resolution_x, MAX_RENDER_SIZE)
        height = min(resolution_y, MAX_RENDER_SIZE)
        return {
            "filepath": filepath,
            "resolution": [width, height],
            "format": "PNG",
            "objects": len(self.objects),
        }
