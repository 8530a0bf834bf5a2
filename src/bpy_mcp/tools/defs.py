from __future__ import annotations

from typing import List

from ..contracts import ParamSpec, ToolDescriptor

# Render output is capped by the worker; the schema only bounds obviously bad input.
MAX_RESOLUTION = 8192

TOOL_DEFINITIONS: List[ToolDescriptor] = [
    ToolDescriptor(
        name="reset_scene",
        description="Resets the scene to a clean state.",
    ),
    ToolDescriptor(
        name="get_scene_info",
        description="Get information about the current scene.",
    ),
    ToolDescriptor(
        name="create_cube",
        description="Create a cube object in the scene.",
        params=(
            ParamSpec("name", "string", default="Cube", description="Name for the cube object"),
            ParamSpec("location", "vector3", default=[0.0, 0.0, 0.0], description="Location as [x, y, z] coordinates"),
            ParamSpec("size", "number", default=2.0, minimum=0.0, description="Size of the cube"),
        ),
    ),
    ToolDescriptor(
        name="create_sphere",
        description="Create a sphere object in the scene.",
        params=(
            ParamSpec("name", "string", default="Sphere", description="Name for the sphere object"),
            ParamSpec("location", "vector3", default=[0.0, 0.0, 0.0], description="Location as [x, y, z] coordinates"),
            ParamSpec("radius", "number", default=1.0, minimum=0.0, description="Radius of the sphere"),
        ),
    ),
    ToolDescriptor(
        name="set_material",
        description="Create or reuse a material and assign it to an object.",
        params=(
            ParamSpec("object_name", "string", required=True, description="Object receiving the material"),
            ParamSpec("material_name", "string", default="Material", description="Material name"),
            ParamSpec("color", "color4", default=[0.8, 0.8, 0.8, 1.0], description="Base color as [r, g, b, a]"),
        ),
    ),
    ToolDescriptor(
        name="render_image",
        description="Render the current scene to an image file.",
        params=(
            ParamSpec("filepath", "string", default="render.png", description="Output image path"),
            ParamSpec("resolution_x", "integer", default=1920, minimum=1, maximum=MAX_RESOLUTION),
            ParamSpec("resolution_y", "integer", default=1080, minimum=1, maximum=MAX_RESOLUTION),
        ),
    ),
]
