"""
Seed prompts: worked scene-building workflows a client can offer its user.

Each prompt is a single user message describing the goal and the tool calls
that reach it. They take no arguments.
"""

from __future__ import annotations

from typing import Any, Dict, List, NamedTuple

from mcp.types import GetPromptResult, Prompt, PromptMessage, TextContent

from .shared.errors import InvalidArguments


class SeedPrompt(NamedTuple):
    name: str
    description: str
    text: str


SEED_PROMPTS = (
    SeedPrompt(
        "basic_scene_setup",
        "Basic scene setup: Create a simple scene with a few objects",
        """Build a basic scene with the scene tools.

Goal:
- Start from an empty scene (call reset_scene).
- Create 3 cubes at [0,0,0], [3,0,0] and [6,0,0].
- Create 2 spheres at [0,3,0] and [3,3,0].

Expected calls:
1. reset_scene {}
2. create_cube {"name": "Cube1", "location": [0,0,0], "size": 2.0}
3. create_cube {"name": "Cube2", "location": [3,0,0], "size": 2.0}
4. create_cube {"name": "Cube3", "location": [6,0,0], "size": 2.0}
5. create_sphere {"name": "Sphere1", "location": [0,3,0], "radius": 1.0}
6. create_sphere {"name": "Sphere2", "location": [3,3,0], "radius": 1.0}

Finish with get_scene_info and check that all five objects are listed.
""",
    ),
    SeedPrompt(
        "cube_grid_plan",
        "Create a grid of cubes with dependencies",
        """Build a 3x3 grid of cubes.

Goal: 9 cubes named Cube_<row>_<col>, size 1.0.
- Row 1: [0,0,0], [2,0,0], [4,0,0]
- Row 2: [0,2,0], [2,2,0], [4,2,0]
- Row 3: [0,4,0], [2,4,0], [4,4,0]

Order:
- Finish row 1 before row 2, and row 2 before row 3.
- Within a row, create cubes left to right.

Tool calls run one at a time on the worker, so issuing them in this order
is enough to respect it. Expect 9 create_cube calls.
""",
    ),
    SeedPrompt(
        "sphere_pattern_plan",
        "Create spheres in a circular pattern",
        """Arrange spheres in a circle.

Goal: 8 spheres named Sphere_0 .. Sphere_7, radius 0.5.
- Circle center [0,0,0], circle radius 5.
- Sphere i sits at [5*cos(i*45deg), 5*sin(i*45deg), 0].

The spheres do not depend on each other; they may be requested in any
order, or all at once. Expect 8 create_sphere calls.
""",
    ),
    SeedPrompt(
        "mixed_objects_plan",
        "Create a mixed scene with cubes and spheres with constraints",
        """Build a mixed scene in a fixed order.

Goal:
- Cubes: Cube1 at [0,0,0], Cube2 at [3,0,0], Cube3 at [6,0,0], Cube4 at [9,0,0]
- Spheres: Sphere1 at [0,3,0], Sphere2 at [3,3,0], Sphere3 at [6,3,0]

Order: Cube1, Cube2, Cube3, Cube4, Sphere1, Sphere2, Sphere3.
Wait for each result before sending the next call. Then give every cube a
red material and every sphere a blue one with set_material, e.g.
set_material {"object_name": "Cube1", "material_name": "Red", "color": [1,0,0,1]}.
""",
    ),
    SeedPrompt(
        "hierarchical_scene_plan",
        "Complex hierarchical scene construction plan",
        """Build a simple room scene by breaking the goal into levels.

Goal: "Create a room scene with furniture".
- Level 1, room structure: a flat floor cube, then two wall cubes.
- Level 2, furniture: a table cube on the floor.
- Level 3, details: a small sphere resting on the table.

Order:
- The floor comes first; walls and furniture depend on it.
- The table comes before anything placed on it.

Every object is a create_cube or create_sphere call with its own name and
location. Finish with render_image {"filepath": "room.png"} and report
the result.
""",
    ),
)

_BY_NAME = {prompt.name: prompt for prompt in SEED_PROMPTS}


def list_prompts() -> List[Dict[str, Any]]:
    return [
        Prompt(name=prompt.name, description=prompt.description, arguments=[]).model_dump(
            mode="json", by_alias=True, exclude_none=True
        )
        for prompt in SEED_PROMPTS
    ]


def get_prompt(name: Any) -> Dict[str, Any]:
    prompt = _BY_NAME.get(name) if isinstance(name, str) else None
    if prompt is None:
        raise InvalidArguments(f"Prompt not found: {name}", data={"available": sorted(_BY_NAME)})
    result = GetPromptResult(
        description=prompt.description,
        messages=[PromptMessage(role="user", content=TextContent(type="text", text=prompt.text))],
    )
    return result.model_dump(mode="json", by_alias=True, exclude_none=True)
