"""MCP server exposing 3D scene tools over stdio and HTTP, backed by a supervised worker process."""

__version__ = "0.1.0"
SERVER_NAME = "bpy-mcp"
