"""Stdio and HTTP adapters in front of the shared protocol core."""

from .http import HttpTransport
from .session import TransportSession
from .stdio import StdioTransport

__all__ = ["HttpTransport", "StdioTransport", "TransportSession"]
