"""Agent connection server: wire protocol, handler table and aiohttp app."""
from __future__ import annotations

__all__ = [
    "AgentServer",
    "AgentHandlers",
    "Connection",
    "Message",
    "build_handlers",
]

from rdev.server.handlers import AgentHandlers, build_handlers
from rdev.server.protocol import Message
from rdev.server.server import AgentServer, Connection
