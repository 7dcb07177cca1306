"""Remote-side client for the agent server."""
from __future__ import annotations

__all__ = [
    "ClientConnection",
    "ConnectionState",
]

from rdev.client.connection import ClientConnection, ConnectionState
