"""Adapters package - event shapes and the ordered output channel.

These sit between the orchestrator and its consumers (the server's
progress emitter and direct async-iterator callers).
"""
from __future__ import annotations

__all__ = [
    "OutputStream",
    "OutputChunk",
    "ProgressEvent",
    "StreamFinished",
    "event_to_dict",
]

from rdev.adapters.event_bus import OutputStream
from rdev.adapters.events import (
    OutputChunk,
    ProgressEvent,
    StreamFinished,
    event_to_dict,
)
