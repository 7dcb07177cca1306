"""Progress event types forwarded to clients.

Handlers emit plain dicts over the wire; these dataclasses give the
engine and tests a typed view of the same shapes.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

from rdev.engine.models import ExecutionResult


@dataclass
class ProgressEvent:
    """An ephemeral status/output notification for one in-flight call."""
    stage: str
    message: str | None = None
    type: str | None = None
    text: str | None = None


@dataclass
class OutputChunk:
    """A raw chunk of tool output, tagged with its stream."""
    stream: str  # "stdout" | "stderr"
    text: str

    def to_progress(self, stage: str = "running") -> ProgressEvent:
        return ProgressEvent(stage=stage, type=self.stream, text=self.text)


@dataclass
class StreamFinished:
    """Terminal event of an output stream.

    Exactly one is produced per stream; ``error`` is set when the tool
    could not be started, otherwise ``result`` is.
    """
    result: ExecutionResult | None = None
    error: BaseException | None = None


def event_to_dict(event: ProgressEvent | OutputChunk) -> dict[str, Any]:
    """Convert an event dataclass to a plain dict, dropping None fields."""
    if isinstance(event, OutputChunk):
        event = event.to_progress()
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is not None:
            d[f.name] = val
    return d
