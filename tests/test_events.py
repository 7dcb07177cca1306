"""Tests for progress events and the ordered output channel."""
from __future__ import annotations

import asyncio

import pytest

from rdev.adapters.event_bus import OutputStream
from rdev.adapters.events import (
    OutputChunk,
    ProgressEvent,
    StreamFinished,
    event_to_dict,
)
from rdev.engine.models import ExecutionResult


def test_event_to_dict_drops_empty_fields():
    assert event_to_dict(ProgressEvent(stage="cloning", message="Cloning o/r...")) == {
        "stage": "cloning", "message": "Cloning o/r...",
    }


def test_output_chunk_becomes_running_progress():
    assert event_to_dict(OutputChunk(stream="stderr", text="warn")) == {
        "stage": "running", "type": "stderr", "text": "warn",
    }


@pytest.mark.asyncio
async def test_stream_preserves_order_and_terminates():
    channel = OutputStream()
    result = ExecutionResult(success=True, output="ab", exit_code=0)

    async def produce() -> None:
        await channel.emit(OutputChunk("stdout", "a"))
        await channel.emit(OutputChunk("stdout", "b"))
        channel.finish(result=result)
        channel.finish(error=RuntimeError("ignored"))
        await channel.emit(OutputChunk("stdout", "late"))

    await produce()
    items = [item async for item in channel]

    assert [i.text for i in items[:-1]] == ["a", "b"]
    assert items[-1] == StreamFinished(result=result)


@pytest.mark.asyncio
async def test_consumer_waits_for_producer():
    channel = OutputStream()

    async def consume() -> list:
        return [item async for item in channel]

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    assert not task.done()
    channel.finish()
    items = await asyncio.wait_for(task, timeout=1)
    assert items == [StreamFinished()]
