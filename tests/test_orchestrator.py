"""Tests for ProcessOrchestrator, using ``sh -c`` scripts as the AI tool."""
from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from rdev.adapters.events import OutputChunk, StreamFinished
from rdev.engine.errors import ProcessError, TargetBusyError
from rdev.engine.models import ConversationTurn, TurnRole
from rdev.engine.orchestrator import ProcessOrchestrator, compose_prompt
from rdev.engine.providers.gemini_provider import GeminiProvider

KEY = "octo/demo"


def _orchestrator(script: str, **kwargs) -> ProcessOrchestrator:
    provider = GeminiProvider(command="sh", args=["-c", script])
    return ProcessOrchestrator(provider, **kwargs)


async def _wait_for_process(orch: ProcessOrchestrator, key: str) -> None:
    for _ in range(500):
        session = orch._sessions.get(key)
        if session is not None and session.process is not None:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("process never started")


def test_compose_prompt_without_history_is_the_prompt():
    assert compose_prompt([], "add README") == "add README"


def test_compose_prompt_with_history():
    history = [
        ConversationTurn(TurnRole.USER, "add README"),
        ConversationTurn(TurnRole.ASSISTANT, "OK"),
    ]
    assert compose_prompt(history, "now tests") == (
        "PREVIOUS MESSAGES:\n"
        "User: add README\n"
        "Assistant: OK\n"
        "\n"
        "CURRENT REQUEST:\n"
        "now tests"
    )


@pytest.mark.asyncio
async def test_successful_run_records_both_turns(tmp_path):
    orch = _orchestrator("cat >/dev/null; printf OK")

    result = await orch.execute(KEY, tmp_path, "add README")

    assert result.to_dict() == {"success": True, "output": "OK", "exitCode": 0}
    assert [t.to_dict() for t in orch.history(KEY)] == [
        {"role": "user", "text": "add README"},
        {"role": "assistant", "text": "OK"},
    ]


@pytest.mark.asyncio
async def test_next_prompt_embeds_prior_turns(tmp_path):
    # The tool echoes its stdin, so the output is the composed prompt.
    orch = _orchestrator("cat")

    await orch.execute(KEY, tmp_path, "add README")
    result = await orch.execute(KEY, tmp_path, "now tests")

    assert result.output == (
        "PREVIOUS MESSAGES:\n"
        "User: add README\n"
        "Assistant: add README\n"
        "\n"
        "CURRENT REQUEST:\n"
        "now tests"
    )
    assert len(orch.history(KEY)) == 4


@pytest.mark.asyncio
async def test_runs_in_target_directory(tmp_path):
    orch = _orchestrator("cat >/dev/null; pwd")
    result = await orch.execute(KEY, tmp_path, "where")
    assert result.output.strip() == str(tmp_path)


@pytest.mark.asyncio
async def test_failure_keeps_only_user_turn(tmp_path):
    orch = _orchestrator("cat >/dev/null; echo boom >&2; exit 3")

    result = await orch.execute(KEY, tmp_path, "break it")

    assert result.success is False
    assert result.exit_code == 3
    assert result.error == "boom"
    assert orch.history(KEY) == [ConversationTurn(TurnRole.USER, "break it")]


@pytest.mark.asyncio
async def test_failure_without_stderr_reports_exit_code(tmp_path):
    orch = _orchestrator("cat >/dev/null; exit 2")
    result = await orch.execute(KEY, tmp_path, "x")
    assert result.error == "exited with code 2"


@pytest.mark.asyncio
async def test_empty_output_adds_no_assistant_turn(tmp_path):
    orch = _orchestrator("cat >/dev/null; printf '  \\n'")
    result = await orch.execute(KEY, tmp_path, "quiet")
    assert result.success is True
    assert len(orch.history(KEY)) == 1


@pytest.mark.asyncio
async def test_output_chunks_are_tagged_by_stream(tmp_path):
    orch = _orchestrator("cat >/dev/null; echo out; echo err >&2")
    chunks: list[OutputChunk] = []

    async def on_output(chunk: OutputChunk) -> None:
        chunks.append(chunk)

    await orch.execute(KEY, tmp_path, "go", on_output)

    stdout = "".join(c.text for c in chunks if c.stream == "stdout")
    stderr = "".join(c.text for c in chunks if c.stream == "stderr")
    assert stdout == "out\n"
    assert stderr == "err\n"


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_the_run(tmp_path):
    orch = _orchestrator("cat >/dev/null; echo fine")

    async def on_output(chunk: OutputChunk) -> None:
        raise RuntimeError("consumer broke")

    result = await orch.execute(KEY, tmp_path, "go", on_output)
    assert result.output == "fine\n"


@pytest.mark.asyncio
async def test_noise_is_forwarded_but_not_echoed(tmp_path):
    buf = io.StringIO()
    console = Console(file=buf, force_terminal=False, width=120)
    orch = _orchestrator(
        "cat >/dev/null; echo 'Loaded cached credentials.' >&2; echo hello",
        console=console,
    )
    chunks: list[OutputChunk] = []

    async def on_output(chunk: OutputChunk) -> None:
        chunks.append(chunk)

    await orch.execute(KEY, tmp_path, "hi", on_output)

    assert any("Loaded cached credentials" in c.text for c in chunks)
    echoed = buf.getvalue()
    assert "hello" in echoed
    assert "Loaded cached credentials" not in echoed


@pytest.mark.asyncio
async def test_missing_tool_raises_process_error(tmp_path):
    provider = GeminiProvider(command="/nonexistent/ai-tool")
    orch = ProcessOrchestrator(provider)
    with pytest.raises(ProcessError):
        await orch.execute(KEY, tmp_path, "hello")
    assert orch.is_running(KEY) is False


@pytest.mark.asyncio
async def test_second_execute_on_running_target_is_rejected(tmp_path):
    orch = _orchestrator("exec sleep 5", kill_grace_seconds=1.0)
    first = asyncio.create_task(orch.execute(KEY, tmp_path, "long"))
    await _wait_for_process(orch, KEY)

    with pytest.raises(TargetBusyError):
        await orch.execute(KEY, tmp_path, "again")
    # Rejected call did not touch history.
    assert len(orch.history(KEY)) == 1

    assert await orch.cancel(KEY) is True
    result = await first
    assert result.success is False
    assert result.error == "Execution cancelled"
    assert orch.is_running(KEY) is False


@pytest.mark.asyncio
async def test_targets_run_independently(tmp_path):
    orch = _orchestrator("exec sleep 5", kill_grace_seconds=1.0)
    slow = asyncio.create_task(orch.execute(KEY, tmp_path, "long"))
    await _wait_for_process(orch, KEY)

    other = asyncio.create_task(orch.execute("octo/other", tmp_path, "long"))
    await _wait_for_process(orch, "octo/other")
    assert orch.is_running(KEY) and orch.is_running("octo/other")

    assert await orch.cancel("octo/other") is True
    await other
    assert orch.is_running(KEY) is True

    await orch.cancel(KEY)
    await slow


@pytest.mark.asyncio
async def test_cancel_escalates_to_kill(tmp_path):
    orch = _orchestrator("trap '' TERM; cat >/dev/null; while :; do sleep 0.1; done", kill_grace_seconds=0.3)
    task = asyncio.create_task(orch.execute(KEY, tmp_path, "stubborn"))
    await _wait_for_process(orch, KEY)
    await asyncio.sleep(0.1)

    assert await orch.cancel(KEY) is True
    result = await asyncio.wait_for(task, timeout=5)
    assert result.success is False


@pytest.mark.asyncio
async def test_cancelled_run_that_exits_cleanly_is_a_failure(tmp_path):
    orch = _orchestrator(
        "trap 'echo partial; exit 0' TERM; cat >/dev/null; while :; do sleep 0.1; done",
        kill_grace_seconds=2.0,
    )
    task = asyncio.create_task(orch.execute(KEY, tmp_path, "long job"))
    await _wait_for_process(orch, KEY)
    await asyncio.sleep(0.2)

    assert await orch.cancel(KEY) is True
    result = await asyncio.wait_for(task, timeout=5)

    assert result.success is False
    assert result.error == "Execution cancelled"
    assert orch.history(KEY) == [ConversationTurn(TurnRole.USER, "long job")]


@pytest.mark.asyncio
async def test_cancel_without_process_returns_false():
    orch = _orchestrator("true")
    assert await orch.cancel(KEY) is False
    assert await orch.cancel(KEY) is False


@pytest.mark.asyncio
async def test_stream_ends_with_terminal_event(tmp_path):
    orch = _orchestrator("cat >/dev/null; echo one; echo two")

    items = [item async for item in orch.stream(KEY, tmp_path, "go")]

    assert isinstance(items[-1], StreamFinished)
    assert items[-1].result is not None and items[-1].result.success
    text = "".join(i.text for i in items[:-1] if isinstance(i, OutputChunk))
    assert text == "one\ntwo\n"


@pytest.mark.asyncio
async def test_stream_reports_start_failure(tmp_path):
    orch = ProcessOrchestrator(GeminiProvider(command="/nonexistent/ai-tool"))
    items = [item async for item in orch.stream(KEY, tmp_path, "go")]
    assert len(items) == 1
    assert isinstance(items[0].error, ProcessError)


@pytest.mark.asyncio
async def test_is_available_probe():
    assert await ProcessOrchestrator(GeminiProvider(command="true")).is_available() is True
    assert await ProcessOrchestrator(GeminiProvider(command="false")).is_available() is False
    assert await ProcessOrchestrator(GeminiProvider(command="/nonexistent/ai-tool")).is_available() is False


@pytest.mark.asyncio
async def test_is_available_is_bounded():
    class SlowProbe(GeminiProvider):
        def version_command(self) -> list[str]:
            return ["sleep", "5"]

    orch = ProcessOrchestrator(SlowProbe(command="true"), probe_timeout_seconds=0.2)
    assert await asyncio.wait_for(orch.is_available(), timeout=2) is False


def test_start_session_creates_empty_record():
    orch = _orchestrator("true")
    session = orch.start_session(KEY)
    assert session.history == []
    assert orch.start_session(KEY) is session
