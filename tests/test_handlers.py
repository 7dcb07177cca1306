"""Tests for the handler table with mocked engines."""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from rdev.adapters.events import OutputChunk, StreamFinished
from rdev.engine.config import AgentConfig
from rdev.engine.errors import InvalidPayloadError, InvalidTargetError, TargetBusyError
from rdev.engine.models import CommitRecord, CommitResult, ExecutionResult
from rdev.engine.orchestrator import TargetSession
from rdev.server.handlers import AgentHandlers, auto_commit_message, build_handlers

PAYLOAD = {"owner": "octo", "repo": "demo"}


def _make(auto_commit: bool = True, tmp_path: Path | None = None):
    orchestrator = MagicMock()
    orchestrator.provider.name = "gemini"
    orchestrator.history.return_value = []
    orchestrator.cancel = AsyncMock(return_value=False)

    repos = MagicMock()
    repos.resolve_path.return_value = Path("/repos/octo/demo")
    repos.clone_or_pull = AsyncMock(return_value={"action": "cloned", "path": "/repos/octo/demo"})
    repos.commit_and_push = AsyncMock(return_value=CommitResult(
        committed=True, hash="a" * 40, branch="main",
        summary={"changes": 1, "insertions": 2, "deletions": 0},
    ))
    repos.rollback_to_commit = AsyncMock(return_value={"success": True, "rolledBackTo": "abc1234"})
    repos.get_commit_history = AsyncMock(return_value=[
        CommitRecord(hash="b" * 40, message="Initial commit", date="2024-01-01T00:00:00+00:00", author="me"),
    ])
    repos.get_commit_diff = AsyncMock(return_value="diff --git a/x b/x\n")

    config = AgentConfig(
        github_token="tok", shared_secret="s3cret", auto_commit=auto_commit,
        repos_dir=str(tmp_path or Path("/tmp")),
    )
    return AgentHandlers(orchestrator, repos, config), orchestrator, repos


class _Recorder:
    def __init__(self) -> None:
        self.events: list[dict] = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)

    @property
    def stages(self) -> list[str]:
        return [e["stage"] for e in self.events]


def test_build_handlers_covers_every_kind():
    handlers, orchestrator, repos = _make()
    table = build_handlers(orchestrator, repos, handlers._config)
    assert set(table) == {
        "clone_repo", "get_commits", "get_diff", "execute_command",
        "commit_changes", "rollback", "cancel", "start_session",
    }


def test_auto_commit_message_format():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    msg = auto_commit_message("x" * 80, now)
    assert msg == f"[Remote Dev] {'x' * 50}...\n\nTimestamp: 2024-05-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_clone_repo_emits_stages():
    handlers, _, repos = _make()
    emit = _Recorder()

    result = await handlers.clone_repo(PAYLOAD, emit)

    assert result == {"action": "cloned", "path": "/repos/octo/demo"}
    assert emit.stages == ["cloning", "done"]
    assert emit.events[1]["message"] == "Repository cloned"
    repos.clone_or_pull.assert_awaited_once_with("octo", "demo", "tok")


@pytest.mark.asyncio
async def test_get_commits_defaults_limit():
    handlers, _, repos = _make()
    result = await handlers.get_commits(PAYLOAD, _Recorder())
    repos.get_commit_history.assert_awaited_once_with("octo", "demo", 20)
    assert result[0]["shortHash"] == "b" * 7


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, -1, "10", True])
async def test_get_commits_rejects_bad_limit(limit):
    handlers, _, _ = _make()
    with pytest.raises(InvalidPayloadError):
        await handlers.get_commits({**PAYLOAD, "limit": limit}, _Recorder())


@pytest.mark.asyncio
async def test_get_diff_validates_hash():
    handlers, _, repos = _make()
    assert await handlers.get_diff({**PAYLOAD, "commitHash": "abc1234"}, _Recorder()) == "diff --git a/x b/x\n"
    with pytest.raises(InvalidPayloadError):
        await handlers.get_diff({**PAYLOAD, "commitHash": "main; rm -rf /"}, _Recorder())
    with pytest.raises(InvalidPayloadError):
        await handlers.get_diff(PAYLOAD, _Recorder())


def _stream_of(*items):
    """Stand-in for ProcessOrchestrator.stream yielding *items*."""
    async def fake_stream(key, cwd, prompt):
        for item in items:
            yield item
    return MagicMock(side_effect=fake_stream)


@pytest.mark.asyncio
async def test_execute_command_streams_and_commits():
    handlers, orchestrator, repos = _make()
    orchestrator.stream = _stream_of(
        OutputChunk(stream="stdout", text="working\n"),
        StreamFinished(result=ExecutionResult(success=True, output="working\n", exit_code=0)),
    )
    emit = _Recorder()

    result = await handlers.execute_command({**PAYLOAD, "prompt": "add README"}, emit)

    assert emit.stages == ["starting", "running", "committing", "done"]
    assert emit.events[1] == {"stage": "running", "type": "stdout", "text": "working\n"}
    assert result["success"] is True
    assert result["output"] == "working\n"
    assert result["commit"]["committed"] is True
    orchestrator.stream.assert_called_once()
    assert orchestrator.stream.call_args.args[:3] == ("octo/demo", Path("/repos/octo/demo"), "add README")
    message = repos.commit_and_push.await_args.args[2]
    assert message.startswith("[Remote Dev] add README...\n\nTimestamp: ")


@pytest.mark.asyncio
async def test_execute_command_without_auto_commit():
    handlers, orchestrator, repos = _make(auto_commit=False)
    orchestrator.stream = _stream_of(
        StreamFinished(result=ExecutionResult(success=True, output="OK", exit_code=0)),
    )
    emit = _Recorder()

    result = await handlers.execute_command({**PAYLOAD, "prompt": "p"}, emit)

    assert result == {"success": True, "output": "OK"}
    repos.commit_and_push.assert_not_awaited()
    assert "committing" not in emit.stages


@pytest.mark.asyncio
async def test_execute_command_failure_skips_commit():
    handlers, orchestrator, repos = _make()
    orchestrator.stream = _stream_of(
        StreamFinished(result=ExecutionResult(success=False, output="", exit_code=1, error="boom")),
    )

    result = await handlers.execute_command({**PAYLOAD, "prompt": "p"}, _Recorder())

    assert result == {"success": False, "error": "boom"}
    repos.commit_and_push.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_command_cancelled_run_skips_commit():
    handlers, orchestrator, repos = _make()
    orchestrator.stream = _stream_of(
        OutputChunk(stream="stdout", text="partial\n"),
        StreamFinished(result=ExecutionResult(
            success=False, output="partial\n", exit_code=0, error="Execution cancelled",
        )),
    )

    result = await handlers.execute_command({**PAYLOAD, "prompt": "p"}, _Recorder())

    assert result == {"success": False, "error": "Execution cancelled"}
    repos.commit_and_push.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_command_start_failure_propagates():
    handlers, orchestrator, repos = _make()
    orchestrator.stream = _stream_of(
        StreamFinished(error=TargetBusyError("octo/demo")),
    )

    with pytest.raises(TargetBusyError):
        await handlers.execute_command({**PAYLOAD, "prompt": "p"}, _Recorder())
    repos.commit_and_push.assert_not_awaited()


@pytest.mark.asyncio
async def test_execute_command_requires_prompt():
    handlers, orchestrator, _ = _make()
    orchestrator.stream = _stream_of()
    with pytest.raises(InvalidPayloadError):
        await handlers.execute_command(PAYLOAD, _Recorder())
    orchestrator.stream.assert_not_called()


@pytest.mark.asyncio
async def test_unsafe_target_is_rejected():
    handlers, _, repos = _make()
    with pytest.raises(InvalidTargetError):
        await handlers.clone_repo({"owner": "..", "repo": "demo"}, _Recorder())
    repos.clone_or_pull.assert_not_awaited()


@pytest.mark.asyncio
async def test_commit_changes_default_message():
    handlers, _, repos = _make()
    result = await handlers.commit_changes(PAYLOAD, _Recorder())
    repos.commit_and_push.assert_awaited_once_with("octo", "demo", "Remote Dev changes", "tok")
    assert result["branch"] == "main"


@pytest.mark.asyncio
async def test_rollback_emits_stages():
    handlers, _, repos = _make()
    emit = _Recorder()
    result = await handlers.rollback({**PAYLOAD, "commitHash": "abc1234"}, emit)
    assert result == {"success": True, "rolledBackTo": "abc1234"}
    assert emit.stages == ["rolling_back", "done"]


@pytest.mark.asyncio
async def test_cancel_reports_flag():
    handlers, orchestrator, _ = _make()
    assert await handlers.cancel(PAYLOAD, _Recorder()) == {"cancelled": False}
    orchestrator.cancel.assert_awaited_once_with("octo/demo")


@pytest.mark.asyncio
async def test_start_session_reports_turns():
    handlers, orchestrator, _ = _make()
    orchestrator.start_session.return_value = TargetSession(key="octo/demo")
    emit = _Recorder()

    result = await handlers.start_session(PAYLOAD, emit)

    assert result == {"ready": True, "turns": 0}
    assert emit.events == [{"stage": "info", "type": "info", "text": "Context session initialized."}]
