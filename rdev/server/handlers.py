"""Message handlers bound to the orchestrator and repository manager.

Each handler is ``async def handler(payload, emit) -> result`` where
``emit(event)`` forwards a progress event to the requesting connection.
Whatever a handler returns becomes the ``<kind>_result`` payload; any
exception it raises becomes an ``error`` reply.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from rdev.adapters.events import ProgressEvent, StreamFinished, event_to_dict
from rdev.engine.config import AgentConfig, EmitCallback
from rdev.engine.errors import InvalidPayloadError
from rdev.engine.models import Target
from rdev.engine.orchestrator import ProcessOrchestrator
from rdev.engine.repository import RepositoryManager, validate_commit_hash

from . import protocol

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], EmitCallback], Awaitable[Any]]

DEFAULT_COMMIT_MESSAGE = "Remote Dev changes"
DEFAULT_COMMIT_LIMIT = 20
MAX_COMMIT_LIMIT = 1000


def _require_str(payload: dict[str, Any], kind: str, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidPayloadError(kind, key)
    return value


def _target(payload: dict[str, Any], kind: str) -> Target:
    return Target(_require_str(payload, kind, "owner"), _require_str(payload, kind, "repo"))


def auto_commit_message(prompt: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return f"[Remote Dev] {prompt[:50]}...\n\nTimestamp: {stamp}"


class AgentHandlers:
    """The handler table served over the agent connection."""

    def __init__(
        self,
        orchestrator: ProcessOrchestrator,
        repositories: RepositoryManager,
        config: AgentConfig,
    ) -> None:
        self._orchestrator = orchestrator
        self._repos = repositories
        self._config = config

    @property
    def _credential(self) -> str | None:
        return self._config.github_token

    def table(self) -> dict[str, Handler]:
        return {
            protocol.CLONE_REPO: self.clone_repo,
            protocol.GET_COMMITS: self.get_commits,
            protocol.GET_DIFF: self.get_diff,
            protocol.EXECUTE_COMMAND: self.execute_command,
            protocol.COMMIT_CHANGES: self.commit_changes,
            protocol.ROLLBACK: self.rollback,
            protocol.CANCEL: self.cancel,
            protocol.START_SESSION: self.start_session,
        }

    async def clone_repo(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, str]:
        target = _target(payload, protocol.CLONE_REPO)
        await emit(event_to_dict(ProgressEvent(stage="cloning", message=f"Cloning {target}...")))
        result = await self._repos.clone_or_pull(target.owner, target.name, self._credential)
        await emit(event_to_dict(ProgressEvent(stage="done", message=f"Repository {result['action']}")))
        return result

    async def get_commits(self, payload: dict[str, Any], emit: EmitCallback) -> list[dict[str, str]]:
        target = _target(payload, protocol.GET_COMMITS)
        limit = payload.get("limit", DEFAULT_COMMIT_LIMIT)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidPayloadError(protocol.GET_COMMITS, "limit", "must be a positive integer")
        records = await self._repos.get_commit_history(
            target.owner, target.name, min(limit, MAX_COMMIT_LIMIT),
        )
        return [r.to_dict() for r in records]

    async def get_diff(self, payload: dict[str, Any], emit: EmitCallback) -> str:
        target = _target(payload, protocol.GET_DIFF)
        commit_hash = validate_commit_hash(payload.get("commitHash"), protocol.GET_DIFF)
        return await self._repos.get_commit_diff(target.owner, target.name, commit_hash)

    async def execute_command(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, Any]:
        target = _target(payload, protocol.EXECUTE_COMMAND)
        prompt = _require_str(payload, protocol.EXECUTE_COMMAND, "prompt")
        cwd = self._repos.resolve_path(target.owner, target.name)

        await emit(event_to_dict(ProgressEvent(
            stage="starting", message=f"Starting {self._orchestrator.provider.name}...",
        )))

        result = None
        async for item in self._orchestrator.stream(target.key, cwd, prompt):
            if isinstance(item, StreamFinished):
                if item.error is not None:
                    raise item.error
                result = item.result
            else:
                await emit(event_to_dict(item))

        if result is None or not result.success:
            error = result.error if result is not None else None
            return {"success": False, "error": error or "Tool execution failed"}

        if not self._config.auto_commit:
            return {"success": True, "output": result.output}

        await emit(event_to_dict(ProgressEvent(stage="committing", message="Committing changes...")))
        commit = await self._repos.commit_and_push(
            target.owner, target.name, auto_commit_message(prompt), self._credential,
        )
        done = "Changes pushed successfully!" if commit.committed else commit.reason
        await emit(event_to_dict(ProgressEvent(stage="done", message=done)))
        return {"success": True, "output": result.output, "commit": commit.to_dict()}

    async def commit_changes(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, Any]:
        target = _target(payload, protocol.COMMIT_CHANGES)
        message = payload.get("message") or DEFAULT_COMMIT_MESSAGE
        if not isinstance(message, str):
            raise InvalidPayloadError(protocol.COMMIT_CHANGES, "message", "must be a string")
        commit = await self._repos.commit_and_push(
            target.owner, target.name, message, self._credential,
        )
        return commit.to_dict()

    async def rollback(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, Any]:
        target = _target(payload, protocol.ROLLBACK)
        commit_hash = validate_commit_hash(payload.get("commitHash"), protocol.ROLLBACK)
        await emit(event_to_dict(ProgressEvent(
            stage="rolling_back", message=f"Rolling back to {commit_hash}...",
        )))
        result = await self._repos.rollback_to_commit(
            target.owner, target.name, commit_hash, self._credential,
        )
        await emit(event_to_dict(ProgressEvent(stage="done", message="Rollback complete!")))
        return result

    async def cancel(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, bool]:
        target = _target(payload, protocol.CANCEL)
        cancelled = await self._orchestrator.cancel(target.key)
        logger.info("Cancel requested for %s: cancelled=%s", target, cancelled)
        return {"cancelled": cancelled}

    async def start_session(self, payload: dict[str, Any], emit: EmitCallback) -> dict[str, Any]:
        target = _target(payload, protocol.START_SESSION)
        session = self._orchestrator.start_session(target.key)
        await emit(event_to_dict(ProgressEvent(
            stage="info", type="info", text="Context session initialized.",
        )))
        return {"ready": True, "turns": len(self._orchestrator.history(session.key))}


def build_handlers(
    orchestrator: ProcessOrchestrator,
    repositories: RepositoryManager,
    config: AgentConfig,
) -> dict[str, Handler]:
    return AgentHandlers(orchestrator, repositories, config).table()
