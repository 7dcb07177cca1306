"""Core data models for targets, conversation turns, and results."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidTargetError


def _is_safe_component(value: str) -> bool:
    if not value or value in (".", ".."):
        return False
    if "/" in value or "\\" in value or "\x00" in value:
        return False
    return not value.startswith("-")


@dataclass(frozen=True)
class Target:
    """A repository working directory identified by (owner, name)."""
    owner: str
    name: str

    def __post_init__(self) -> None:
        if not (
            isinstance(self.owner, str)
            and isinstance(self.name, str)
            and _is_safe_component(self.owner)
            and _is_safe_component(self.name)
        ):
            raise InvalidTargetError(str(self.owner), str(self.name))

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.key


class TurnRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ConversationTurn:
    role: TurnRole
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "text": self.text}


@dataclass
class ExecutionResult:
    """Outcome of one tool invocation.

    A non-zero exit is a normal result (success=False), not an exception.
    """
    success: bool
    output: str
    exit_code: int | None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "output": self.output,
            "exitCode": self.exit_code,
        }
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class CommitRecord:
    hash: str
    message: str
    date: str
    author: str

    @property
    def short_hash(self) -> str:
        return self.hash[:7]

    def to_dict(self) -> dict[str, str]:
        return {
            "hash": self.hash,
            "shortHash": self.short_hash,
            "message": self.message,
            "date": self.date,
            "author": self.author,
        }


@dataclass
class CommitResult:
    committed: bool
    hash: str | None = None
    branch: str | None = None
    reason: str | None = None
    summary: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        if not self.committed:
            return {"committed": False, "reason": self.reason}
        return {
            "committed": True,
            "hash": self.hash,
            "summary": dict(self.summary),
            "branch": self.branch,
        }
