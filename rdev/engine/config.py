"""Configuration loaded from environment variables.

All settings have sensible defaults except the GitHub token and the
shared secret. A ``.env`` file is honoured via python-dotenv.
"""
from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)


# Async progress sink handed to handlers.
# Signature: async def emit(event: dict[str, Any]) -> None
EmitCallback = Callable[[dict[str, Any]], Awaitable[None]]

_TRUE_VALUES = {"1", "true", "yes", "on"}

_ENV_KEYS = (
    "PORT", "HOST", "GITHUB_TOKEN", "SHARED_SECRET", "REPOS_DIR", "GIT_HOST",
)


def load_env_file(path: str | None = None) -> bool:
    """Load a .env file into os.environ without overriding existing vars."""
    if path:
        loaded = load_dotenv(path, override=False)
    else:
        loaded = load_dotenv(override=False)
    if loaded:
        logger.info("Loaded environment file %s", path or ".env")
    return loaded


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in _TRUE_VALUES


@dataclass
class AgentConfig:
    """Agent server configuration."""

    host: str = "0.0.0.0"
    port: int = 3001
    github_token: str | None = field(default=None, repr=False)
    shared_secret: str | None = field(default=None, repr=False)
    repos_dir: str = "./repos"
    git_host: str = "github.com"

    # External AI tool. The full prompt is written to its stdin.
    tool_command: str = "gemini"
    tool_args: list[str] = field(default_factory=lambda: ["--yolo"])
    # Substrings whose stderr chunks are not echoed to the operator console.
    noise_patterns: list[str] = field(
        default_factory=lambda: ["Loaded cached credentials"]
    )
    probe_timeout_seconds: float = 2.0
    kill_grace_seconds: float = 5.0

    # Commit and push after a successful execute_command.
    auto_commit: bool = True
    commit_author_name: str = "Remote Dev System"
    commit_author_email: str = "remote-dev@localhost"

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.repos_dir = str(Path(self.repos_dir).expanduser().resolve())

    def validate(self) -> None:
        """Raise ConfigError when required credentials are missing."""
        missing = []
        if not self.github_token:
            missing.append("GITHUB_TOKEN")
        if not self.shared_secret:
            missing.append("SHARED_SECRET")
        if missing:
            raise ConfigError(missing)

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load configuration from environment variables."""
        overrides = sorted(
            k for k in os.environ
            if k in _ENV_KEYS or k.startswith("RDEV_")
        )
        if overrides:
            # Values are not logged; they include credentials.
            logger.info(
                "AgentConfig.from_env: env overrides: %s", ", ".join(overrides),
            )
        else:
            logger.debug("AgentConfig.from_env: no env overrides, using defaults")

        tool_args_raw = os.getenv("RDEV_TOOL_ARGS")
        config = cls(
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            github_token=os.getenv("GITHUB_TOKEN") or None,
            shared_secret=os.getenv("SHARED_SECRET") or None,
            repos_dir=os.getenv("REPOS_DIR", cls.repos_dir),
            git_host=os.getenv("GIT_HOST", cls.git_host),
            tool_command=os.getenv("RDEV_TOOL_COMMAND", cls.tool_command),
            tool_args=(
                shlex.split(tool_args_raw) if tool_args_raw is not None
                else ["--yolo"]
            ),
            probe_timeout_seconds=float(os.getenv(
                "RDEV_PROBE_TIMEOUT", str(cls.probe_timeout_seconds)
            )),
            kill_grace_seconds=float(os.getenv(
                "RDEV_KILL_GRACE", str(cls.kill_grace_seconds)
            )),
            auto_commit=_env_bool("RDEV_AUTO_COMMIT", cls.auto_commit),
            log_level=os.getenv("RDEV_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "AgentConfig.from_env: host=%s port=%d repos_dir=%s tool=%s auto_commit=%s",
            config.host, config.port, config.repos_dir,
            config.tool_command, config.auto_commit,
        )
        return config


@dataclass
class ClientConfig:
    """Client connection manager configuration."""

    url: str = "ws://127.0.0.1:3001/ws"
    secret: str = field(default="", repr=False)
    request_timeout_seconds: float = 120.0
    reconnect_delay_seconds: float = 2.0
    max_reconnect_delay_seconds: float = 30.0
    max_reconnect_attempts: int = 10

    @classmethod
    def from_env(cls) -> ClientConfig:
        return cls(
            url=os.getenv("RDEV_SERVER_URL", cls.url),
            secret=os.getenv("SHARED_SECRET", ""),
            request_timeout_seconds=float(os.getenv(
                "RDEV_REQUEST_TIMEOUT", str(cls.request_timeout_seconds)
            )),
            reconnect_delay_seconds=float(os.getenv(
                "RDEV_RECONNECT_DELAY", str(cls.reconnect_delay_seconds)
            )),
            max_reconnect_attempts=int(os.getenv(
                "RDEV_MAX_RECONNECT_ATTEMPTS", str(cls.max_reconnect_attempts)
            )),
        )
