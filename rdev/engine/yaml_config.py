"""YAML configuration loader.

Overlays a single YAML file on top of the environment-derived
AgentConfig. Credentials are never stored in the file itself; the
``*_env`` keys name the environment variable to read them from.

Example YAML:
    server:
      host: 127.0.0.1
      port: 3001
      shared_secret_env: SHARED_SECRET

    repositories:
      dir: ~/remote-dev/repos
      git_host: github.com
      github_token_env: GITHUB_TOKEN
      auto_commit: true
      author_name: Remote Dev System
      author_email: remote-dev@localhost

    tool:
      command: gemini
      args: [--yolo]
      noise_patterns: ["Loaded cached credentials"]
      probe_timeout_seconds: 2
      kill_grace_seconds: 5

    logging:
      level: DEBUG
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import AgentConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_KNOWN_SECTIONS = {"server", "repositories", "tool", "logging"}

CONFIG_FILENAMES = ("rdev.yaml", "rdev.yml")


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Return the first rdev.yaml/rdev.yml found in *cwd*, if any."""
    base = cwd or Path.cwd()
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.exists():
            logger.info("Auto-discovered config: %s", candidate)
            return candidate
    return None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(reason=f"YAML section '{name}' must be a mapping")
    return value


def _env_secret(section: dict[str, Any], key: str) -> str | None:
    env_name = section.get(key)
    if not env_name:
        return None
    value = os.environ.get(str(env_name))
    if not value:
        logger.warning("Config names %s=%s but it is not set", key, env_name)
    return value or None


def load_yaml_config(
    path: str | Path,
    base: AgentConfig | None = None,
) -> AgentConfig:
    """Load a YAML config file and overlay it on *base*.

    When *base* is None, AgentConfig.from_env() supplies the defaults,
    so YAML values take precedence over environment variables.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path)
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(reason=f"{path} must contain a YAML mapping")

    unknown = sorted(set(raw) - _KNOWN_SECTIONS)
    if unknown:
        logger.warning(
            "load_yaml_config: ignoring unknown sections in %s: %s",
            path.name, ", ".join(unknown),
        )

    config = base if base is not None else AgentConfig.from_env()
    updates: dict[str, Any] = {}

    server = _section(raw, "server")
    if "host" in server:
        updates["host"] = str(server["host"])
    if "port" in server:
        updates["port"] = int(server["port"])
    secret = _env_secret(server, "shared_secret_env")
    if secret:
        updates["shared_secret"] = secret

    repos = _section(raw, "repositories")
    if "dir" in repos:
        updates["repos_dir"] = str(repos["dir"])
    if "git_host" in repos:
        updates["git_host"] = str(repos["git_host"])
    if "auto_commit" in repos:
        updates["auto_commit"] = bool(repos["auto_commit"])
    if "author_name" in repos:
        updates["commit_author_name"] = str(repos["author_name"])
    if "author_email" in repos:
        updates["commit_author_email"] = str(repos["author_email"])
    token = _env_secret(repos, "github_token_env")
    if token:
        updates["github_token"] = token

    tool = _section(raw, "tool")
    if "command" in tool:
        updates["tool_command"] = str(tool["command"])
    if "args" in tool:
        updates["tool_args"] = [str(a) for a in (tool["args"] or [])]
    if "noise_patterns" in tool:
        updates["noise_patterns"] = [str(p) for p in (tool["noise_patterns"] or [])]
    if "probe_timeout_seconds" in tool:
        updates["probe_timeout_seconds"] = float(tool["probe_timeout_seconds"])
    if "kill_grace_seconds" in tool:
        updates["kill_grace_seconds"] = float(tool["kill_grace_seconds"])

    logging_raw = _section(raw, "logging")
    if "level" in logging_raw:
        updates["log_level"] = str(logging_raw["level"]).upper()

    logger.info(
        "Parsed YAML config %s: overrides %s",
        path.name, ", ".join(sorted(updates)) if updates else "(none)",
    )
    return dataclasses.replace(config, **updates)
