"""Gemini CLI provider.

Runs ``gemini --yolo`` inside the target working copy with the full
prompt (history preamble included) fed on stdin, so long prompts never
hit argv length limits or shell quoting.
"""
from __future__ import annotations

import logging
import os

from .base import Provider

logger = logging.getLogger(__name__)

DEFAULT_NOISE_PATTERNS = ("Loaded cached credentials",)


class GeminiProvider(Provider):
    """Provider backed by the Gemini CLI.

    Auth: uses the CLI's built-in auth (cached credentials). If
    api_key_env is set, its value is passed as GEMINI_API_KEY.
    """

    def __init__(
        self,
        command: str = "gemini",
        args: list[str] | None = None,
        noise_patterns: list[str] | tuple[str, ...] = DEFAULT_NOISE_PATTERNS,
        api_key_env: str | None = None,
    ) -> None:
        self._command = self.resolve_command(command or "gemini")
        self._args = list(args) if args is not None else ["--yolo"]
        self._noise_patterns = tuple(noise_patterns)
        self._api_key_env = api_key_env

    @property
    def name(self) -> str:
        return "gemini"

    @property
    def command(self) -> str:
        return self._command

    def build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with optional API key."""
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["GEMINI_API_KEY"] = key
                return env
        return None

    def build_command(self, prompt: str) -> tuple[list[str], bytes | None]:
        return [self._command, *self._args], prompt.encode("utf-8")

    def is_noise(self, text: str) -> bool:
        return any(p in text for p in self._noise_patterns)
