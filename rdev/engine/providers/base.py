"""Abstract base for external AI tool providers.

A provider only describes *how* to launch its CLI: the argv, the
stdin payload, and the version probe. Process lifetime, streaming and
conversation history belong to the ProcessOrchestrator.
"""
from __future__ import annotations

import abc
import logging
import shutil

logger = logging.getLogger(__name__)


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'gemini')."""

    @property
    @abc.abstractmethod
    def command(self) -> str:
        """Resolved binary that will be spawned."""

    @abc.abstractmethod
    def build_command(self, prompt: str) -> tuple[list[str], bytes | None]:
        """Build the argv and optional stdin payload for one invocation."""

    def build_env(self) -> dict[str, str] | None:
        """Subprocess environment, or None to inherit the parent's."""
        return None

    def version_command(self) -> list[str]:
        """Argv for the bounded availability probe."""
        return [self.command, "--version"]

    def is_noise(self, text: str) -> bool:
        """Whether an output chunk is informational noise.

        Noise is kept out of the operator console but still forwarded
        to callers.
        """
        return False

    def resolve_command(self, command: str) -> str:
        """Return the configured provider binary, logging when it is not on PATH.

        A command that is not on PATH is kept as configured so errors
        name what the operator set.
        """
        if shutil.which(command) is None:
            logger.debug("Command %s not found on PATH for provider %s", command, self.name)
        return command
