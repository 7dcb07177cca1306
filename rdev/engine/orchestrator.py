"""Process orchestrator for the external AI tool.

Runs the tool inside a target's working copy, streams its output as it
arrives, and keeps an append-only conversation history per target so
each invocation carries the prior turns as context.

State is held in one TargetSession per target, created on first
reference and kept for the life of the process. A target is either
Idle or Running; a second execute() while Running is rejected.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from rich.console import Console

from rdev.adapters.event_bus import OutputStream
from rdev.adapters.events import OutputChunk, StreamFinished

from .errors import ProcessError, TargetBusyError
from .models import ConversationTurn, ExecutionResult, TurnRole
from .providers.base import Provider

logger = logging.getLogger(__name__)

# Async output sink. Signature: async def on_output(chunk: OutputChunk) -> None
OutputCallback = Callable[[OutputChunk], Awaitable[None]]

_READ_SIZE = 4096

HISTORY_HEADER = "PREVIOUS MESSAGES:"
CURRENT_HEADER = "CURRENT REQUEST:"


@dataclass
class TargetSession:
    """Per-target state: history and the active process, if any."""
    key: str
    history: list[ConversationTurn] = field(default_factory=list)
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    busy: bool = False
    cancelled: bool = False

    @property
    def running(self) -> bool:
        return self.busy


def compose_prompt(history: list[ConversationTurn], prompt: str) -> str:
    """Prefix prior turns (role-labeled) to the current request."""
    if not history:
        return prompt
    lines = [HISTORY_HEADER]
    for turn in history:
        label = "User" if turn.role is TurnRole.USER else "Assistant"
        lines.append(f"{label}: {turn.text}")
    return "\n".join(lines) + f"\n\n{CURRENT_HEADER}\n{prompt}"


async def _notify(callback: OutputCallback | None, chunk: OutputChunk) -> None:
    """Deliver a chunk, never letting a consumer error stop the pump."""
    if callback is None:
        return
    try:
        await callback(chunk)
    except Exception:
        logger.debug("on_output callback failed", exc_info=True)


class ProcessOrchestrator:
    """Runs the AI tool per target with preserved conversational context."""

    def __init__(
        self,
        provider: Provider,
        *,
        probe_timeout_seconds: float = 2.0,
        kill_grace_seconds: float = 5.0,
        console: Console | None = None,
    ) -> None:
        self._provider = provider
        self._probe_timeout = probe_timeout_seconds
        self._kill_grace = kill_grace_seconds
        self._console = console
        self._sessions: dict[str, TargetSession] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def provider(self) -> Provider:
        return self._provider

    def _session(self, key: str) -> TargetSession:
        session = self._sessions.get(key)
        if session is None:
            session = TargetSession(key=key)
            self._sessions[key] = session
        return session

    def start_session(self, key: str) -> TargetSession:
        """Ensure the target's session exists and return it."""
        return self._session(key)

    def history(self, key: str) -> list[ConversationTurn]:
        """Return a copy of the target's conversation history."""
        session = self._sessions.get(key)
        return list(session.history) if session else []

    def is_running(self, key: str) -> bool:
        session = self._sessions.get(key)
        return bool(session and session.running)

    # ── Execution ──

    async def execute(
        self,
        key: str,
        cwd: str | Path,
        prompt: str,
        on_output: OutputCallback | None = None,
    ) -> ExecutionResult:
        """Run the tool for one prompt in *cwd*.

        Raises TargetBusyError if the target is already Running, and
        ProcessError if the tool cannot be started. A non-zero exit is
        returned as ExecutionResult(success=False).
        """
        session = self._session(key)
        if session.running:
            raise TargetBusyError(key)

        session.busy = True
        try:
            return await self._run(session, cwd, prompt, on_output)
        finally:
            session.busy = False
            session.process = None

    async def _run(
        self,
        session: TargetSession,
        cwd: str | Path,
        prompt: str,
        on_output: OutputCallback | None,
    ) -> ExecutionResult:
        key = session.key
        full_prompt = compose_prompt(session.history, prompt)
        session.history.append(ConversationTurn(TurnRole.USER, prompt))
        session.cancelled = False

        argv, stdin_payload = self._provider.build_command(full_prompt)
        logger.info(
            "Executing %s for %s cwd=%s prompt_chars=%d history_turns=%d",
            self._provider.name, key, cwd, len(prompt), len(session.history) - 1,
        )
        self._echo_banner(key, prompt)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=(
                    asyncio.subprocess.PIPE if stdin_payload is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=self._provider.build_env(),
            )
        except OSError as exc:
            logger.error("Failed to start %s for %s: %s", argv[0], key, exc)
            raise ProcessError(argv[0], str(exc)) from exc

        session.process = proc
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        try:
            await asyncio.gather(
                self._feed_stdin(proc, stdin_payload),
                self._pump(proc.stdout, "stdout", stdout_parts, on_output),
                self._pump(proc.stderr, "stderr", stderr_parts, on_output),
            )
            exit_code = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        output = "".join(stdout_parts)
        logger.info(
            "%s finished for %s (exit=%s, stdout_chars=%d, cancelled=%s)",
            self._provider.name, key, exit_code, len(output), session.cancelled,
        )
        if self._console is not None:
            self._console.print(
                f"{self._provider.name} finished (code {exit_code})",
                style="bold", highlight=False,
            )

        # A cancelled run is a failure even when the tool exits 0 on SIGTERM.
        if session.cancelled:
            return ExecutionResult(
                success=False, output=output, exit_code=exit_code,
                error="Execution cancelled",
            )

        if exit_code == 0:
            if output.strip():
                session.history.append(
                    ConversationTurn(TurnRole.ASSISTANT, output.strip())
                )
            return ExecutionResult(success=True, output=output, exit_code=0)

        error = "".join(stderr_parts).strip() or f"exited with code {exit_code}"
        return ExecutionResult(
            success=False, output=output, exit_code=exit_code, error=error,
        )

    async def stream(self, key: str, cwd: str | Path, prompt: str) -> AsyncIterator[OutputChunk | StreamFinished]:
        """Run execute() and yield its output, ending with StreamFinished."""
        channel = OutputStream()

        async def _run() -> None:
            try:
                result = await self.execute(key, cwd, prompt, channel.emit)
            except Exception as exc:
                channel.finish(error=exc)
            else:
                channel.finish(result=result)

        task = asyncio.create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        async for item in channel:
            yield item

    @staticmethod
    async def _feed_stdin(
        proc: asyncio.subprocess.Process,
        payload: bytes | None,
    ) -> None:
        if payload is None or proc.stdin is None:
            return
        try:
            proc.stdin.write(payload)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Tool closed stdin before the prompt was fully written")
        finally:
            proc.stdin.close()

    async def _pump(
        self,
        reader: asyncio.StreamReader | None,
        stream_name: str,
        parts: list[str],
        on_output: OutputCallback | None,
    ) -> None:
        if reader is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(_READ_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                parts.append(text)
                self._echo(stream_name, text)
                await _notify(on_output, OutputChunk(stream=stream_name, text=text))
            if not data:
                break

    # ── Operator console ──

    def _echo_banner(self, key: str, prompt: str) -> None:
        if self._console is None:
            return
        self._console.rule(f"{self._provider.name} · {key}")
        self._console.print(f"Prompt: {prompt}", highlight=False, markup=False)

    def _echo(self, stream_name: str, text: str) -> None:
        if self._console is None:
            return
        if stream_name == "stderr" and self._provider.is_noise(text):
            return
        self._console.out(text, end="", highlight=False)

    # ── Cancellation ──

    async def cancel(self, key: str) -> bool:
        """Terminate the target's running process.

        Sends SIGTERM, then SIGKILL if it has not exited within the
        grace period. Returns whether a process was terminated.
        """
        session = self._sessions.get(key)
        proc = session.process if session else None
        if proc is None or proc.returncode is not None:
            return False
        session.cancelled = True
        try:
            proc.terminate()
        except ProcessLookupError:
            return False
        logger.info("Sent terminate to %s process for %s (pid=%s)", self._provider.name, key, proc.pid)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "%s process for %s ignored terminate after %.1fs; killing (pid=%s)",
                self._provider.name, key, self._kill_grace, proc.pid,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        return True

    # ── Availability ──

    async def is_available(self) -> bool:
        """Run a bounded version probe. Never raises."""
        argv = self._provider.version_command()
        proc = None
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            returncode = await asyncio.wait_for(proc.wait(), timeout=self._probe_timeout)
            return returncode == 0
        except asyncio.TimeoutError:
            logger.debug("Version probe %s timed out after %.1fs", argv, self._probe_timeout)
            if proc is not None and proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            return False
        except Exception as exc:
            logger.debug("Version probe %s failed: %s", argv, exc)
            return False

    async def shutdown(self) -> None:
        """Terminate every running process."""
        for key, session in list(self._sessions.items()):
            if session.running:
                await self.cancel(key)


def default_console() -> Console:
    """Console used for the operator echo in server mode."""
    return Console(soft_wrap=True)
