"""Repository state manager.

Owns the on-disk working copies under ``repos_dir/<owner>/<name>`` and
drives ``git`` as a subprocess for clone/pull, commit/push, rollback
with force-push, history and diffs.

Mutating operations on one target are serialized by a per-target lock;
different targets proceed concurrently. Credentials are embedded in the
remote URL and rewritten before every push so rotated tokens take
effect, and are redacted from logs and errors.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Any

from .errors import GitCommandError, InvalidPayloadError, RepositoryNotClonedError
from .models import CommitRecord, CommitResult, Target

logger = logging.getLogger(__name__)

_HASH_RE = re.compile(r"^[0-9a-fA-F]{4,40}$")
_SHORTSTAT_RE = re.compile(
    r"(\d+) files? changed"
    r"(?:, (\d+) insertions?\(\+\))?"
    r"(?:, (\d+) deletions?\(-\))?"
)
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"

PRIMARY_BRANCH = "main"
FALLBACK_BRANCH = "master"
DEFAULT_REMOTE_TEMPLATE = "https://{auth}{host}/{owner}/{repo}.git"


def _redact(text: str, secrets: tuple[str, ...]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


def _parse_shortstat(text: str) -> dict[str, int]:
    match = _SHORTSTAT_RE.search(text)
    if not match:
        return {"changes": 0, "insertions": 0, "deletions": 0}
    return {
        "changes": int(match.group(1)),
        "insertions": int(match.group(2) or 0),
        "deletions": int(match.group(3) or 0),
    }


def validate_commit_hash(commit_hash: Any, kind: str = "commitHash") -> str:
    """Accept 4-40 hex characters; anything else is rejected before git sees it."""
    if not isinstance(commit_hash, str) or not _HASH_RE.match(commit_hash):
        raise InvalidPayloadError(kind, "commitHash", "must be a 4-40 character hex commit hash")
    return commit_hash


class RepositoryManager:
    """Git operations wrapper for cloning, committing, pushing, and rollback."""

    def __init__(
        self,
        repos_dir: str | Path,
        *,
        git_host: str = "github.com",
        author_name: str = "Remote Dev System",
        author_email: str = "remote-dev@localhost",
        remote_template: str = DEFAULT_REMOTE_TEMPLATE,
        git_timeout_seconds: float = 600.0,
    ) -> None:
        self._repos_dir = Path(repos_dir)
        self._repos_dir.mkdir(parents=True, exist_ok=True)
        self._git_host = git_host
        self._author_name = author_name
        self._author_email = author_email
        self._remote_template = remote_template
        self._git_timeout = git_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def repos_dir(self) -> Path:
        return self._repos_dir

    def resolve_path(self, owner: str, name: str) -> Path:
        """Map (owner, name) to its working copy path. No I/O."""
        target = Target(owner, name)
        return self._repos_dir / target.owner / target.name

    def remote_url(self, owner: str, name: str, credential: str | None) -> str:
        auth = f"{credential}@" if credential else ""
        return self._remote_template.format(
            auth=auth, host=self._git_host, owner=owner, repo=name,
        )

    def _working_copy(self, owner: str, name: str) -> Path:
        path = self.resolve_path(owner, name)
        if not path.is_dir():
            raise RepositoryNotClonedError(f"{owner}/{name}")
        return path

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ── git plumbing ──

    async def _run_git(
        self,
        args: list[str],
        cwd: Path | None,
        secrets: tuple[str, ...] = (),
    ) -> tuple[int, str, str]:
        """Run git and return ``(returncode, stdout, stderr)``."""
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        logger.debug("git %s (cwd=%s)", _redact(" ".join(args), secrets), cwd)
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self._git_timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(
                [_redact(a, secrets) for a in args], -1,
                f"timed out after {self._git_timeout}s",
            )
        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace"),
            _redact(stderr_bytes.decode("utf-8", errors="replace"), secrets),
        )

    async def _git(
        self,
        *args: str,
        cwd: Path | None,
        secrets: tuple[str, ...] = (),
    ) -> str:
        """Run git, raising GitCommandError on a non-zero exit."""
        arg_list = list(args)
        rc, stdout, stderr = await self._run_git(arg_list, cwd, secrets)
        if rc != 0:
            redacted = [_redact(a, secrets) for a in arg_list]
            logger.warning("git %s failed rc=%d: %s", " ".join(redacted), rc, stderr.strip())
            raise GitCommandError(redacted, rc, stderr)
        return stdout

    async def current_branch(self, path: Path) -> str:
        """Return the checked-out branch, or 'main' if it cannot be resolved."""
        rc, stdout, _ = await self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], path)
        branch = stdout.strip()
        if rc != 0 or not branch:
            return PRIMARY_BRANCH
        return branch

    async def _set_remote(self, path: Path, owner: str, name: str, credential: str | None) -> None:
        url = self.remote_url(owner, name, credential)
        await self._git(
            "remote", "set-url", "origin", url,
            cwd=path, secrets=(credential or "",),
        )

    # ── Operations ──

    async def clone_or_pull(
        self,
        owner: str,
        name: str,
        credential: str | None,
    ) -> dict[str, str]:
        """Clone the repository, or pull it if a working copy exists."""
        path = self.resolve_path(owner, name)
        secrets = (credential or "",)
        async with self._lock(f"{owner}/{name}"):
            if path.exists():
                if credential:
                    await self._set_remote(path, owner, name, credential)
                try:
                    await self._git(
                        "pull", "--no-rebase", "origin", PRIMARY_BRANCH,
                        cwd=path, secrets=secrets,
                    )
                except GitCommandError:
                    logger.info(
                        "Pull of %s failed for %s/%s; trying %s",
                        PRIMARY_BRANCH, owner, name, FALLBACK_BRANCH,
                    )
                    await self._git(
                        "pull", "--no-rebase", "origin", FALLBACK_BRANCH,
                        cwd=path, secrets=secrets,
                    )
                logger.info("Pulled %s/%s into %s", owner, name, path)
                return {"action": "pulled", "path": str(path)}

            path.parent.mkdir(parents=True, exist_ok=True)
            await self._git(
                "clone", self.remote_url(owner, name, credential), str(path),
                cwd=None, secrets=secrets,
            )
            logger.info("Cloned %s/%s into %s", owner, name, path)
            return {"action": "cloned", "path": str(path)}

    async def commit_and_push(
        self,
        owner: str,
        name: str,
        message: str,
        credential: str | None,
    ) -> CommitResult:
        """Stage everything, commit with *message*, and push.

        A clean working tree returns CommitResult(committed=False)
        without creating an empty commit.
        """
        secrets = (credential or "",)
        async with self._lock(f"{owner}/{name}"):
            path = self._working_copy(owner, name)
            await self._git("config", "user.email", self._author_email, cwd=path)
            await self._git("config", "user.name", self._author_name, cwd=path)
            await self._git("add", "-A", cwd=path)

            status = await self._git("status", "--porcelain", cwd=path)
            if not status.strip():
                logger.info("No changes to commit for %s/%s", owner, name)
                return CommitResult(committed=False, reason="No changes to commit")

            await self._git("commit", "-m", message, cwd=path)
            commit_hash = (await self._git("rev-parse", "HEAD", cwd=path)).strip()
            stat = await self._git("show", "--shortstat", "--format=", "HEAD", cwd=path)
            branch = await self.current_branch(path)

            await self._set_remote(path, owner, name, credential)
            await self._git("push", "origin", branch, cwd=path, secrets=secrets)
            logger.info(
                "Committed and pushed %s/%s %s on %s", owner, name, commit_hash[:7], branch,
            )
            return CommitResult(
                committed=True,
                hash=commit_hash,
                branch=branch,
                summary=_parse_shortstat(stat),
            )

    async def rollback_to_commit(
        self,
        owner: str,
        name: str,
        commit_hash: str,
        credential: str | None,
    ) -> dict[str, Any]:
        """Hard-reset to *commit_hash* and force-push, rewriting remote history.

        Destructive and irreversible from the remote's point of view.
        """
        validate_commit_hash(commit_hash, "rollback")
        secrets = (credential or "",)
        async with self._lock(f"{owner}/{name}"):
            path = self._working_copy(owner, name)
            await self._git("rev-parse", "--verify", f"{commit_hash}^{{commit}}", cwd=path)
            await self._git("reset", "--hard", commit_hash, cwd=path)
            branch = await self.current_branch(path)
            await self._set_remote(path, owner, name, credential)
            await self._git("push", "--force", "origin", branch, cwd=path, secrets=secrets)
            logger.warning(
                "Rolled back %s/%s to %s and force-pushed %s", owner, name, commit_hash, branch,
            )
            return {"success": True, "rolledBackTo": commit_hash}

    async def get_commit_history(
        self,
        owner: str,
        name: str,
        limit: int = 20,
    ) -> list[CommitRecord]:
        """Return up to *limit* commits, most recent first."""
        path = self.resolve_path(owner, name)
        if not path.exists():
            return []
        fmt = _FIELD_SEP.join(("%H", "%an", "%aI", "%s")) + _RECORD_SEP
        rc, stdout, stderr = await self._run_git(
            ["log", f"--max-count={int(limit)}", f"--format={fmt}"], path,
        )
        if rc != 0:
            if "does not have any commits" in stderr:
                return []
            raise GitCommandError(["log"], rc, stderr)

        records: list[CommitRecord] = []
        for raw in stdout.split(_RECORD_SEP):
            raw = raw.strip("\n")
            if not raw:
                continue
            parts = raw.split(_FIELD_SEP)
            if len(parts) != 4:
                continue
            commit_hash, author, date, subject = parts
            records.append(CommitRecord(
                hash=commit_hash, message=subject, date=date, author=author,
            ))
        return records

    async def get_commit_diff(self, owner: str, name: str, commit_hash: str) -> str:
        """Return the diff between *commit_hash* and its parent.

        A root commit has no parent; its own patch is returned instead.
        """
        validate_commit_hash(commit_hash, "get_diff")
        path = self._working_copy(owner, name)
        await self._git("rev-parse", "--verify", f"{commit_hash}^{{commit}}", cwd=path)
        rc, _, _ = await self._run_git(
            ["rev-parse", "--verify", "--quiet", f"{commit_hash}^"], path,
        )
        if rc == 0:
            return await self._git("diff", f"{commit_hash}^", commit_hash, cwd=path)
        return await self._git("show", "--format=", "--patch", commit_hash, cwd=path)
