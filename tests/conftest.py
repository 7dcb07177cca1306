from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from rdev.engine.repository import RepositoryManager

GIT_IDENTITY = ["-c", "user.name=Test User", "-c", "user.email=test@example.com"]


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and assertions."""
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


@pytest.fixture
def remotes_dir(tmp_path: Path) -> Path:
    return tmp_path / "remotes"


@pytest.fixture
def remote_repo(tmp_path: Path, remotes_dir: Path) -> Path:
    """A bare ``octo/demo`` remote on ``main`` with one commit (README.md)."""
    bare = remotes_dir / "octo" / "demo.git"
    bare.mkdir(parents=True)
    git(bare, "init", "--bare")
    git(bare, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    git(tmp_path, "clone", str(bare), str(seed))
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    (seed / "README.md").write_text("# demo\n", encoding="utf-8")
    git(seed, "add", "README.md")
    git(seed, "commit", "-m", "Initial commit")
    git(seed, "push", "origin", "HEAD:main")
    return bare


@pytest.fixture
def repo_manager(tmp_path: Path, remotes_dir: Path, remote_repo: Path) -> RepositoryManager:
    template = str(remotes_dir) + "/{owner}/{repo}.git"
    return RepositoryManager(tmp_path / "repos", remote_template=template)
