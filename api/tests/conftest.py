"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# The app module builds its store at import; keep it off disk for tests.
os.environ.setdefault("SCAN_DATABASE_URL", "memory")


def git(cwd: Path, *args: str, env: dict[str, str] | None = None) -> str:
    full_env = dict(os.environ)
    full_env.update(
        {
            "GIT_AUTHOR_NAME": "Test Author",
            "GIT_AUTHOR_EMAIL": "author@example.com",
            "GIT_COMMITTER_NAME": "Test Author",
            "GIT_COMMITTER_EMAIL": "author@example.com",
            "GIT_CONFIG_NOSYSTEM": "1",
            "HOME": str(cwd),
        }
    )
    if env:
        full_env.update(env)
    out = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        env=full_env,
        check=True,
        capture_output=True,
        text=True,
    )
    return out.stdout


def commit_file(repo: Path, name: str, content: str, message: str, *, date: str | None = None) -> None:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    env = {"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date} if date else None
    git(repo, "commit", "-q", "-m", message, env=env)


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """An empty initialized repository on branch ``main``."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q", "-b", "main")
    return repo


@pytest.fixture
def run_git():
    return git


@pytest.fixture
def make_commit():
    return commit_file
