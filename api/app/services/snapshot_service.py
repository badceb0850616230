"""Scoped repository snapshots for the clone path.

``SnapshotArena.acquire`` is an async context manager: a remote reference is
cloned into a fresh temp directory that is removed on every exit (normal
return, exception, timeout, cancellation). Local directories are used in
place and never removed. The arena tracks live temp dirs so the app can reap
them on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from app.services.repo_ref import RepoRef
from app.services.scan_errors import AcquisitionError, RepoNotFoundError, ScanTimeoutError

log = logging.getLogger(__name__)

_NOT_FOUND_RE = re.compile(
    r"repository '[^']*' not found"
    r"|repository not found"
    r"|does not exist"
    r"|could not read username"
    r"|authentication failed"
)


@dataclass
class RepoSnapshot:
    root: Path
    branches: list[str] = field(default_factory=list)
    is_shallow: bool = False
    remote_identifier: Optional[str] = None
    temporary: bool = False


@dataclass
class GitOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_git(args: Sequence[str], *, cwd: Optional[Path] = None, timeout: Optional[float] = None) -> GitOutput:
    """Run ``git`` with the given args; kills the process if ``timeout`` expires."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=git_env(),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        kill_process(proc)
        await proc.wait()
        raise
    return GitOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def git_env() -> dict[str, str]:
    env = dict(os.environ)
    # Never block on a credential prompt for a private or missing repo.
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_ASKPASS", "echo")
    return env


def kill_process(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


def clone_args(url: str, dest: Path, *, since: Optional[datetime], depth: int) -> list[str]:
    args = ["clone", "--quiet", "--no-single-branch", "--no-tags"]
    if since is not None:
        args.append(f"--shallow-since={since.strftime('%Y-%m-%d')}")
    else:
        args.extend(["--depth", str(depth)])
    args.extend([url, str(dest)])
    return args


async def list_branches(root: Path) -> list[str]:
    """Local branches as ``name`` and remote-tracking ones as ``remote/name``."""
    out = await run_git(
        ["for-each-ref", "--format=%(refname)", "refs/heads", "refs/remotes"], cwd=root, timeout=15
    )
    if out.returncode != 0:
        return []
    branches = []
    for line in out.stdout.splitlines():
        ref = line.strip()
        if not ref or ref.endswith("/HEAD"):
            continue
        for prefix in ("refs/heads/", "refs/remotes/"):
            if ref.startswith(prefix):
                branches.append(ref[len(prefix):])
                break
    return branches


async def is_shallow_repository(root: Path) -> bool:
    out = await run_git(["rev-parse", "--is-shallow-repository"], cwd=root, timeout=15)
    return out.returncode == 0 and out.stdout.strip() == "true"


async def origin_url(root: Path) -> Optional[str]:
    out = await run_git(["remote", "get-url", "origin"], cwd=root, timeout=15)
    if out.returncode != 0:
        return None
    return out.stdout.strip() or None


class SnapshotArena:
    """Owns the temp directories of every live clone snapshot."""

    def __init__(
        self,
        *,
        tmp_dir: Optional[str] = None,
        clone_timeout_s: float = 120.0,
        clone_depth: int = 500,
    ) -> None:
        self._tmp_dir = tmp_dir
        self._clone_timeout_s = clone_timeout_s
        self._clone_depth = clone_depth
        self._live: set[Path] = set()

    @property
    def live_count(self) -> int:
        return len(self._live)

    def _release(self, path: Path) -> None:
        self._live.discard(path)
        shutil.rmtree(path, ignore_errors=True)

    async def _release_async(self, path: Path) -> None:
        # The removal finishes even if the awaiting task is cancelled again;
        # until then the path stays live so ``reap`` can still find it.
        removal = asyncio.ensure_future(asyncio.to_thread(shutil.rmtree, path, ignore_errors=True))
        removal.add_done_callback(lambda _: self._live.discard(path))
        await asyncio.shield(removal)

    def reap(self) -> int:
        """Remove every live temp dir; returns how many were removed."""
        paths = list(self._live)
        for path in paths:
            self._release(path)
        if paths:
            log.info("reaped %d snapshot(s)", len(paths))
        return len(paths)

    @asynccontextmanager
    async def acquire(
        self,
        ref: RepoRef,
        since: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[RepoSnapshot]:
        if ref.is_local:
            assert ref.local_path is not None
            if not (ref.local_path / ".git").exists():
                raise RepoNotFoundError(f"{ref.local_path} is not a git repository")
            yield RepoSnapshot(
                root=ref.local_path,
                branches=await list_branches(ref.local_path),
                is_shallow=await is_shallow_repository(ref.local_path),
                remote_identifier=await origin_url(ref.local_path),
            )
            return

        if not ref.clone_url:
            raise AcquisitionError(f"{ref.raw} has no clone URL")

        parent = Path(tempfile.mkdtemp(prefix="vibescan-", dir=self._tmp_dir))
        self._live.add(parent)
        try:
            dest = parent / "repo"
            clone_timeout = self._clone_timeout_s if timeout is None else min(timeout, self._clone_timeout_s)
            try:
                out = await run_git(
                    clone_args(ref.clone_url, dest, since=since, depth=self._clone_depth),
                    timeout=clone_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise ScanTimeoutError(f"clone of {ref.display_name} timed out after {clone_timeout:.0f}s") from exc
            except OSError as exc:
                raise AcquisitionError(f"could not run git: {exc}") from exc

            if out.returncode != 0:
                stderr = out.stderr.strip()
                log.debug("clone stderr for %s: %s", ref.display_name, stderr)
                lowered = stderr.lower()
                if _NOT_FOUND_RE.search(lowered):
                    raise RepoNotFoundError(f"repository {ref.display_name} not found")
                # --shallow-since with nothing in range fails; the crawl path handles it.
                raise AcquisitionError(f"git clone failed for {ref.display_name}: {stderr[:200]}")

            yield RepoSnapshot(
                root=dest,
                branches=await list_branches(dest),
                is_shallow=await is_shallow_repository(dest),
                remote_identifier=ref.remote_identifier,
                temporary=True,
            )
        finally:
            await self._release_async(parent)
