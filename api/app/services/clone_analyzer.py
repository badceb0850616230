"""Primary acquisition path: analyze a scoped clone snapshot.

History is streamed out of ``git log`` one record at a time straight into the
attribution tally. The root commit is only trusted for a full-history
fingerprint when the snapshot is not shallow.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Optional

from app.models.scan import AttributionTally, ScanResult, SourcePath
from app.services.attribution_service import classify_commit
from app.services.fingerprint_service import derive_fingerprint
from app.services.indicator_service import detect_indicators
from app.services.repo_ref import RepoRef
from app.services.scan_errors import AcquisitionError
from app.services.scoring_service import compose
from app.services.snapshot_service import RepoSnapshot, SnapshotArena, git_env, kill_process, run_git

log = logging.getLogger(__name__)

RECORD_SEP = "\x1e"
FIELD_SEP = "\x1f"
LOG_FORMAT = f"--format=%H{FIELD_SEP}%an{FIELD_SEP}%aI{FIELD_SEP}%B{RECORD_SEP}"
_READ_CHUNK = 64 * 1024


def _parse_record(raw: str) -> Optional[tuple[str, str, Optional[datetime], str]]:
    record = raw.strip("\n")
    if not record:
        return None
    parts = record.split(FIELD_SEP, 3)
    if len(parts) != 4:
        return None
    commit_hash, author, date, message = parts
    try:
        timestamp: Optional[datetime] = datetime.fromisoformat(date.strip())
    except ValueError:
        timestamp = None
    return commit_hash.strip(), author, timestamp, message


async def stream_git_log(root: Path) -> AsyncIterator[tuple[str, str, Optional[datetime], str]]:
    """Yield (hash, author, timestamp, message) newest first."""
    proc = await asyncio.create_subprocess_exec(
        "git",
        "log",
        LOG_FORMAT,
        "HEAD",
        cwd=str(root),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=git_env(),
    )
    assert proc.stdout is not None
    buffer = ""
    try:
        while True:
            chunk = await proc.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            buffer += chunk.decode("utf-8", errors="replace")
            *records, buffer = buffer.split(RECORD_SEP)
            for raw in records:
                parsed = _parse_record(raw)
                if parsed is not None:
                    yield parsed
        parsed = _parse_record(buffer)
        if parsed is not None:
            yield parsed
        stderr = await proc.stderr.read() if proc.stderr is not None else b""
        if await proc.wait() != 0:
            raise AcquisitionError(f"git log failed: {stderr.decode('utf-8', errors='replace')[:200]}")
    finally:
        kill_process(proc)
        if proc.returncode is None:
            await proc.wait()


async def has_commits(root: Path) -> bool:
    out = await run_git(["rev-parse", "--verify", "--quiet", "HEAD"], cwd=root, timeout=15)
    return out.returncode == 0


async def root_commit(root: Path) -> Optional[str]:
    out = await run_git(["rev-list", "--max-parents=0", "HEAD"], cwd=root, timeout=30)
    if out.returncode != 0:
        return None
    lines = [line.strip() for line in out.stdout.splitlines() if line.strip()]
    # Merged unrelated histories have several roots; the last listed is the oldest.
    return lines[-1] if lines else None


async def tally_history(root: Path, since: Optional[datetime] = None) -> AttributionTally:
    tally = AttributionTally()
    if not await has_commits(root):
        return tally
    async with aclosing(stream_git_log(root)) as records:
        async for commit_hash, author, timestamp, message in records:
            if since is not None and timestamp is not None and timestamp < since:
                continue
            tally.add(classify_commit(commit_hash, message, author=author, timestamp=timestamp))
    return tally


class CloneAnalyzer:
    def __init__(self, arena: SnapshotArena) -> None:
        self._arena = arena

    async def analyze(
        self,
        ref: RepoRef,
        since: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> ScanResult:
        async with self._arena.acquire(ref, since=since, timeout=timeout) as snapshot:
            return await self.analyze_snapshot(ref, snapshot, since=since)

    async def analyze_snapshot(
        self,
        ref: RepoRef,
        snapshot: RepoSnapshot,
        *,
        since: Optional[datetime] = None,
    ) -> ScanResult:
        tally = await tally_history(snapshot.root, since)
        root_id = await root_commit(snapshot.root)
        full_history = bool(root_id) and not snapshot.is_shallow

        remote = snapshot.remote_identifier or ref.remote_identifier
        if not remote and not full_history:
            remote = str(snapshot.root)
        fingerprint = derive_fingerprint(
            remote_identifier=remote,
            root_commit_id=root_id,
            full_history=full_history,
        )

        # A depth-limited clone without a cutoff may have cut history short.
        truncated = snapshot.is_shallow and since is None
        indicators = await asyncio.to_thread(detect_indicators, snapshot, tally.ratio)
        score = compose(tally.ratio, indicators)
        log.info(
            "analyzed %s: %d commit(s), ratio=%.2f, points=%d, mode=%s",
            ref.display_name,
            tally.total_commits,
            tally.ratio,
            score.points,
            fingerprint.mode.value,
        )
        result = ScanResult.from_parts(
            fingerprint=fingerprint.value,
            fingerprint_mode=fingerprint.mode,
            identity_key=fingerprint.identity_key,
            repo_name=ref.display_name,
            tally=tally,
            indicators=indicators,
            score=score,
            source_path=SourcePath.CLONE,
            partial=truncated,
            total_commits_hint=None if truncated else tally.total_commits,
        )
        if root_id:
            result.oldest_commit_id = root_id
        return result
