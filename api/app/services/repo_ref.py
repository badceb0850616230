"""Repository reference parsing and --since style time cutoffs.

Accepted references:
- ``github:user/repo``, ``github.com/user/repo``, ``https://github.com/user/repo(.git)``
- ``user/repo`` shorthand (GitHub)
- ``git@github.com:user/repo.git``
- any other ``https://`` / ``ssh://`` / ``git@host:`` git URL (clone path only)
- an existing local directory
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from app.services.fingerprint_service import normalize_remote
from app.services.scan_errors import InvalidRepoReferenceError

_SLUG_PART = r"[A-Za-z0-9_.-]+"
_GITHUB_SLUG_RE = re.compile(rf"^({_SLUG_PART})/({_SLUG_PART})$")
_GITHUB_PREFIXES = (
    "github:",
    "https://github.com/",
    "http://github.com/",
    "https://www.github.com/",
    "github.com/",
    "git@github.com:",
    "ssh://git@github.com/",
)
_GENERIC_URL_RE = re.compile(r"^(https?|ssh|git)://[^\s]+$|^[A-Za-z0-9_.-]+@[A-Za-z0-9_.-]+:[^\s]+$")
_SINCE_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_RELATIVE_SINCE_DAYS = {"6m": 180, "1y": 365, "2y": 730}


@dataclass(frozen=True)
class RepoRef:
    kind: str  # github | url | local
    raw: str
    owner: Optional[str] = None
    name: Optional[str] = None
    clone_url: Optional[str] = None
    remote_identifier: Optional[str] = None
    local_path: Optional[Path] = None

    @property
    def is_github(self) -> bool:
        return self.kind == "github"

    @property
    def is_local(self) -> bool:
        return self.kind == "local"

    @property
    def display_name(self) -> str:
        if self.owner and self.name:
            return f"{self.owner}/{self.name}"
        if self.local_path is not None:
            return self.local_path.name
        return self.raw

    @property
    def cache_key(self) -> str:
        if self.remote_identifier:
            return normalize_remote(self.remote_identifier)
        return str(self.local_path or self.raw)


def _strip_github_prefix(text: str) -> Optional[str]:
    lowered = text.lower()
    for prefix in _GITHUB_PREFIXES:
        if lowered.startswith(prefix):
            return text[len(prefix):]
    return None


def _github_ref(raw: str, slug: str) -> RepoRef:
    cleaned = slug.strip().rstrip("/")
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    match = _GITHUB_SLUG_RE.match(cleaned)
    if not match:
        raise InvalidRepoReferenceError(
            f"Invalid GitHub reference {raw!r}: expected user/repo"
        )
    owner, name = match.group(1), match.group(2)
    if owner in {".", ".."} or name in {".", ".."}:
        raise InvalidRepoReferenceError(f"Invalid GitHub reference {raw!r}")
    return RepoRef(
        kind="github",
        raw=raw,
        owner=owner,
        name=name,
        clone_url=f"https://github.com/{owner}/{name}.git",
        remote_identifier=f"https://github.com/{owner}/{name}",
    )


def parse_repo_ref(text: str, *, allow_local: bool = True) -> RepoRef:
    raw = (text or "").strip()
    if not raw:
        raise InvalidRepoReferenceError("repo is required")

    slug = _strip_github_prefix(raw)
    if slug is not None:
        return _github_ref(raw, slug)

    if allow_local:
        path = Path(raw).expanduser()
        if path.is_dir():
            return RepoRef(kind="local", raw=raw, local_path=path.resolve())

    if _GENERIC_URL_RE.match(raw):
        return RepoRef(kind="url", raw=raw, clone_url=raw, remote_identifier=raw)

    if _GITHUB_SLUG_RE.match(raw.rstrip("/")):
        return _github_ref(raw, raw)

    raise InvalidRepoReferenceError(
        f"Invalid repo reference {raw!r}. Use user/repo, github:user/repo or a git URL"
    )


def parse_since(since: Optional[str], *, now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse ``all``/``6m``/``1y``/``2y``/``YYYY-MM-DD`` into a UTC cutoff.

    ``all`` and empty mean no cutoff. Unparseable values also return None;
    use ``is_valid_since`` to reject them at the edge.
    """
    value = (since or "").strip().lower()
    if value in {"", "all"}:
        return None
    current = now or datetime.now(timezone.utc)
    days = _RELATIVE_SINCE_DAYS.get(value)
    if days is not None:
        return current - timedelta(days=days)
    if not _SINCE_DATE_RE.match(value):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def is_valid_since(since: Optional[str]) -> bool:
    value = (since or "").strip().lower()
    if value in {"", "all"} or value in _RELATIVE_SINCE_DAYS:
        return True
    return parse_since(value) is not None
