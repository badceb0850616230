"""Repository identity: remote normalization and fingerprint derivation.

Two derivation modes:
- full history: the walk reached the true root commit, fingerprint covers
  ``root_commit:normalized_remote``
- partial history: shallow clone or paginated crawl, fingerprint covers the
  normalized remote alone

Records are keyed by ``identity_key`` (a digest of the normalized remote when
one is known), so both modes land on the same stored row for the same repo.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

from app.models.scan import FingerprintMode

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
# ``host:8443/path`` is a port, not scp syntax.
_SCP_RE = re.compile(r"^(?:[^@/\s]+@)?([^:/\s]+):(?!//)(?!\d+(?:/|$))(.+)$")
_CASE_INSENSITIVE_HOSTS = {"github.com", "gitlab.com", "bitbucket.org"}


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_remote(identifier: Optional[str]) -> str:
    """Canonical ``host/path`` form of a remote identifier.

    Strips the scheme, credentials, scp-style ``git@host:`` syntax, trailing
    slashes and a ``.git`` suffix, and case-folds the host. GitHub-style hosts
    also get their path case-folded because owner and repo names there are
    case-insensitive.
    """
    text = (identifier or "").strip()
    if not text:
        return ""
    if text.lower().startswith("github:"):
        text = "github.com/" + text[len("github:"):]

    if _SCHEME_RE.match(text):
        text = _SCHEME_RE.sub("", text, count=1)
        if "@" in text.split("/", 1)[0]:
            text = text.split("@", 1)[1]
    else:
        scp = _SCP_RE.match(text)
        if scp:
            text = f"{scp.group(1)}/{scp.group(2)}"

    text = text.rstrip("/")
    while text.lower().endswith(".git"):
        text = text[: -len(".git")].rstrip("/")

    host, _, path = text.partition("/")
    host = host.lower()
    if host.startswith("www."):
        host = host[len("www."):]
    if ":" in host:
        name, _, port = host.partition(":")
        if port in {"22", "80", "443"}:
            host = name
    if host in _CASE_INSENSITIVE_HOSTS:
        path = path.lower()
    return f"{host}/{path}" if path else host


def full_history_fingerprint(root_commit_id: str, remote_identifier: Optional[str]) -> str:
    return _digest(f"{root_commit_id.strip()}:{normalize_remote(remote_identifier)}")


def partial_history_fingerprint(remote_identifier: str) -> str:
    return _digest(normalize_remote(remote_identifier))


@dataclass(frozen=True)
class Fingerprint:
    value: str
    mode: FingerprintMode
    identity_key: str


def derive_fingerprint(
    *,
    remote_identifier: Optional[str],
    root_commit_id: Optional[str] = None,
    full_history: bool = False,
) -> Fingerprint:
    """Pick the derivation mode from what the acquisition path could prove.

    ``root_commit_id`` is only trusted when ``full_history`` is set; crawls
    and shallow clones pass their oldest-seen commit for information only.
    """
    normalized = normalize_remote(remote_identifier)
    if full_history and root_commit_id:
        value = full_history_fingerprint(root_commit_id, remote_identifier)
        identity = _digest(normalized) if normalized else value
        return Fingerprint(value=value, mode=FingerprintMode.FULL_HISTORY, identity_key=identity)
    if not normalized:
        raise ValueError("a remote identifier or a full-history root commit is required")
    value = partial_history_fingerprint(remote_identifier)
    return Fingerprint(value=value, mode=FingerprintMode.PARTIAL_HISTORY, identity_key=value)
