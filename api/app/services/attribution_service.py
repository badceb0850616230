"""Commit attribution: classify a commit message as a known AI tool or Human.

Classification walks ``ATTRIBUTION_RULES`` top to bottom and the first entry
with a matching pattern group wins. Order is part of the contract: trailers of
different tools can overlap textually, and tests assert on the table directly.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence, Tuple

from app.models.scan import AttributionTag, CommitRecord

# Each pattern group is a tuple of lowercase substrings that must all appear.
PatternGroup = Tuple[str, ...]

ATTRIBUTION_RULES: Tuple[Tuple[Tuple[PatternGroup, ...], AttributionTag], ...] = (
    (
        (
            ("co-authored-by: claude",),
            ("noreply@anthropic.com",),
            ("generated with claude code",),
        ),
        AttributionTag.CLAUDE_CODE,
    ),
    (
        (("co-authored-by: cursor",),),
        AttributionTag.CURSOR,
    ),
    (
        (
            ("co-authored-by: aider",),
            ("noreply@aider.chat",),
            ("aider: ",),
        ),
        AttributionTag.AIDER,
    ),
    (
        (
            ("co-authored-by: codex",),
            ("generated by codex",),
            ("codex-cli",),
        ),
        AttributionTag.CODEX_CLI,
    ),
    (
        (
            ("co-authored-by: copilot",),
            ("github-copilot",),
        ),
        AttributionTag.GITHUB_COPILOT,
    ),
    (
        (
            ("co-authored-by: gemini",),
            ("noreply@google.com", "gemini"),
        ),
        AttributionTag.GEMINI_CLI,
    ),
)


def _group_matches(text: str, group: Sequence[str]) -> bool:
    return all(pattern in text for pattern in group)


def classify(message: Any) -> AttributionTag:
    """Return the attribution tag for a commit message. Never raises."""
    if not isinstance(message, str) or not message:
        return AttributionTag.HUMAN
    text = message.lower()
    for groups, tag in ATTRIBUTION_RULES:
        if any(_group_matches(text, group) for group in groups):
            return tag
    return AttributionTag.HUMAN


def classify_commit(
    commit_hash: str,
    message: Any,
    author: str = "",
    timestamp: Optional[datetime] = None,
) -> CommitRecord:
    text = message if isinstance(message, str) else ""
    return CommitRecord(
        hash=commit_hash,
        message=text.splitlines()[0] if text else "",
        author=author or "",
        timestamp=timestamp,
        attribution_tag=classify(text),
    )
