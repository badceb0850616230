"""Scan models: commit attribution, indicator set, score card, and the scan record."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

POINTS_MAX = 200


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttributionTag(str, Enum):
    CLAUDE_CODE = "Claude Code"
    CURSOR = "Cursor"
    AIDER = "Aider"
    CODEX_CLI = "Codex CLI"
    GITHUB_COPILOT = "GitHub Copilot"
    GEMINI_CLI = "Gemini CLI"
    HUMAN = "Human"


class SourcePath(str, Enum):
    CLONE = "clone"
    CRAWL = "crawl"


class ExecutionClass(str, Enum):
    INTERACTIVE = "interactive"
    BATCH = "batch"


class FingerprintMode(str, Enum):
    FULL_HISTORY = "full_history"
    PARTIAL_HISTORY = "partial_history"


class CommitRecord(BaseModel):
    """One classified commit. Built while walking history, never persisted."""

    hash: str
    message: str = ""
    author: str = ""
    timestamp: Optional[datetime] = None
    attribution_tag: AttributionTag = AttributionTag.HUMAN


class AttributionTally(BaseModel):
    """Running aggregate of classified commits.

    Both acquisition paths feed commits through ``add`` one at a time so the
    full commit set never has to be held in memory.
    """

    total_commits: int = 0
    attributed_commits: int = 0
    tool_counts: Dict[str, int] = Field(default_factory=dict)
    oldest_commit_id: Optional[str] = None
    first_commit_at: Optional[datetime] = None
    last_commit_at: Optional[datetime] = None

    def add(self, record: CommitRecord) -> None:
        self.total_commits += 1
        if record.attribution_tag != AttributionTag.HUMAN:
            self.attributed_commits += 1
            key = record.attribution_tag.value
            self.tool_counts[key] = self.tool_counts.get(key, 0) + 1
        # History is walked newest first, so the last commit seen is the oldest.
        self.oldest_commit_id = record.hash
        if record.timestamp is not None:
            if self.first_commit_at is None or record.timestamp < self.first_commit_at:
                self.first_commit_at = record.timestamp
            if self.last_commit_at is None or record.timestamp > self.last_commit_at:
                self.last_commit_at = record.timestamp

    @property
    def human_commits(self) -> int:
        return self.total_commits - self.attributed_commits

    @property
    def ratio(self) -> float:
        if self.total_commits == 0:
            return 0.0
        return self.attributed_commits / self.total_commits

    @property
    def primary_tool(self) -> AttributionTag:
        if not self.tool_counts:
            return AttributionTag.HUMAN
        # Ties resolve alphabetically so the result is deterministic.
        name = sorted(self.tool_counts.items(), key=lambda item: (-item[1], item[0]))[0][0]
        return AttributionTag(name)


class IndicatorSet(BaseModel):
    """Hygiene and risk signals computed from repository state.

    Flags are phrased so that ``True`` means the risk is present. Results from
    the crawl path never inspect a file tree, so they keep the defaults and
    report ``filesystem_checked=False``.
    ``languages`` maps a language name to its line count.
    """

    filesystem_checked: bool = False
    no_linting: bool = False
    no_ci_cd: bool = False
    ai_without_config: bool = False
    dependency_tree_committed: bool = False
    no_gitignore: bool = False
    no_readme: bool = False
    todo_count: int = Field(default=0, ge=0)
    todo_flood: bool = False
    branch_count: int = Field(default=0, ge=0)
    single_branch: bool = False
    mega_commit: Optional[bool] = None
    has_tests: bool = False
    test_files_count: int = Field(default=0, ge=0)
    env_files_count: int = Field(default=0, ge=0)
    secret_hint_count: int = Field(default=0, ge=0)
    dependency_count: int = Field(default=0, ge=0)
    source_line_count: int = Field(default=0, ge=0)
    languages: Dict[str, int] = Field(default_factory=dict)

    def badges(self) -> List[str]:
        """Slugs for every risk present, in a stable order."""
        out: List[str] = []
        if self.env_files_count > 0:
            out.append("env-in-git")
        if self.secret_hint_count > 0:
            out.append("hardcoded-secrets")
        if self.filesystem_checked and not self.has_tests:
            out.append("no-tests")
        if self.dependency_count > 500:
            out.append("dependency-hell")
        flags = (
            (self.no_linting, "no-linting"),
            (self.no_ci_cd, "no-ci"),
            (self.ai_without_config, "boomer-ai"),
            (self.dependency_tree_committed, "node-modules-in-git"),
            (self.mega_commit is True, "mega-commit"),
            (self.no_gitignore, "no-gitignore"),
            (self.no_readme, "no-readme"),
            (self.todo_flood, "todo-flood"),
            (self.single_branch, "single-branch"),
        )
        out.extend(slug for flag, slug in flags if flag)
        return out


class ScoreFactor(BaseModel):
    label: str
    points: int


class ScoreCard(BaseModel):
    points: int = Field(ge=0, le=POINTS_MAX)
    grade: str
    narrative: str
    breakdown: List[ScoreFactor] = Field(default_factory=list)


class ScanResult(BaseModel):
    """The unit of record for one repository identity."""

    id: Optional[str] = None
    fingerprint: str
    fingerprint_mode: FingerprintMode
    identity_key: str = ""
    repo_name: str = ""
    total_commits: int = Field(default=0, ge=0)
    attributed_commits: int = Field(default=0, ge=0)
    attribution_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    tool_counts: Dict[str, int] = Field(default_factory=dict)
    primary_tool: AttributionTag = AttributionTag.HUMAN
    indicator_set: IndicatorSet = Field(default_factory=IndicatorSet)
    badges: List[str] = Field(default_factory=list)
    points: int = Field(default=0, ge=0, le=POINTS_MAX)
    grade: str = "F"
    narrative: str = ""
    breakdown: List[ScoreFactor] = Field(default_factory=list)
    source_path: SourcePath
    partial: bool = False
    total_commits_hint: Optional[int] = None
    oldest_commit_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def counts_are_consistent(self) -> "ScanResult":
        if self.attributed_commits > self.total_commits:
            raise ValueError("attributed_commits cannot exceed total_commits")
        if self.total_commits == 0 and self.attribution_ratio != 0.0:
            raise ValueError("attribution_ratio must be 0 when there are no commits")
        return self

    @classmethod
    def from_parts(
        cls,
        *,
        fingerprint: str,
        fingerprint_mode: FingerprintMode,
        identity_key: str,
        repo_name: str,
        tally: AttributionTally,
        indicators: IndicatorSet,
        score: ScoreCard,
        source_path: SourcePath,
        partial: bool = False,
        total_commits_hint: Optional[int] = None,
    ) -> "ScanResult":
        return cls(
            fingerprint=fingerprint,
            fingerprint_mode=fingerprint_mode,
            identity_key=identity_key,
            repo_name=repo_name,
            total_commits=tally.total_commits,
            attributed_commits=tally.attributed_commits,
            attribution_ratio=tally.ratio,
            tool_counts=dict(tally.tool_counts),
            primary_tool=tally.primary_tool,
            indicator_set=indicators,
            badges=indicators.badges(),
            points=score.points,
            grade=score.grade,
            narrative=score.narrative,
            breakdown=list(score.breakdown),
            source_path=source_path,
            partial=partial,
            total_commits_hint=total_commits_hint,
            oldest_commit_id=tally.oldest_commit_id,
        )


class ScanEvent(BaseModel):
    """Write-once audit entry appended for every recorded scan."""

    identity_key: str
    fingerprint: str
    attribution_ratio: float
    points: int
    source_path: SourcePath
    scanned_at: datetime = Field(default_factory=_utcnow)


class ScanRequest(BaseModel):
    """Request body for POST /api/scans."""

    repo: str = Field(..., min_length=1, max_length=500)
    since: Optional[str] = Field(default=None, max_length=32)
    execution_class: ExecutionClass = ExecutionClass.INTERACTIVE

    @field_validator("repo", mode="before")
    @classmethod
    def repo_strip(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip()
        return v
