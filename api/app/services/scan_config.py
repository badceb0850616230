"""Scan service settings read from the environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict

from app.models.scan import ExecutionClass


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: Optional[int] = None) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _env_float(name: str, default: float, *, minimum: float = 1.0) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _github_token() -> Optional[str]:
    token = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN")
    if token:
        token = token.strip() or None
    return token


def _default_database_url() -> str:
    sqlite_path = Path(__file__).resolve().parents[2] / "logs" / "scans.db"
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite+pysqlite:///{sqlite_path}"


class ScanSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    database_url: Optional[str] = None
    interactive_slots: int = 2
    batch_slots: int = 3
    interactive_timeout_s: float = 45.0
    batch_timeout_s: float = 180.0
    clone_timeout_s: float = 120.0
    crawl_timeout_s: float = 60.0
    crawl_concurrency: int = 20
    crawl_per_page: int = 100
    interactive_max_pages: int = 50
    batch_max_pages: int = 999
    cache_ttl_s: float = 600.0
    default_since: str = "all"
    clone_depth: int = 500
    rate_limit_per_minute: int = 5
    tmp_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ScanSettings":
        return cls(
            github_token=_github_token(),
            github_api_url=(os.getenv("GITHUB_API_URL") or "https://api.github.com").strip(),
            database_url=(
                os.getenv("SCAN_DATABASE_URL") or os.getenv("DATABASE_URL") or _default_database_url()
            ).strip(),
            interactive_slots=_env_int("SCAN_INTERACTIVE_SLOTS", 2, maximum=32),
            batch_slots=_env_int("SCAN_BATCH_SLOTS", 3, maximum=32),
            interactive_timeout_s=_env_float("SCAN_INTERACTIVE_TIMEOUT_S", 45.0),
            batch_timeout_s=_env_float("SCAN_BATCH_TIMEOUT_S", 180.0),
            clone_timeout_s=_env_float("SCAN_CLONE_TIMEOUT_S", 120.0),
            crawl_timeout_s=_env_float("SCAN_CRAWL_TIMEOUT_S", 60.0),
            crawl_concurrency=_env_int("SCAN_CRAWL_CONCURRENCY", 20, maximum=100),
            interactive_max_pages=_env_int("SCAN_INTERACTIVE_MAX_PAGES", 50),
            batch_max_pages=_env_int("SCAN_BATCH_MAX_PAGES", 999),
            cache_ttl_s=_env_float("SCAN_CACHE_TTL_S", 600.0, minimum=0.0),
            default_since=(os.getenv("SCAN_DEFAULT_SINCE") or "all").strip(),
            rate_limit_per_minute=_env_int("SCAN_RATE_LIMIT_PER_MINUTE", 5),
            tmp_dir=(os.getenv("SCAN_TMP_DIR") or "").strip() or None,
        )

    def primary_timeout_s(self, execution_class: ExecutionClass) -> float:
        if execution_class == ExecutionClass.BATCH:
            return self.batch_timeout_s
        return self.interactive_timeout_s

    def max_pages(self, execution_class: ExecutionClass) -> int:
        if execution_class == ExecutionClass.BATCH:
            return self.batch_max_pages
        return self.interactive_max_pages

    def pool_slots(self, execution_class: ExecutionClass) -> int:
        if execution_class == ExecutionClass.BATCH:
            return self.batch_slots
        return self.interactive_slots
