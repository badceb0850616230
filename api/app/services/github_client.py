"""GitHub API client for the paginated commit crawl.

Async REST wrapper with:
- optional token auth (GITHUB_TOKEN / GH_TOKEN)
- rate-limit detection (403 with exhausted quota, or 429) surfaced as ThrottledError
- ``Link`` header parsing for the last page estimate
- one pure normalization function for commit payloads
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.services.scan_errors import AcquisitionError, RepoNotFoundError, ThrottledError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteCommit:
    """A commit as seen through the REST API, after normalization.

    Defaults when the payload is missing a field:
    - ``sha``: ``""``
    - ``message``: ``""``
    - ``author``: commit author name, else the account login, else ``""``
    - ``timestamp``: commit author date, else committer date, else ``None``
    """

    sha: str
    message: str = ""
    author: str = ""
    timestamp: Optional[datetime] = None


@dataclass
class CommitPage:
    page: int
    commits: list[RemoteCommit] = field(default_factory=list)
    next_page: Optional[int] = None
    last_page: Optional[int] = None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def normalize_commit_payload(raw: Any) -> RemoteCommit:
    """Normalize one element of ``GET /repos/{owner}/{repo}/commits``."""
    item = _as_dict(raw)
    commit = _as_dict(item.get("commit"))
    author = _as_dict(commit.get("author"))
    committer = _as_dict(commit.get("committer"))
    account = _as_dict(item.get("author"))

    sha = item.get("sha")
    message = commit.get("message")
    name = author.get("name") or account.get("login") or ""
    return RemoteCommit(
        sha=sha if isinstance(sha, str) else "",
        message=message if isinstance(message, str) else "",
        author=name if isinstance(name, str) else "",
        timestamp=_parse_timestamp(author.get("date")) or _parse_timestamp(committer.get("date")),
    )


def _page_from_url(url: Optional[str]) -> Optional[int]:
    if not url:
        return None
    try:
        value = httpx.URL(url).params.get("page")
        return int(value) if value is not None else None
    except (ValueError, httpx.InvalidURL):
        return None


class GitHubClient:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = "https://api.github.com",
        user_agent: str = "vibescan/1.0",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        env_token = os.getenv("GITHUB_TOKEN")
        if not env_token:
            env_token = os.getenv("GH_TOKEN")
        if env_token:
            env_token = env_token.strip() or None
        self._token = token or env_token
        self._base_url = base_url.rstrip("/")
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @staticmethod
    def _retry_after(r: httpx.Response) -> Optional[int]:
        retry_after = r.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return int(retry_after)
        reset = r.headers.get("X-RateLimit-Reset")
        try:
            reset_i = int(reset) if reset is not None else None
        except ValueError:
            reset_i = None
        if reset_i:
            return max(0, reset_i - int(time.time())) + 1
        return None

    def _raise_for_status(self, r: httpx.Response, what: str) -> None:
        if r.status_code < 400:
            return
        if r.status_code in (404, 409, 451):
            # 409 is an empty repository; 451 is a DMCA takedown.
            raise RepoNotFoundError(f"{what}: repository not found or empty ({r.status_code})")
        if r.status_code == 429 or (
            r.status_code == 403 and r.headers.get("X-RateLimit-Remaining") == "0"
        ):
            raise ThrottledError(f"{what}: GitHub rate limit exceeded", retry_after_s=self._retry_after(r))
        if r.status_code in (401, 403):
            raise RepoNotFoundError(f"{what}: repository not accessible ({r.status_code})")
        raise AcquisitionError(f"GitHub API error {r.status_code} for {what}: {r.text[:200]}")

    async def fetch_commit_page(
        self,
        owner: str,
        repo: str,
        page: int,
        per_page: int = 100,
        since: Optional[datetime] = None,
    ) -> CommitPage:
        params: dict[str, Any] = {"per_page": per_page, "page": page}
        if since is not None:
            params["since"] = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        what = f"{owner}/{repo} commits page {page}"
        try:
            r = await self._client.get(f"/repos/{owner}/{repo}/commits", params=params)
        except httpx.TimeoutException as exc:
            raise AcquisitionError(f"{what}: request timed out") from exc
        except httpx.HTTPError as exc:
            raise AcquisitionError(f"{what}: {exc}") from exc

        self._raise_for_status(r, what)
        try:
            data = r.json()
        except ValueError as exc:
            raise AcquisitionError(f"{what}: invalid JSON body") from exc
        if not isinstance(data, list):
            raise AcquisitionError(f"{what}: expected a list of commits")

        log.debug("fetched %s: %d commit(s)", what, len(data))
        links = r.links
        return CommitPage(
            page=page,
            commits=[normalize_commit_payload(item) for item in data],
            next_page=_page_from_url(_as_dict(links.get("next")).get("url")),
            last_page=_page_from_url(_as_dict(links.get("last")).get("url")),
        )
