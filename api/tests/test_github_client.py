"""Tests for the GitHub commit page client.

Uses mocked HTTP responses (respx) to avoid real GitHub API calls.
"""

from datetime import datetime, timezone

import pytest
import respx
from httpx import Response

from app.services.github_client import GitHubClient, normalize_commit_payload
from app.services.scan_errors import AcquisitionError, RepoNotFoundError, ThrottledError

COMMITS_URL = "https://api.github.com/repos/owner/repo/commits"


def _commit(sha: str, message: str = "msg") -> dict:
    return {
        "sha": sha,
        "commit": {
            "message": message,
            "author": {"name": "Dev", "date": "2025-01-02T03:04:05Z"},
            "committer": {"name": "Dev", "date": "2025-01-02T03:04:06Z"},
        },
        "author": {"login": "dev"},
    }


def _link(page_next: int, page_last: int) -> str:
    return (
        f'<{COMMITS_URL}?per_page=100&page={page_next}>; rel="next", '
        f'<{COMMITS_URL}?per_page=100&page={page_last}>; rel="last"'
    )


@pytest.mark.asyncio
@respx.mock
async def test_fetch_commit_page_parses_commits_and_links():
    route = respx.get(COMMITS_URL).mock(
        return_value=Response(200, json=[_commit("a"), _commit("b")], headers={"Link": _link(2, 7)})
    )
    async with GitHubClient(token="test-token-123") as client:
        page = await client.fetch_commit_page("owner", "repo", 1)

    assert [c.sha for c in page.commits] == ["a", "b"]
    assert page.next_page == 2
    assert page.last_page == 7
    request = route.calls[0].request
    assert request.headers["authorization"] == "Bearer test-token-123"
    assert request.url.params["per_page"] == "100"
    assert request.url.params["page"] == "1"


@pytest.mark.asyncio
@respx.mock
async def test_since_is_sent_as_utc_timestamp():
    route = respx.get(COMMITS_URL).mock(return_value=Response(200, json=[]))
    async with GitHubClient(token="t") as client:
        page = await client.fetch_commit_page(
            "owner", "repo", 3, since=datetime(2024, 5, 1, tzinfo=timezone.utc)
        )
    assert page.commits == []
    assert page.last_page is None
    assert route.calls[0].request.url.params["since"] == "2024-05-01T00:00:00Z"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [404, 409])
@respx.mock
async def test_missing_or_empty_repo_is_not_found(status):
    respx.get(COMMITS_URL).mock(return_value=Response(status, json={"message": "Not Found"}))
    async with GitHubClient(token="t") as client:
        with pytest.raises(RepoNotFoundError):
            await client.fetch_commit_page("owner", "repo", 1)


@pytest.mark.asyncio
@respx.mock
async def test_exhausted_quota_is_throttled():
    respx.get(COMMITS_URL).mock(
        return_value=Response(
            403,
            json={"message": "API rate limit exceeded"},
            headers={"X-RateLimit-Remaining": "0", "Retry-After": "30"},
        )
    )
    async with GitHubClient(token="t") as client:
        with pytest.raises(ThrottledError) as excinfo:
            await client.fetch_commit_page("owner", "repo", 1)
    assert excinfo.value.retry_after_s == 30


@pytest.mark.asyncio
@respx.mock
async def test_429_is_throttled():
    respx.get(COMMITS_URL).mock(return_value=Response(429, json={}))
    async with GitHubClient(token="t") as client:
        with pytest.raises(ThrottledError):
            await client.fetch_commit_page("owner", "repo", 1)


@pytest.mark.asyncio
@respx.mock
async def test_server_error_and_bad_payload_are_acquisition_errors():
    respx.get(COMMITS_URL).mock(
        side_effect=[Response(502, text="bad gateway"), Response(200, json={"not": "a list"})]
    )
    async with GitHubClient(token="t") as client:
        with pytest.raises(AcquisitionError):
            await client.fetch_commit_page("owner", "repo", 1)
        with pytest.raises(AcquisitionError):
            await client.fetch_commit_page("owner", "repo", 1)


def test_normalize_full_payload():
    commit = normalize_commit_payload(_commit("abc", "subject\n\nCo-Authored-By: Claude"))
    assert commit.sha == "abc"
    assert commit.message.startswith("subject")
    assert commit.author == "Dev"
    assert commit.timestamp == datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_normalize_defaults_for_missing_fields():
    commit = normalize_commit_payload({"sha": "abc", "commit": {"committer": {"date": "2025-01-01T00:00:00Z"}}, "author": {"login": "ghost"}})
    assert commit.message == ""
    assert commit.author == "ghost"
    assert commit.timestamp == datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("raw", [None, [], "x", {"sha": 5, "commit": "nope", "author": None}])
def test_normalize_tolerates_garbage(raw):
    commit = normalize_commit_payload(raw)
    assert commit.sha == ""
    assert commit.message == ""
    assert commit.author == ""
    assert commit.timestamp is None
