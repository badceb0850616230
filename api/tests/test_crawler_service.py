"""Tests for the bounded concurrent commit crawler."""

import asyncio
from datetime import datetime, timezone

import pytest

from app.models.scan import AttributionTag
from app.services.crawler_service import CommitCrawler, CrawlStatus
from app.services.github_client import CommitPage, RemoteCommit
from app.services.scan_errors import AcquisitionError, RepoNotFoundError, ThrottledError

CLAUDE = "feat\n\nCo-Authored-By: Claude <noreply@anthropic.com>"


class FakePages:
    """Serves ``total_pages`` pages of ``per_page`` commits; every other commit is AI-attributed."""

    def __init__(self, total_pages: int, per_page: int = 3, failures=None, delay: float = 0.0):
        self.total_pages = total_pages
        self.per_page = per_page
        self.failures = failures or {}
        self.delay = delay
        self.requested: list[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, page: int) -> CommitPage:
        self.requested.append(page)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if page in self.failures:
                raise self.failures[page]
            if page > self.total_pages:
                return CommitPage(page=page)
            commits = [
                RemoteCommit(
                    sha=f"p{page}c{i}",
                    message=CLAUDE if i % 2 == 0 else "human change",
                    timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
                )
                for i in range(self.per_page)
            ]
            return CommitPage(
                page=page,
                commits=commits,
                next_page=page + 1 if page < self.total_pages else None,
                last_page=self.total_pages,
            )
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_crawl_all_pages():
    pages = FakePages(total_pages=5, per_page=4)
    outcome = await CommitCrawler(pages, concurrency=2, per_page=4).crawl("owner/repo", max_pages=50)

    assert outcome.status == CrawlStatus.DONE
    assert outcome.partial is False
    assert outcome.pages_fetched == 5
    assert outcome.estimated_pages == 5
    assert outcome.tally.total_commits == 20
    assert outcome.tally.attributed_commits == 10
    assert outcome.tally.primary_tool == AttributionTag.CLAUDE_CODE
    assert outcome.tally.oldest_commit_id == "p5c3"
    assert sorted(pages.requested) == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_empty_first_page_is_not_found_without_batches():
    pages = FakePages(total_pages=0)
    with pytest.raises(RepoNotFoundError):
        await CommitCrawler(pages, concurrency=5).crawl("owner/repo", max_pages=50)
    assert pages.requested == [1]


@pytest.mark.asyncio
async def test_first_page_errors_propagate():
    pages = FakePages(total_pages=3, failures={1: ThrottledError("slow down")})
    with pytest.raises(ThrottledError):
        await CommitCrawler(pages).crawl("owner/repo", max_pages=50)


@pytest.mark.asyncio
async def test_page_cap_yields_partial_result():
    pages = FakePages(total_pages=40, per_page=2)
    outcome = await CommitCrawler(pages, concurrency=4, per_page=2).crawl("owner/repo", max_pages=10)

    assert outcome.status == CrawlStatus.PARTIAL_DONE
    assert outcome.pages_fetched == 10
    assert outcome.tally.total_commits == 20
    assert outcome.total_commits_hint == 80
    assert max(pages.requested) == 10


@pytest.mark.asyncio
async def test_batches_never_exceed_concurrency():
    pages = FakePages(total_pages=30, delay=0.001)
    crawler = CommitCrawler(pages, concurrency=4)
    await crawler.crawl("owner/repo", max_pages=100)
    assert pages.max_in_flight <= 4
    assert crawler.max_batch_in_flight <= 4


@pytest.mark.asyncio
async def test_failed_pages_count_as_empty():
    pages = FakePages(total_pages=4, per_page=1, failures={3: AcquisitionError("boom")})
    outcome = await CommitCrawler(pages, concurrency=10).crawl("owner/repo", max_pages=50)
    assert outcome.status == CrawlStatus.DONE
    assert outcome.pages_fetched == 3
    assert outcome.tally.total_commits == 3


@pytest.mark.asyncio
async def test_throttled_page_mid_crawl_returns_partial():
    pages = FakePages(total_pages=10, per_page=1, failures={4: ThrottledError("limit")})
    outcome = await CommitCrawler(pages, concurrency=3).crawl("owner/repo", max_pages=50)
    assert outcome.status == CrawlStatus.PARTIAL_DONE
    # Batch [2, 3, 4] settles, then the crawl stops.
    assert max(pages.requested) == 4
    assert outcome.tally.total_commits == 3


@pytest.mark.asyncio
async def test_empty_batch_stops_early():
    pages_lie = FakePages(total_pages=3, per_page=1)

    async def overstated(page: int) -> CommitPage:
        result = await pages_lie(page)
        if page == 1:
            result.last_page = 100
        return result

    outcome = await CommitCrawler(overstated, concurrency=5).crawl("owner/repo", max_pages=100)
    assert outcome.tally.total_commits == 3
    # Pages 2-6 are one batch, 7-11 would be the next; an all-empty batch ends the crawl.
    assert max(pages_lie.requested) == 11


@pytest.mark.asyncio
async def test_since_filters_commits_client_side():
    pages = FakePages(total_pages=1, per_page=4)
    outcome = await CommitCrawler(pages).crawl(
        "owner/repo", max_pages=5, since=datetime(2025, 6, 1, tzinfo=timezone.utc)
    )
    assert outcome.tally.total_commits == 0
    assert outcome.tally.ratio == 0.0
