"""Bounded concurrent commit crawl over a paginated history API.

Fetch page 1, estimate the page count from its ``last`` link, then fetch the
remaining pages in batches of ``concurrency``. Each page is classified into
the running tally as soon as its batch settles and is then dropped, so at most
one batch of raw pages is alive at a time.

Per-page failures count as empty pages; a throttled page stops the crawl and
returns what was tallied so far as partial.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.models.scan import AttributionTally
from app.services.attribution_service import classify_commit
from app.services.github_client import CommitPage
from app.services.scan_errors import RepoNotFoundError, ThrottledError

log = logging.getLogger(__name__)

# fetch_page(page_number) -> CommitPage
PageFetcher = Callable[[int], Awaitable[CommitPage]]


class CrawlStatus(str, Enum):
    DONE = "done"
    PARTIAL_DONE = "partial_done"


@dataclass
class CrawlOutcome:
    status: CrawlStatus
    pages_fetched: int
    estimated_pages: int
    tally: AttributionTally = field(default_factory=AttributionTally)
    total_commits_hint: Optional[int] = None

    @property
    def partial(self) -> bool:
        return self.status == CrawlStatus.PARTIAL_DONE


class CommitCrawler:
    def __init__(
        self,
        fetch_page: PageFetcher,
        *,
        concurrency: int = 20,
        per_page: int = 100,
    ) -> None:
        self._fetch_page = fetch_page
        self._concurrency = max(1, concurrency)
        self._per_page = max(1, per_page)
        self.max_batch_in_flight = 0

    @staticmethod
    def _tally_page(tally: AttributionTally, page: CommitPage, since: Optional[datetime]) -> None:
        for commit in page.commits:
            if since is not None and commit.timestamp is not None and commit.timestamp < since:
                continue
            tally.add(
                classify_commit(commit.sha, commit.message, author=commit.author, timestamp=commit.timestamp)
            )

    async def _fetch_batch(self, pages: list[int]) -> list[CommitPage | BaseException]:
        self.max_batch_in_flight = max(self.max_batch_in_flight, len(pages))
        return await asyncio.gather(*(self._fetch_page(p) for p in pages), return_exceptions=True)

    async def crawl(
        self,
        label: str,
        *,
        max_pages: int,
        since: Optional[datetime] = None,
    ) -> CrawlOutcome:
        """Crawl up to ``max_pages`` pages.

        Raises RepoNotFoundError when the first page is missing or empty and
        ThrottledError when the first page itself is rate limited. Nothing else
        escapes once the first page has arrived.
        """
        max_pages = max(1, max_pages)
        first_page = await self._fetch_page(1)
        if not first_page.commits:
            raise RepoNotFoundError(f"{label}: no commits found")

        estimated = first_page.last_page or (first_page.next_page or 1)
        tally = AttributionTally()
        self._tally_page(tally, first_page, since)

        pages_fetched = 1
        cap = min(estimated, max_pages)
        status = CrawlStatus.PARTIAL_DONE if estimated > max_pages else CrawlStatus.DONE
        next_page = 2

        while next_page <= cap:
            batch = list(range(next_page, min(next_page + self._concurrency, cap + 1)))
            results = await self._fetch_batch(batch)
            next_page = batch[-1] + 1
            batch_commits = 0
            throttled = False
            for page_number, result in zip(batch, results):
                if isinstance(result, ThrottledError):
                    throttled = True
                    continue
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    log.warning("%s: page %d failed: %s", label, page_number, result)
                    continue
                pages_fetched += 1
                batch_commits += len(result.commits)
                self._tally_page(tally, result, since)

            if throttled:
                log.info("%s: throttled after %d page(s), returning partial", label, pages_fetched)
                status = CrawlStatus.PARTIAL_DONE
                break
            if batch_commits == 0:
                log.info("%s: empty batch at page %d, stopping", label, batch[0])
                break

        hint = estimated * self._per_page if status == CrawlStatus.PARTIAL_DONE else tally.total_commits
        return CrawlOutcome(
            status=status,
            pages_fetched=pages_fetched,
            estimated_pages=estimated,
            tally=tally,
            total_commits_hint=hint,
        )
