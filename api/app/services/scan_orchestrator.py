"""Scan orchestration: cache, primary clone path, one crawl fallback, record.

    Start -> CacheHit -> Success
    Start -> TryPrimary -> Success
    Start -> TryPrimary -> TryFallback -> Success | Failed

``run_scan`` only ever raises ScanError subclasses. A primary NotFound stops
without fallback; every other primary failure gets exactly one fallback
attempt (GitHub references only, since the crawl needs the REST API).
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Optional, Protocol, Union

from app.adapters.scan_store import ScanStore
from app.models.scan import ExecutionClass, IndicatorSet, ScanResult, SourcePath
from app.services.crawler_service import CommitCrawler
from app.services.fingerprint_service import Fingerprint, derive_fingerprint
from app.services.github_client import CommitPage
from app.services.repo_ref import RepoRef, parse_repo_ref
from app.services.scan_cache import ResultCache
from app.services.scan_config import ScanSettings
from app.services.scan_errors import (
    AcquisitionError,
    RepoNotFoundError,
    ScanError,
    ScanFailedError,
    ScanTimeoutError,
)
from app.services.scoring_service import compose

log = logging.getLogger(__name__)


class Analyzer(Protocol):
    async def analyze(
        self, ref: RepoRef, since: Optional[datetime] = None, timeout: Optional[float] = None
    ) -> ScanResult:
        ...


class CommitPageSource(Protocol):
    async def fetch_commit_page(
        self,
        owner: str,
        repo: str,
        page: int,
        per_page: int = 100,
        since: Optional[datetime] = None,
    ) -> CommitPage:
        ...


def _wrap(exc: BaseException, what: str) -> ScanError:
    if isinstance(exc, asyncio.TimeoutError):
        return ScanTimeoutError(f"{what} timed out")
    return AcquisitionError(f"{what} failed: {type(exc).__name__}: {exc}")


class ScanOrchestrator:
    def __init__(
        self,
        *,
        settings: ScanSettings,
        store: ScanStore,
        analyzer: Analyzer,
        pages: CommitPageSource,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._analyzer = analyzer
        self._pages = pages
        self._cache = cache if cache is not None else ResultCache(ttl_s=settings.cache_ttl_s)
        self._pools = {
            ec: asyncio.Semaphore(settings.pool_slots(ec)) for ec in ExecutionClass
        }
        self._key_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @property
    def settings(self) -> ScanSettings:
        return self._settings

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def store(self) -> ScanStore:
        return self._store

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    @staticmethod
    def _cache_key(ref: RepoRef, time_cutoff: Optional[datetime]) -> str:
        window = time_cutoff.date().isoformat() if time_cutoff is not None else "all"
        return f"{ref.cache_key}@{window}"

    async def run_scan(
        self,
        repo_ref: Union[RepoRef, str],
        time_cutoff: Optional[datetime] = None,
        execution_class: ExecutionClass = ExecutionClass.INTERACTIVE,
    ) -> ScanResult:
        ref = parse_repo_ref(repo_ref) if isinstance(repo_ref, str) else repo_ref
        key = self._cache_key(ref, time_cutoff)
        lock = self._lock_for(key)
        async with lock:
            cached = self._cache.get(key)
            if cached is not None:
                log.info("cache hit for %s", ref.display_name)
                return cached.model_copy(deep=True)
            result = await self._acquire(ref, time_cutoff, execution_class)
            stored = await self._record(result)
            self._cache.put(key, stored.model_copy(deep=True))
            return stored

    async def _acquire(
        self,
        ref: RepoRef,
        time_cutoff: Optional[datetime],
        execution_class: ExecutionClass,
    ) -> ScanResult:
        try:
            return await self._try_primary(ref, time_cutoff, execution_class)
        except RepoNotFoundError:
            log.info("primary: %s not found, no fallback", ref.display_name)
            raise
        except ScanError as primary_error:
            log.info("primary failed for %s (%s): %s", ref.display_name, primary_error.kind.value, primary_error)
            if not ref.is_github:
                raise
            try:
                return await self._try_fallback(ref, time_cutoff, execution_class)
            except ScanError as fallback_error:
                log.info("fallback failed for %s (%s): %s", ref.display_name, fallback_error.kind.value, fallback_error)
                raise ScanFailedError(
                    f"scan of {ref.display_name} failed: primary: {primary_error}; fallback: {fallback_error}",
                    primary=primary_error,
                    fallback=fallback_error,
                ) from fallback_error

    async def _try_primary(
        self,
        ref: RepoRef,
        time_cutoff: Optional[datetime],
        execution_class: ExecutionClass,
    ) -> ScanResult:
        timeout = self._settings.primary_timeout_s(execution_class)
        async with self._pools[execution_class]:
            log.info("primary: analyzing %s (%s)", ref.display_name, execution_class.value)
            try:
                return await asyncio.wait_for(
                    self._analyzer.analyze(ref, time_cutoff, timeout=timeout),
                    timeout=timeout,
                )
            except ScanError:
                raise
            except Exception as exc:
                raise _wrap(exc, f"clone analysis of {ref.display_name}") from exc

    async def _try_fallback(
        self,
        ref: RepoRef,
        time_cutoff: Optional[datetime],
        execution_class: ExecutionClass,
    ) -> ScanResult:
        settings = self._settings
        owner, name = ref.owner or "", ref.name or ""
        per_page = settings.crawl_per_page

        async def fetch_page(page: int) -> CommitPage:
            return await self._pages.fetch_commit_page(owner, name, page, per_page=per_page, since=time_cutoff)

        crawler = CommitCrawler(fetch_page, concurrency=settings.crawl_concurrency, per_page=per_page)
        log.info("fallback: crawling %s", ref.display_name)
        try:
            outcome = await asyncio.wait_for(
                crawler.crawl(
                    ref.display_name,
                    max_pages=settings.max_pages(execution_class),
                    since=time_cutoff,
                ),
                timeout=settings.crawl_timeout_s,
            )
        except ScanError:
            raise
        except Exception as exc:
            raise _wrap(exc, f"commit crawl of {ref.display_name}") from exc

        if outcome.partial:
            log.info(
                "fallback: partial crawl of %s (%d of ~%d pages)",
                ref.display_name,
                outcome.pages_fetched,
                outcome.estimated_pages,
            )
        fingerprint = derive_fingerprint(remote_identifier=ref.remote_identifier)
        indicators = IndicatorSet()
        score = compose(outcome.tally.ratio, indicators)
        return ScanResult.from_parts(
            fingerprint=fingerprint.value,
            fingerprint_mode=fingerprint.mode,
            identity_key=fingerprint.identity_key,
            repo_name=ref.display_name,
            tally=outcome.tally,
            indicators=indicators,
            score=score,
            source_path=SourcePath.CRAWL,
            partial=outcome.partial,
            total_commits_hint=outcome.total_commits_hint,
        )

    async def _record(self, result: ScanResult) -> ScanResult:
        fingerprint = Fingerprint(
            value=result.fingerprint,
            mode=result.fingerprint_mode,
            identity_key=result.identity_key or result.fingerprint,
        )
        try:
            scan_id = await asyncio.to_thread(self._store.upsert_scan_result, fingerprint, result)
            await asyncio.to_thread(self._store.append_scan_event, fingerprint, result)
            stored = await asyncio.to_thread(self._store.get_scan, scan_id)
        except Exception as exc:
            raise ScanError(f"failed to record scan of {result.repo_name}: {exc}") from exc
        log.info(
            "recorded %s as %s (points=%d, source=%s, partial=%s)",
            result.repo_name,
            scan_id,
            result.points,
            result.source_path.value,
            result.partial,
        )
        return stored if stored is not None else result.model_copy(update={"id": scan_id})

    async def get_scan(self, scan_id: str) -> Optional[ScanResult]:
        return await asyncio.to_thread(self._store.get_scan, scan_id)
