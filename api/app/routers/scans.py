"""Scan endpoints: run a scan and fetch a recorded one."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from app.models.error import ErrorDetail
from app.models.scan import ScanRequest, ScanResult
from app.services.repo_ref import is_valid_since, parse_repo_ref, parse_since
from app.services.scan_cache import RateLimiter
from app.services.scan_errors import ScanError, ScanErrorKind, ThrottledError
from app.services.scan_orchestrator import ScanOrchestrator

router = APIRouter()
log = logging.getLogger(__name__)

ERROR_STATUS = {
    ScanErrorKind.NOT_FOUND: 404,
    ScanErrorKind.INVALID_REFERENCE: 400,
    ScanErrorKind.THROTTLED: 429,
    ScanErrorKind.TIMEOUT: 504,
    ScanErrorKind.FAILED: 502,
}


def get_orchestrator(request: Request) -> ScanOrchestrator:
    return request.app.state.scan_orchestrator


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def _client_identity(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",", 1)[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _retry_after(exc: ScanError) -> Optional[int]:
    for candidate in (exc, getattr(exc, "primary", None), getattr(exc, "fallback", None)):
        if isinstance(candidate, ThrottledError) and candidate.retry_after_s:
            return candidate.retry_after_s
    return None


def _http_error(exc: ScanError) -> HTTPException:
    status = ERROR_STATUS.get(exc.kind, 502)
    headers = None
    retry_after = _retry_after(exc)
    if status == 429 and retry_after:
        headers = {"Retry-After": str(retry_after)}
    return HTTPException(status_code=status, detail=str(exc), headers=headers)


@router.post(
    "/scans",
    response_model=ScanResult,
    responses={
        400: {"model": ErrorDetail},
        404: {"model": ErrorDetail},
        429: {"model": ErrorDetail},
        502: {"model": ErrorDetail},
        504: {"model": ErrorDetail},
    },
)
async def create_scan(
    body: ScanRequest,
    request: Request,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> ScanResult:
    """Scan a repository (or return the recent result for it) and record it."""
    client = _client_identity(request)
    if not limiter.allow(client):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Try again in a minute.",
            headers={"Retry-After": str(limiter.retry_after_s(client))},
        )
    since = body.since if body.since is not None else orchestrator.settings.default_since
    if not is_valid_since(since):
        raise HTTPException(status_code=400, detail="Invalid since: use all, 6m, 1y, 2y or YYYY-MM-DD")
    try:
        ref = parse_repo_ref(body.repo, allow_local=False)
        return await orchestrator.run_scan(ref, parse_since(since), body.execution_class)
    except ScanError as exc:
        log.info("scan of %r failed (%s): %s", body.repo, exc.kind.value, exc)
        raise _http_error(exc) from exc


@router.get(
    "/scans/{scan_id}",
    response_model=ScanResult,
    responses={404: {"model": ErrorDetail}},
)
async def get_scan(scan_id: str, orchestrator: ScanOrchestrator = Depends(get_orchestrator)) -> ScanResult:
    """Get a recorded scan by id."""
    result = await orchestrator.get_scan(scan_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return result
