from __future__ import annotations

import logging
import os
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from app.adapters.scan_store import InMemoryScanStore, ScanStore
from app.adapters.sql_scan_store import SqlScanStore
from app.routers import health, scans
from app.services.clone_analyzer import CloneAnalyzer
from app.services.github_client import GitHubClient
from app.services.scan_cache import RateLimiter, ResultCache
from app.services.scan_config import ScanSettings
from app.services.scan_orchestrator import ScanOrchestrator
from app.services.snapshot_service import SnapshotArena

app = FastAPI(title="Vibe Scan API", version="1.0.0")

for _name in ("app", "vibescan.api.slow"):
    _logger = logging.getLogger(_name)
    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        _logger.addHandler(handler)
    _logger.propagate = False
    _logger.setLevel(logging.INFO)
logger = logging.getLogger("vibescan.api.slow")


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "1" if default else "").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _slow_request_ms_threshold() -> float:
    raw = os.getenv("API_SLOW_REQUEST_MS", "1500").strip()
    try:
        return max(25.0, float(raw))
    except ValueError:
        return 1500.0


def build_store(settings: ScanSettings) -> ScanStore:
    url = (settings.database_url or "").strip()
    if not url or url == "memory":
        return InMemoryScanStore()
    return SqlScanStore(url)


def build_orchestrator(
    settings: ScanSettings,
    *,
    store: ScanStore | None = None,
    arena: SnapshotArena | None = None,
    github: GitHubClient | None = None,
) -> ScanOrchestrator:
    arena = arena or SnapshotArena(
        tmp_dir=settings.tmp_dir,
        clone_timeout_s=settings.clone_timeout_s,
        clone_depth=settings.clone_depth,
    )
    github = github or GitHubClient(token=settings.github_token, base_url=settings.github_api_url)
    return ScanOrchestrator(
        settings=settings,
        store=store if store is not None else build_store(settings),
        analyzer=CloneAnalyzer(arena),
        pages=github,
        cache=ResultCache(ttl_s=settings.cache_ttl_s),
    )


# Configure CORS
allowed_origins_str = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
allowed_origins = [origin.strip() for origin in allowed_origins_str.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

settings = ScanSettings.from_env()
app.state.scan_settings = settings
app.state.snapshot_arena = SnapshotArena(
    tmp_dir=settings.tmp_dir,
    clone_timeout_s=settings.clone_timeout_s,
    clone_depth=settings.clone_depth,
)
app.state.github_client = GitHubClient(token=settings.github_token, base_url=settings.github_api_url)
app.state.scan_orchestrator = build_orchestrator(
    settings,
    arena=app.state.snapshot_arena,
    github=app.state.github_client,
)
app.state.rate_limiter = RateLimiter(limit=settings.rate_limit_per_minute, window_s=60.0)


@app.get("/", include_in_schema=False)
async def root():
    """Redirect to API documentation."""
    return RedirectResponse(url="/docs")


app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(scans.router, prefix="/api", tags=["scans"])


@app.on_event("shutdown")
async def _release_resources() -> None:
    reaped = app.state.snapshot_arena.reap()
    if reaped:
        logger.info("api_shutdown reaped_snapshots=%s", reaped)
    await app.state.github_client.aclose()


@app.middleware("http")
async def log_slow_requests(request: Request, call_next):
    start = time.perf_counter()
    status_code: int | None = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception:
        status_code = 500
        raise
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms >= _slow_request_ms_threshold() or _env_flag("API_LOG_ALL_REQUESTS") or (status_code or 500) >= 500:
            logger.warning(
                "slow_api_request method=%s path=%s status=%s elapsed_ms=%.2f",
                request.method,
                request.url.path,
                status_code,
                elapsed_ms,
            )
