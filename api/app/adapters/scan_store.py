"""ScanStore abstraction + in-memory backend.

Records are keyed by ``identity_key``. ``upsert_scan_result`` is idempotent
by key with last-write-wins values, except that a full-history fingerprint is
never replaced by a partial-history one. ``append_scan_event`` always inserts.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

from app.models.scan import FingerprintMode, ScanEvent, ScanResult
from app.services.fingerprint_service import Fingerprint


def merge_fingerprint(
    existing: Optional[ScanResult],
    incoming: Fingerprint,
) -> tuple[str, FingerprintMode]:
    """Fingerprint to store: upgrade to full history, never downgrade."""
    if (
        existing is not None
        and existing.fingerprint_mode == FingerprintMode.FULL_HISTORY
        and incoming.mode == FingerprintMode.PARTIAL_HISTORY
    ):
        return existing.fingerprint, existing.fingerprint_mode
    return incoming.value, incoming.mode


class ScanStore(Protocol):
    """Protocol for scan persistence. Implementations: InMemoryScanStore, SqlScanStore."""

    def upsert_scan_result(self, fingerprint: Fingerprint, result: ScanResult) -> str:
        """Insert or replace the record for ``fingerprint.identity_key``; returns its id."""
        ...

    def append_scan_event(self, fingerprint: Fingerprint, result: ScanResult) -> None:
        ...

    def get_scan(self, scan_id: str) -> Optional[ScanResult]:
        ...

    def get_by_identity(self, identity_key: str) -> Optional[ScanResult]:
        ...

    def list_events(self, identity_key: str, limit: int = 100) -> list[ScanEvent]:
        ...

    def count_scans(self) -> int:
        ...


class InMemoryScanStore:
    """In-memory ScanStore. Used for tests and when no database is configured."""

    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_identity: dict[str, ScanResult] = {}
        self._identity_by_id: dict[str, str] = {}
        self._events: list[ScanEvent] = []

    def upsert_scan_result(self, fingerprint: Fingerprint, result: ScanResult) -> str:
        now = datetime.now(timezone.utc)
        key = fingerprint.identity_key
        with self._lock:
            existing = self._by_identity.get(key)
            value, mode = merge_fingerprint(existing, fingerprint)
            stored = result.model_copy(
                update={
                    "id": existing.id if existing is not None else uuid.uuid4().hex,
                    "fingerprint": value,
                    "fingerprint_mode": mode,
                    "identity_key": key,
                    "created_at": existing.created_at if existing is not None else now,
                    "updated_at": now,
                },
                deep=True,
            )
            self._by_identity[key] = stored
            self._identity_by_id[stored.id] = key
            return stored.id

    def append_scan_event(self, fingerprint: Fingerprint, result: ScanResult) -> None:
        event = ScanEvent(
            identity_key=fingerprint.identity_key,
            fingerprint=fingerprint.value,
            attribution_ratio=result.attribution_ratio,
            points=result.points,
            source_path=result.source_path,
        )
        with self._lock:
            self._events.append(event)

    def get_scan(self, scan_id: str) -> Optional[ScanResult]:
        with self._lock:
            key = self._identity_by_id.get(scan_id)
            if key is None:
                return None
            stored = self._by_identity.get(key)
            return stored.model_copy(deep=True) if stored is not None else None

    def get_by_identity(self, identity_key: str) -> Optional[ScanResult]:
        with self._lock:
            stored = self._by_identity.get(identity_key)
            return stored.model_copy(deep=True) if stored is not None else None

    def list_events(self, identity_key: str, limit: int = 100) -> list[ScanEvent]:
        with self._lock:
            matching = [e for e in self._events if e.identity_key == identity_key]
        return matching[-limit:]

    def count_scans(self) -> int:
        with self._lock:
            return len(self._by_identity)
