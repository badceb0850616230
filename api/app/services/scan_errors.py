"""Typed scan failures. Callers of run_scan only ever see ScanError subclasses."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ScanErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    THROTTLED = "throttled"
    INVALID_REFERENCE = "invalid_reference"
    FAILED = "failed"


class ScanError(RuntimeError):
    kind: ScanErrorKind = ScanErrorKind.FAILED

    def __init__(self, message: str, *, kind: Optional[ScanErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class RepoNotFoundError(ScanError):
    kind = ScanErrorKind.NOT_FOUND


class ScanTimeoutError(ScanError):
    kind = ScanErrorKind.TIMEOUT


class ThrottledError(ScanError):
    kind = ScanErrorKind.THROTTLED

    def __init__(self, message: str, *, retry_after_s: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class InvalidRepoReferenceError(ScanError):
    kind = ScanErrorKind.INVALID_REFERENCE


class AcquisitionError(ScanError):
    """Generic failure of one acquisition path (clone failed, bad payload, ...)."""


class PersistenceConflictError(ScanError):
    """Raised inside the store when a concurrent insert wins the race.

    The upsert retries as an update, so this never reaches run_scan callers.
    """


class ScanFailedError(ScanError):
    """Both acquisition paths failed.

    The kind is the primary failure's kind when that one is specific, otherwise
    the fallback's.
    """

    def __init__(
        self,
        message: str,
        *,
        primary: ScanError,
        fallback: Optional[ScanError] = None,
    ) -> None:
        kind = primary.kind
        if kind == ScanErrorKind.FAILED and fallback is not None:
            kind = fallback.kind
        super().__init__(message, kind=kind)
        self.primary = primary
        self.fallback = fallback
