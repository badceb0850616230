"""Pydantic models."""

from app.models.error import ErrorDetail
from app.models.scan import (
    AttributionTag,
    AttributionTally,
    CommitRecord,
    ExecutionClass,
    FingerprintMode,
    IndicatorSet,
    ScanEvent,
    ScanRequest,
    ScanResult,
    ScoreCard,
    ScoreFactor,
    SourcePath,
)

__all__ = [
    "AttributionTag",
    "AttributionTally",
    "CommitRecord",
    "ErrorDetail",
    "ExecutionClass",
    "FingerprintMode",
    "IndicatorSet",
    "ScanEvent",
    "ScanRequest",
    "ScanResult",
    "ScoreCard",
    "ScoreFactor",
    "SourcePath",
]
