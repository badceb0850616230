"""Adapters for external storage: in-memory and SQLAlchemy scan stores."""

from app.adapters.scan_store import InMemoryScanStore, ScanStore
from app.adapters.sql_scan_store import SqlScanStore

__all__ = ["InMemoryScanStore", "ScanStore", "SqlScanStore"]
