"""SQLAlchemy-backed ScanStore (SQLite by default, PostgreSQL via DATABASE_URL).

``scan_results`` holds one row per repository identity and is written with a
single ``INSERT ... ON CONFLICT (identity_key) DO UPDATE`` on SQLite and
PostgreSQL. ``scan_events`` is append-only.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    and_,
    case,
    create_engine,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import NullPool

from app.adapters.scan_store import merge_fingerprint
from app.models.scan import FingerprintMode, ScanEvent, ScanResult, SourcePath
from app.services.fingerprint_service import Fingerprint
from app.services.scan_errors import PersistenceConflictError

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ScanResultRecord(Base):
    __tablename__ = "scan_results"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    identity_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fingerprint_mode: Mapped[str] = mapped_column(String(32), nullable=False)
    repo_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    attribution_ratio: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    grade: Mapped[str] = mapped_column(String(4), nullable=False, default="F")
    source_path: Mapped[str] = mapped_column(String(16), nullable=False)
    partial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ScanEventRecord(Base):
    __tablename__ = "scan_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    attribution_ratio: Mapped[float] = mapped_column(Float, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    source_path: Mapped[str] = mapped_column(String(16), nullable=False)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _create_engine(url: str):
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = NullPool
    return create_engine(url, **kwargs)


def _payload(result: ScanResult) -> str:
    return result.model_dump_json(exclude={"id", "created_at", "updated_at"})


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class SqlScanStore:
    def __init__(self, database_url: str) -> None:
        self.engine = _create_engine(database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        Base.metadata.create_all(bind=self.engine)

    @property
    def backend(self) -> str:
        return self.engine.dialect.name

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _to_result(row: ScanResultRecord) -> ScanResult:
        result = ScanResult.model_validate_json(row.payload_json)
        # Columns are authoritative: the payload may carry a fingerprint that
        # the upsert declined to store.
        return result.model_copy(
            update={
                "id": row.id,
                "identity_key": row.identity_key,
                "fingerprint": row.fingerprint,
                "fingerprint_mode": FingerprintMode(row.fingerprint_mode),
                "created_at": _as_utc(row.created_at),
                "updated_at": _as_utc(row.updated_at),
            }
        )

    def _values(self, fingerprint: Fingerprint, result: ScanResult, now: datetime) -> dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "identity_key": fingerprint.identity_key,
            "fingerprint": fingerprint.value,
            "fingerprint_mode": fingerprint.mode.value,
            "repo_name": result.repo_name,
            "attribution_ratio": result.attribution_ratio,
            "points": result.points,
            "grade": result.grade,
            "source_path": result.source_path.value,
            "partial": result.partial,
            "payload_json": _payload(result),
            "created_at": now,
            "updated_at": now,
        }

    def _upsert_on_conflict(self, session: Session, insert_fn, values: dict[str, Any]) -> None:
        table = ScanResultRecord.__table__
        stmt = insert_fn(table).values(**values)
        excluded = stmt.excluded
        keep_full = and_(
            table.c.fingerprint_mode == FingerprintMode.FULL_HISTORY.value,
            excluded.fingerprint_mode == FingerprintMode.PARTIAL_HISTORY.value,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.identity_key],
            set_={
                "fingerprint": case((keep_full, table.c.fingerprint), else_=excluded.fingerprint),
                "fingerprint_mode": case((keep_full, table.c.fingerprint_mode), else_=excluded.fingerprint_mode),
                "repo_name": excluded.repo_name,
                "attribution_ratio": excluded.attribution_ratio,
                "points": excluded.points,
                "grade": excluded.grade,
                "source_path": excluded.source_path,
                "partial": excluded.partial,
                "payload_json": excluded.payload_json,
                "updated_at": excluded.updated_at,
            },
        )
        session.execute(stmt)

    def _insert_or_raise(self, fingerprint: Fingerprint, values: dict[str, Any]) -> None:
        try:
            with self._session() as session:
                session.add(ScanResultRecord(**values))
        except IntegrityError as exc:
            raise PersistenceConflictError(
                f"concurrent insert for identity {fingerprint.identity_key}"
            ) from exc

    def _update_existing(self, fingerprint: Fingerprint, values: dict[str, Any]) -> None:
        with self._session() as session:
            row = session.execute(
                select(ScanResultRecord)
                .where(ScanResultRecord.identity_key == fingerprint.identity_key)
                .with_for_update()
            ).scalar_one()
            existing = self._to_result(row)
            value, mode = merge_fingerprint(existing, fingerprint)
            for key, val in values.items():
                if key in {"id", "created_at", "identity_key"}:
                    continue
                setattr(row, key, val)
            row.fingerprint = value
            row.fingerprint_mode = mode.value

    def upsert_scan_result(self, fingerprint: Fingerprint, result: ScanResult) -> str:
        values = self._values(fingerprint, result, datetime.now(timezone.utc))
        dialect = self.engine.dialect.name
        if dialect in ("sqlite", "postgresql"):
            insert_fn = sqlite.insert if dialect == "sqlite" else postgresql.insert
            with self._session() as session:
                self._upsert_on_conflict(session, insert_fn, values)
        else:
            exists = self.get_by_identity(fingerprint.identity_key) is not None
            if not exists:
                try:
                    self._insert_or_raise(fingerprint, values)
                except PersistenceConflictError:
                    log.info("insert lost race for %s, updating", fingerprint.identity_key)
                    exists = True
            if exists:
                self._update_existing(fingerprint, values)

        with self._session() as session:
            return session.execute(
                select(ScanResultRecord.id).where(ScanResultRecord.identity_key == fingerprint.identity_key)
            ).scalar_one()

    def append_scan_event(self, fingerprint: Fingerprint, result: ScanResult) -> None:
        with self._session() as session:
            session.add(
                ScanEventRecord(
                    identity_key=fingerprint.identity_key,
                    fingerprint=fingerprint.value,
                    attribution_ratio=result.attribution_ratio,
                    points=result.points,
                    source_path=result.source_path.value,
                    scanned_at=datetime.now(timezone.utc),
                )
            )

    def get_scan(self, scan_id: str) -> Optional[ScanResult]:
        with self._session() as session:
            row = session.get(ScanResultRecord, scan_id)
            return self._to_result(row) if row is not None else None

    def get_by_identity(self, identity_key: str) -> Optional[ScanResult]:
        with self._session() as session:
            row = session.execute(
                select(ScanResultRecord).where(ScanResultRecord.identity_key == identity_key)
            ).scalar_one_or_none()
            return self._to_result(row) if row is not None else None

    def list_events(self, identity_key: str, limit: int = 100) -> list[ScanEvent]:
        with self._session() as session:
            rows = (
                session.execute(
                    select(ScanEventRecord)
                    .where(ScanEventRecord.identity_key == identity_key)
                    .order_by(ScanEventRecord.id.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [
                ScanEvent(
                    identity_key=row.identity_key,
                    fingerprint=row.fingerprint,
                    attribution_ratio=row.attribution_ratio,
                    points=row.points,
                    source_path=SourcePath(row.source_path),
                    scanned_at=_as_utc(row.scanned_at),
                )
                for row in reversed(rows)
            ]

    def count_scans(self) -> int:
        with self._session() as session:
            return int(session.execute(select(func.count(ScanResultRecord.id))).scalar() or 0)
