"""SQLite-backed record store for local runs and tests.

Records are stored as JSON documents in a single ``records`` table and
filtered in-process by evaluating the same formula objects the Airtable
client sends over the wire.

The ``SqlRecordStore`` methods are ``async`` only to share the
``RecordStore`` interface: they run synchronous SQLAlchemy queries and block
the event loop while doing so. Use it for local development and tests, not
behind a busy server.
"""
from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Generator

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from roster.config import DEFAULT_DB_PATH
from roster.errors import StoreError
from roster.formulas import Formula
from roster.models import Base, StoredRecord
from roster.store import Record, RecordStore
from roster.utils import json_parse

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path or DEFAULT_DB_PATH)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope(factory: Callable[[], Session] | None = None) -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage::

        with session_scope() as session:
            ...
    """
    session = (factory or get_session)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class SqlRecordStore(RecordStore):
    """Record store over a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._factory = session_factory

    def _scope(self):
        return session_scope(self._factory)

    @staticmethod
    def _to_record(row: StoredRecord) -> Record:
        return Record(id=row.id, fields=json_parse(row.fields_json, {}))

    @staticmethod
    def _get(session: Session, table: str, record_id: str) -> StoredRecord | None:
        return session.execute(
            select(StoredRecord).where(StoredRecord.table_name == table, StoredRecord.id == record_id)
        ).scalars().first()

    async def select(
        self, table: str, formula: Formula | None = None, *, max_records: int | None = None,
    ) -> list[Record]:
        with self._scope() as session:
            rows = session.execute(
                select(StoredRecord).where(StoredRecord.table_name == table).order_by(StoredRecord.seq)
            ).scalars().all()
            records = [self._to_record(r) for r in rows]
        if formula is not None:
            records = [r for r in records if formula.matches(r.fields)]
        log.debug("select %s -> %d record(s)", table, len(records))
        return records[:max_records] if max_records else records

    async def find(self, table: str, record_id: str) -> Record | None:
        with self._scope() as session:
            row = self._get(session, table, record_id)
            return self._to_record(row) if row else None

    async def update(self, table: str, record_id: str, fields: dict[str, Any]) -> Record:
        with self._scope() as session:
            row = self._get(session, table, record_id)
            if row is None:
                raise StoreError(f"update {table}/{record_id} failed: not found", status_code=404)
            merged = json_parse(row.fields_json, {})
            merged.update(fields)
            row.fields_json = json.dumps(merged)
            session.flush()
            return self._to_record(row)

    async def delete(self, table: str, record_id: str) -> None:
        with self._scope() as session:
            row = self._get(session, table, record_id)
            if row is None:
                raise StoreError(f"delete {table}/{record_id} failed: not found", status_code=404)
            session.delete(row)
