from __future__ import annotations

import json
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from roster.config import Settings
from roster.db import SqlRecordStore
from roster.invalidation import CacheInvalidationCoordinator, InvalidationSink
from roster.models import Base, StoredRecord


class RecordingSink(InvalidationSink):
    def __init__(self):
        self.published: list[list[str]] = []

    async def publish(self, keys: list[str]) -> None:
        self.published.append(keys)


@pytest.fixture()
def session_factory():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def store(session_factory) -> SqlRecordStore:
    return SqlRecordStore(session_factory)


@pytest.fixture()
def seed(session_factory):
    """Insert a record synchronously: ``seed("members", "m1", {"Status": "Active"})``."""
    def _seed(table: str, record_id: str, fields: dict[str, Any]) -> None:
        session = session_factory()
        try:
            session.add(StoredRecord(id=record_id, table_name=table, fields_json=json.dumps(fields)))
            session.commit()
        finally:
            session.close()
    return _seed


@pytest.fixture()
def fields_of(session_factory):
    """Read back a record's fields, or None if it no longer exists."""
    def _fields(record_id: str) -> dict[str, Any] | None:
        session = session_factory()
        try:
            row = session.execute(select(StoredRecord).where(StoredRecord.id == record_id)).scalars().first()
            return json.loads(row.fields_json) if row else None
        finally:
            session.close()
    return _fields


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        backend="sqlite",
        fail_open=True,
        exempt_initiatives=["Xperiment"],
        member_batch_size=2,
        max_retries=2,
        backoff_seconds=0.0,
        max_backoff_seconds=0.0,
        invalidation_url="",
    )


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def coordinator(sink) -> CacheInvalidationCoordinator:
    return CacheInvalidationCoordinator([sink])
