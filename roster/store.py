"""Record-store clients.

``RecordStore`` is the narrow async interface the engine needs: filtered
reads, find-by-id, and single-record writes. There is no batch or
transactional primitive on purpose; the store does not offer one.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote as url_quote

import httpx

from roster.config import Settings, get_settings
from roster.errors import RateLimited, StoreError, StoreTimeout
from roster.formulas import Formula

log = logging.getLogger(__name__)

_USER_AGENT = "Roster/1.0"
_PAGE_SIZE = 100


@dataclass
class Record:
    id: str
    fields: dict[str, Any] = field(default_factory=dict)


class RecordStore:
    """Async record-store interface. Table arguments are logical names."""

    async def select(
        self, table: str, formula: Formula | None = None, *, max_records: int | None = None,
    ) -> list[Record]:
        raise NotImplementedError

    async def find(self, table: str, record_id: str) -> Record | None:
        raise NotImplementedError

    async def update(self, table: str, record_id: str, fields: dict[str, Any]) -> Record:
        raise NotImplementedError

    async def delete(self, table: str, record_id: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class Backoff:
    """Bounded exponential backoff with jitter for one call's retry budget."""

    def __init__(self, base: float = 1.0, maximum: float = 16.0, retries: int = 3):
        self.base = base
        self.maximum = maximum
        self.retries = retries

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based): base * 2**attempt + jitter."""
        step = min(self.base * (2 ** attempt), self.maximum)
        return step + random.uniform(0, self.base)

    async def wait(self, attempt: int) -> None:
        delay = self.delay(attempt)
        log.warning("Record store rate limited, retry %d/%d in %.1fs", attempt + 1, self.retries, delay)
        await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Airtable
# ---------------------------------------------------------------------------


class AirtableStore(RecordStore):
    """Record store backed by the Airtable REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_id: str,
        tables: dict[str, str] | None = None,
        api_url: str = "https://api.airtable.com/v0",
        timeout: float = 15.0,
        backoff: Backoff | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_id = base_id
        self.tables = tables or {}
        self.backoff = backoff or Backoff()
        self._client = httpx.AsyncClient(
            base_url=api_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Authorization": f"Bearer {api_key}",
                "User-Agent": _USER_AGENT,
            },
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> AirtableStore:
        return cls(
            api_key=settings.airtable_api_key,
            base_id=settings.airtable_base_id,
            tables=settings.tables,
            api_url=settings.airtable_api_url,
            timeout=settings.request_timeout_seconds,
            backoff=Backoff(settings.backoff_seconds, settings.max_backoff_seconds, settings.max_retries),
            **kwargs,
        )

    def _path(self, table: str, record_id: str | None = None) -> str:
        table_id = self.tables.get(table, table)
        path = f"/{self.base_id}/{url_quote(table_id, safe='')}"
        if record_id:
            path += f"/{url_quote(record_id, safe='')}"
        return path

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.TimeoutException as exc:
                raise StoreTimeout(f"{method} {path} timed out") from exc
            except httpx.HTTPError as exc:
                raise StoreError(f"{method} {path} failed: {exc}", retryable=True) from exc

            if resp.status_code == 429:
                if attempt >= self.backoff.retries:
                    log.error("Rate limit retries exhausted for %s %s", method, path)
                    raise RateLimited(f"{method} {path} rate limited", attempts=attempt + 1)
                await self.backoff.wait(attempt)
                attempt += 1
                continue
            return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response, action: str) -> None:
        if resp.status_code >= 400:
            detail = resp.text[:200]
            raise StoreError(
                f"{action} failed with HTTP {resp.status_code}: {detail}",
                status_code=resp.status_code,
                retryable=resp.status_code >= 500,
            )

    @staticmethod
    def _to_record(data: dict[str, Any]) -> Record:
        return Record(id=data["id"], fields=data.get("fields") or {})

    async def select(
        self, table: str, formula: Formula | None = None, *, max_records: int | None = None,
    ) -> list[Record]:
        params: dict[str, Any] = {"pageSize": _PAGE_SIZE}
        if formula is not None:
            params["filterByFormula"] = formula.compile()
        if max_records:
            params["maxRecords"] = max_records

        records: list[Record] = []
        while True:
            resp = await self._request("GET", self._path(table), params=params)
            self._raise_for_status(resp, f"select {table}")
            payload = resp.json()
            records.extend(self._to_record(r) for r in payload.get("records", []))
            offset = payload.get("offset")
            if not offset or (max_records and len(records) >= max_records):
                break
            params["offset"] = offset
        log.debug("select %s -> %d record(s)", table, len(records))
        return records[:max_records] if max_records else records

    async def find(self, table: str, record_id: str) -> Record | None:
        resp = await self._request("GET", self._path(table, record_id))
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"find {table}/{record_id}")
        return self._to_record(resp.json())

    async def update(self, table: str, record_id: str, fields: dict[str, Any]) -> Record:
        resp = await self._request("PATCH", self._path(table, record_id), json={"fields": fields})
        self._raise_for_status(resp, f"update {table}/{record_id}")
        return self._to_record(resp.json())

    async def delete(self, table: str, record_id: str) -> None:
        resp = await self._request("DELETE", self._path(table, record_id))
        self._raise_for_status(resp, f"delete {table}/{record_id}")

    async def aclose(self) -> None:
        await self._client.aclose()


def build_store(settings: Settings | None = None) -> RecordStore:
    """Create the configured record store."""
    settings = settings or get_settings()
    if settings.backend == "sqlite":
        from roster.db import SqlRecordStore, init_db
        init_db(settings.database_path)
        return SqlRecordStore()
    if not settings.airtable_api_key or not settings.airtable_base_id:
        raise StoreError("AIRTABLE_API_KEY and AIRTABLE_BASE_ID must be set for the airtable backend")
    return AirtableStore.from_settings(settings)
