"""Cache-invalidation publishing.

After a mutation the engine publishes the logical key groups whose cached
views are now stale (``memberships``, ``participation``). Delivery is
best effort: a failing sink is logged and never fails the mutation.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable

import httpx

from roster.config import Settings, get_settings

log = logging.getLogger(__name__)

MEMBERSHIPS = "memberships"
PARTICIPATION = "participation"


class InvalidationSink:
    async def publish(self, keys: list[str]) -> None:
        raise NotImplementedError


class LoggingSink(InvalidationSink):
    async def publish(self, keys: list[str]) -> None:
        log.info("Cache invalidated: %s", ", ".join(keys))


class HttpInvalidationSink(InvalidationSink):
    """POSTs ``{"keys": [...]}`` to a downstream endpoint. Any 2xx is success."""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def publish(self, keys: list[str]) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(self.url, json={"keys": keys}, headers=headers)
            resp.raise_for_status()


class CacheInvalidationCoordinator:
    def __init__(self, sinks: Iterable[InvalidationSink] | None = None):
        self.sinks = list(sinks) if sinks is not None else [LoggingSink()]

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> CacheInvalidationCoordinator:
        settings = settings or get_settings()
        if settings.invalidation_url:
            return cls([HttpInvalidationSink(
                settings.invalidation_url, settings.invalidation_token, settings.request_timeout_seconds,
            )])
        return cls()

    async def invalidate(self, keys: Iterable[str]) -> None:
        """Publish *keys* to every sink. Never raises."""
        cleaned = sorted({k.strip() for k in keys if k and k.strip()})
        if not cleaned:
            return
        results = await asyncio.gather(
            *(sink.publish(cleaned) for sink in self.sinks), return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                log.warning("Cache invalidation via %s failed for %s: %s",
                            type(sink).__name__, cleaned, result)
