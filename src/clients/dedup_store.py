"""Idempotency ledger used to suppress duplicate GitHub mutations.

Two backends share one interface: Upstash Redis for deployed
instances and a SQL table for local runs and tests. Both raise
``DedupStoreError`` on failure; callers must treat that as a failed request,
never as "not a duplicate".
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from upstash_redis.asyncio import Redis
from upstash_redis.errors import UpstashError

from src.errors import DedupStoreError
from src.models.dedup_entry import DedupEntry

logger = logging.getLogger(__name__)


class DedupStore(ABC):
    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: str = "1", *, ex: int) -> None:
        """Store *value* under *key* for *ex* seconds, overwriting."""

    @abstractmethod
    async def claim(self, key: str, value: str = "1", *, ex: int) -> bool:
        """Atomically store *key* only if it is absent. True if this call won."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Drop *key*, e.g. to release a claim after a failed mutation."""

    async def close(self) -> None:
        return None


class UpstashDedupStore(DedupStore):
    """Upstash Redis through the ``upstash-redis`` async client."""

    def __init__(
        self,
        url: str,
        token: str,
        client: Redis | None = None,
    ) -> None:
        if not url or not token:
            raise DedupStoreError("Upstash not configured: set UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN")
        self._client = client or Redis(url=url, token=token)

    async def _run(self, command: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except (UpstashError, httpx.HTTPError) as exc:
            raise DedupStoreError(f"Upstash {command} failed: {exc}") from exc

    async def get(self, key: str) -> str | None:
        return await self._run("GET", self._client.get(key))

    async def set(self, key: str, value: str = "1", *, ex: int) -> None:
        await self._run("SET", self._client.set(key, value, ex=ex))

    async def claim(self, key: str, value: str = "1", *, ex: int) -> bool:
        result = await self._run("SET NX", self._client.set(key, value, nx=True, ex=ex))
        return result is True or result == "OK"

    async def delete(self, key: str) -> None:
        await self._run("DEL", self._client.delete(key))

    async def close(self) -> None:
        await self._client.close()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlDedupStore(DedupStore):
    """Dedup ledger in the ``dedup_entries`` table.

    ``claim`` relies on the primary key: of two concurrent inserts for the
    same key exactly one commits.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(DedupEntry.value).where(
                        DedupEntry.key == key, DedupEntry.expires_at > _utcnow()
                    )
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise DedupStoreError(f"Dedup lookup failed for {key}: {exc}") from exc

    async def set(self, key: str, value: str = "1", *, ex: int) -> None:
        now = _utcnow()
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(delete(DedupEntry).where(DedupEntry.key == key))
                session.add(DedupEntry(key=key, value=value, expires_at=now + timedelta(seconds=ex)))
        except SQLAlchemyError as exc:
            raise DedupStoreError(f"Dedup write failed for {key}: {exc}") from exc

    async def claim(self, key: str, value: str = "1", *, ex: int) -> bool:
        now = _utcnow()
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    delete(DedupEntry).where(DedupEntry.key == key, DedupEntry.expires_at <= now)
                )
                session.add(DedupEntry(key=key, value=value, expires_at=now + timedelta(seconds=ex)))
        except IntegrityError:
            logger.debug("Dedup key %s already claimed", key)
            return False
        except SQLAlchemyError as exc:
            raise DedupStoreError(f"Dedup claim failed for {key}: {exc}") from exc
        return True

    async def delete(self, key: str) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(delete(DedupEntry).where(DedupEntry.key == key))
        except SQLAlchemyError as exc:
            raise DedupStoreError(f"Dedup delete failed for {key}: {exc}") from exc
