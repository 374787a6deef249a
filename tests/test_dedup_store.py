"""Tests for the SQL and Upstash dedup store backends."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import update
from upstash_redis.errors import UpstashError

from src.clients.dedup_store import SqlDedupStore, UpstashDedupStore
from src.database import async_session
from src.errors import DedupStoreError
from src.models.dedup_entry import DedupEntry

UPSTASH_URL = "https://eu1-test.upstash.io"


async def _expire(key: str) -> None:
    async with async_session() as session, session.begin():
        await session.execute(
            update(DedupEntry)
            .where(DedupEntry.key == key)
            .values(expires_at=datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=1))
        )


async def test_sql_claim_is_exclusive(db):
    store = SqlDedupStore(async_session)

    assert await store.claim("check:456:completed:success", ex=600) is True
    assert await store.claim("check:456:completed:success", ex=600) is False
    assert await store.get("check:456:completed:success") == "1"


async def test_sql_expired_key_can_be_claimed_again(db):
    store = SqlDedupStore(async_session)
    await store.claim("checks-created:abc", ex=3600)

    await _expire("checks-created:abc")

    assert await store.get("checks-created:abc") is None
    assert await store.claim("checks-created:abc", ex=3600) is True


async def test_sql_set_overwrites_and_delete_releases(db):
    store = SqlDedupStore(async_session)
    await store.set("k", "first", ex=60)
    await store.set("k", "second", ex=60)
    assert await store.get("k") == "second"

    await store.delete("k")

    assert await store.get("k") is None
    assert await store.claim("k", ex=60) is True


async def test_sql_errors_surface_as_dedup_store_error():
    # no ``db`` fixture: the table does not exist
    store = SqlDedupStore(async_session)
    with pytest.raises(DedupStoreError):
        await store.get("anything")


def _upstash(**results) -> tuple[UpstashDedupStore, AsyncMock]:
    client = AsyncMock()
    for command, value in results.items():
        getattr(client, command).return_value = value
    return UpstashDedupStore(UPSTASH_URL, "token", client=client), client


async def test_upstash_claim_uses_set_nx():
    store, client = _upstash()
    client.set.side_effect = ["OK", None]

    assert await store.claim("check:1:queued:none", ex=600) is True
    assert await store.claim("check:1:queued:none", ex=600) is False

    client.set.assert_awaited_with("check:1:queued:none", "1", nx=True, ex=600)


async def test_upstash_get_set_and_delete():
    store, client = _upstash(get="1")

    assert await store.get("k") == "1"
    await store.set("k", "v", ex=30)
    await store.delete("k")
    await store.close()

    client.get.assert_awaited_once_with("k")
    client.set.assert_awaited_once_with("k", "v", ex=30)
    client.delete.assert_awaited_once_with("k")
    client.close.assert_awaited_once()


async def test_upstash_error_response_raises():
    store, client = _upstash()
    client.get.side_effect = UpstashError("WRONGPASS invalid or missing auth token")

    with pytest.raises(DedupStoreError, match="WRONGPASS"):
        await store.get("k")


async def test_upstash_network_error_raises():
    store, client = _upstash()
    client.set.side_effect = httpx.ConnectError("connection refused")

    with pytest.raises(DedupStoreError, match="connection refused"):
        await store.claim("k", ex=10)


def test_upstash_requires_configuration():
    with pytest.raises(DedupStoreError):
        UpstashDedupStore("", "")
