"""Shared test configuration. Loaded before any src module is imported."""

import hashlib
import hmac
import os

# Override settings before any src modules are imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SUPPORTED_OWNERS"] = ""
os.environ.pop("UPSTASH_REDIS_REST_URL", None)

import pytest
from src.clients.dedup_store import DedupStore
from src.database import Base, engine
from src.errors import DedupStoreError
from src.models import dedup_entry  # noqa: F401


@pytest.fixture
async def db():
    """Create the dedup tables for one test, drop them afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


class FakeDedupStore(DedupStore):
    """Dict-backed store that records every call and can simulate an outage."""

    def __init__(self, existing: set[str] | None = None) -> None:
        self.values: dict[str, str] = {key: "1" for key in existing or ()}
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    def _record(self, op: str, key: str) -> None:
        self.calls.append((op, key))
        if self.fail_with is not None:
            raise self.fail_with

    async def get(self, key):
        self._record("get", key)
        return self.values.get(key)

    async def set(self, key, value="1", *, ex):
        self._record("set", key)
        self.values[key] = value

    async def claim(self, key, value="1", *, ex):
        self._record("claim", key)
        if key in self.values:
            return False
        self.values[key] = value
        return True

    async def delete(self, key):
        self._record("delete", key)
        self.values.pop(key, None)


@pytest.fixture
def dedup_store() -> FakeDedupStore:
    return FakeDedupStore()


@pytest.fixture
def unavailable_dedup_store() -> FakeDedupStore:
    store = FakeDedupStore()
    store.fail_with = DedupStoreError("connection refused")
    return store


def _hub_signature(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def sign():
    """``x-hub-signature-256`` value for *body* under *secret*."""
    return _hub_signature
