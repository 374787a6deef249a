"""Async SQLAlchemy engine backing the SQL dedup store."""

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.config import settings

logger = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite+aiosqlite:///"


def _prepare_sqlite_file(database_url: str) -> None:
    if not database_url.startswith(_SQLITE_PREFIX):
        return
    path = database_url.removeprefix(_SQLITE_PREFIX)
    if path in {"", ":memory:"}:
        return
    parent = Path(path).parent
    if str(parent) != ".":
        parent.mkdir(parents=True, exist_ok=True)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the engine; SQLite gets WAL and a busy timeout for concurrent claims."""
    if "sqlite" not in database_url:
        return create_async_engine(database_url, echo=echo)

    _prepare_sqlite_file(database_url)
    sqlite_engine = create_async_engine(database_url, echo=echo, connect_args={"timeout": 30})

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.close()

    return sqlite_engine


engine = build_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db() -> None:
    from src.models import dedup_entry  # noqa: F401  registers the table

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Dedup tables ready on %s", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
