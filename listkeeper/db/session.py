"""
Database engine and session configuration.

Engines are built lazily from settings so importing the library never opens
a connection. Hosts with their own engine only need build_engine() (or
nothing at all): every list operation works on the session it is given.
"""

from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from listkeeper.core.config import settings


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite:"))


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """
    Let pysqlite/aiosqlite honour SAVEPOINT.

    The driver otherwise manages BEGIN itself and nested transactions
    silently misbehave.
    """

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create a synchronous engine for the given URL (defaults to settings.DATABASE_URL)."""
    url = url or settings.DATABASE_URL
    kwargs = {"echo": settings.DEBUG if echo is None else echo, "future": True}
    if _is_memory_sqlite(url):
        # One shared connection, otherwise every checkout sees an empty database
        kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    return engine


def build_async_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an asyncio engine for the given URL (defaults to settings.ASYNC_DATABASE_URL)."""
    url = url or settings.ASYNC_DATABASE_URL
    kwargs = {"echo": settings.DEBUG if echo is None else echo, "future": True}
    if _is_memory_sqlite(url):
        kwargs.update(poolclass=StaticPool)

    engine = create_async_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine.sync_engine)
    return engine


def build_session_maker(engine: Engine) -> sessionmaker:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


def build_async_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Keeps positions readable after commit without a lazy load
    )


@contextmanager
def session_scope(maker: sessionmaker) -> Generator[Session, None, None]:
    """Commit on success, roll back on any error, always close."""
    with maker() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


@asynccontextmanager
async def get_async_session_context(maker: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Context manager helper for async DB sessions (used in tests/scripts)."""
    async with maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
