"""
Async engine, session factory and the unit-of-work helpers.

TRANSACTION MODEL
=================

One request == one AsyncSession == one transaction. `get_db` (through
`unit_of_work`) commits when the handler returns and rolls back when
anything raises, so a service either writes all of its changes or none of
them. Notifications queued during the transaction go out only after the
commit.

Inside that transaction, the hot paths (slot claims, promotions, bulk rows)
run in SAVEPOINTs through `run_with_retry`:

  - OperationalError (lock timeout, deadlock, serialization failure) rolls
    back the savepoint only, waits with exponential backoff and retries
  - after STORE_RETRY_ATTEMPTS the failure surfaces as TransientStoreError
  - every other error propagates untouched

SQLite is supported for local runs and tests. pysqlite's implicit
transaction handling breaks SAVEPOINT, so for SQLite we take over
transaction control and start every transaction with BEGIN IMMEDIATE.
That grabs the write lock up front: concurrent writers queue on the
busy timeout instead of deadlocking on a SHARED -> RESERVED upgrade.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import get_settings
from app.core.exceptions import TransientStoreError
from app.core.logging import get_logger
from app.core.metrics import record_db_operation
from app.services.notification_service import discard_events, flush_events, pending_events, truncate_events

logger = get_logger(__name__)
settings = get_settings()

T = TypeVar("T")


def _configure_sqlite(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, **kwargs) -> AsyncEngine:
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("timeout", 30)
        engine = create_async_engine(url, connect_args=connect_args, **kwargs)
        _configure_sqlite(engine)
        return engine

    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        **kwargs,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def unit_of_work(factory: async_sessionmaker = AsyncSessionLocal) -> AsyncIterator[AsyncSession]:
    """
    One transaction. Commits on success and then publishes the
    notifications the services queued; rolls back and drops them otherwise.
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            discard_events(session)
            await session.rollback()
            raise
        await flush_events(session)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one unit of work per request."""
    async with unit_of_work() as session:
        yield session


async def run_with_retry(
    db: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    label: str,
    attempts: Optional[int] = None,
) -> T:
    """
    Run `operation` inside a savepoint, retrying on lock contention.
    """
    attempts = attempts or settings.STORE_RETRY_ATTEMPTS

    for attempt in range(1, attempts + 1):
        queued = len(pending_events(db))
        try:
            async with db.begin_nested():
                return await operation()
        except OperationalError as e:
            truncate_events(db, queued)
            record_db_operation("retry")
            logger.warning(
                "store_retry",
                operation=label,
                attempt=attempt,
                error=str(e.orig) if e.orig is not None else str(e),
            )
            if attempt == attempts:
                raise TransientStoreError(
                    "The registration store is busy. Please try again.",
                    operation=label,
                ) from e
            await asyncio.sleep(settings.STORE_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1)))

    # attempts < 1
    raise TransientStoreError("No attempts were made", operation=label)
