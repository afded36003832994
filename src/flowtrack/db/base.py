"""Database connection and session management."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from flowtrack.observability.metrics import MetricName, metrics


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _attach_query_metrics(target_engine: AsyncEngine) -> None:
    """Attach SQLAlchemy event listeners for query metrics."""
    sync_engine = target_engine.sync_engine
    if getattr(sync_engine, "_flowtrack_metrics_attached", False):
        return

    @event.listens_for(sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info["query_start_time"] = time.perf_counter()

    @event.listens_for(sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_time = conn.info.pop("query_start_time", None)
        if start_time is None:
            return
        metrics.inc_counter(MetricName.DB_QUERY_COUNT)
        elapsed_ms = (time.perf_counter() - start_time) * 1000.0
        metrics.observe(MetricName.DB_QUERY_DURATION_MS, elapsed_ms)

    sync_engine._flowtrack_metrics_attached = True


class Database:
    """
    Primary record store connection.

    Constructed explicitly and passed to whoever needs it; call `init()` once
    at startup (creates tables) and `close()` at shutdown.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs: Any):
        if url.startswith("postgresql"):
            engine_kwargs.setdefault("pool_size", 20)
            engine_kwargs.setdefault("max_overflow", 10)
        self.url = url
        self.engine = create_async_engine(url, echo=echo, pool_pre_ping=True, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        _attach_query_metrics(self.engine)

    async def init(self) -> None:
        """Create tables that do not exist yet."""
        # Registers the tables on Base.metadata
        import flowtrack.db.tables  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
