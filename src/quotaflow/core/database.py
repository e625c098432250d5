"""Database handle and session management.

A ``Database`` is constructed explicitly and handed to whoever needs it (the
FastAPI lifespan, Celery tasks, tests). Nothing here is created at import time.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quotaflow.core.config import Settings
from quotaflow.core.logging import LoggerMixin


class Database(LoggerMixin):
    """Owns one async engine and its session factory."""

    def __init__(
        self,
        url: str,
        *,
        echo: bool = False,
        sqlite_savepoints: bool = False,
        **engine_kwargs: Any,
    ) -> None:
        """Initialize the handle without connecting.

        Args:
            url: SQLAlchemy async database URL
            echo: Log emitted SQL
            sqlite_savepoints: Hand SQLite transaction control to SQLAlchemy so
                ``begin_nested()`` works
            **engine_kwargs: Extra arguments for ``create_async_engine``
        """
        self.url = url
        self.echo = echo
        self.sqlite_savepoints = sqlite_savepoints
        self.engine_kwargs = engine_kwargs
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a handle from application settings."""
        kwargs: dict[str, Any] = {"pool_pre_ping": True}
        if not settings.database_url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        return cls(
            settings.database_url,
            echo=settings.debug,
            sqlite_savepoints=settings.database_url.startswith("sqlite"),
            **kwargs,
        )

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._engine

    def connect(self) -> None:
        """Create the engine and session factory."""
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, echo=self.echo, **self.engine_kwargs)
        if self.sqlite_savepoints:
            enable_sqlite_savepoints(self._engine)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.logger.info("database_connected", dialect=self._engine.dialect.name)

    async def dispose(self) -> None:
        """Dispose the engine and drop pooled connections."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self.logger.info("database_disposed")

    async def create_all(self) -> None:
        """Create every mapped table. Used by tests and local bootstrapping."""
        import quotaflow.billing.models  # noqa: F401  registers billing tables
        from quotaflow.models.base import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        if self._session_factory is None:
            raise RuntimeError("Database is not connected; call connect() first")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def check_connection(self) -> bool:
        """Check if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Make SQLAlchemy emit BEGIN itself on SQLite connections.

    The sqlite3 driver defers BEGIN until the first write, so a SAVEPOINT
    issued before it opens its own transaction and RELEASE commits it.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")
