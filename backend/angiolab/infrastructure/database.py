"""Database Session Manager — the explicit storage handle shared by every component.

Invariants:
    - Every transaction auto-rolls-back on exception, including caller cancellation (no partial commits leak)
    - Domain errors (AngioLabError) raised inside a transaction propagate unchanged after rollback
    - Remaining SQLAlchemy exceptions are mapped to StorageError (core/errors.py)
    - write_gate serializes in-process mutations and snapshot capture; waits may be bounded
    - dispose() releases the engine exactly once; later calls are no-ops
    - SQLite connections run with PRAGMA foreign_keys=ON

Design Decisions:
    - Handle passed to components at construction, created by the host lifespan (ADR: no global db singleton)
    - expire_on_commit=False: prevents lazy-load issues in async context
    - Connection pool sizing only applied to server databases; SQLite uses the dialect default pool
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event, make_url, text
from sqlalchemy.exc import (
    IntegrityError, OperationalError, DBAPIError, SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession, create_async_engine, async_sessionmaker,
)

from angiolab.core.errors import StorageError

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _ensure_sqlite_directory(database_url: str) -> None:
    database = make_url(database_url).database
    if database and database != ":memory:" and not database.startswith("file:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)


class DatabaseSessionManager:
    """Owns the async engine, session factory and write gate for one process."""

    def __init__(
        self,
        database_url: str,
        pool_size: int = 20,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        engine_kwargs: dict = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            _ensure_sqlite_directory(database_url)
        else:
            engine_kwargs.update(
                pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600,
            )
        self.engine = create_async_engine(database_url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._write_lock = asyncio.Lock()
        self._disposed = False

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide session with auto-rollback on exception."""
        session = self._session_factory()
        try:
            yield session
        except IntegrityError as e:
            await session.rollback()
            logger.error(f"DB integrity error: {e}", extra={"operation": "commit"})
            raise StorageError("Integrity constraint violated", "commit")
        except OperationalError as e:
            await session.rollback()
            logger.error(f"DB operational error: {e}", extra={"operation": "execute"})
            raise StorageError("Connection or operational error", "execute")
        except DBAPIError as e:
            await session.rollback()
            logger.error(f"DB driver error: {e}", extra={"operation": "query"})
            raise StorageError("Database driver error", "query")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"SQLAlchemy error: {e}", extra={"operation": "unknown"})
            raise StorageError("Database operation failed", "unknown")
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Session inside an explicit BEGIN … COMMIT; any exception rolls everything back."""
        async with self.session() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def snapshot(self) -> AsyncGenerator[AsyncSession, None]:
        """Read transaction for multi-table capture (REPEATABLE READ on PostgreSQL)."""
        async with self.session() as session:
            async with session.begin():
                if self.dialect_name == "postgresql":
                    await session.connection(
                        execution_options={"isolation_level": "REPEATABLE READ"},
                    )
                yield session

    @asynccontextmanager
    async def write_gate(
        self, timeout: float | None = None,
    ) -> AsyncGenerator[None, None]:
        """Exclusive in-process gate for mutations and snapshot capture.

        Raises TimeoutError when `timeout` elapses before the gate is free.
        """
        if timeout is None:
            await self._write_lock.acquire()
        else:
            await asyncio.wait_for(self._write_lock.acquire(), timeout)
        try:
            yield
        finally:
            self._write_lock.release()

    async def health_check(self) -> bool:
        """Check database connectivity (for readiness probes)."""
        try:
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False

    async def dispose(self) -> None:
        """Release the engine and its pooled connections (idempotent)."""
        if self._disposed:
            return
        self._disposed = True
        await self.engine.dispose()
        logger.info("Storage handle released")
