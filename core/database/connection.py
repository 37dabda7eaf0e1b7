# Database connection and unit of work
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from core.logging import get_database_logger_safe, get_error_logger_safe
from core.utils.exceptions import CustodyLedgerException

# The base class for all SQLAlchemy models
Base = declarative_base()


class DatabaseManager:
    """Manages the async engine, sessions and units of work"""

    def __init__(self, db_url: str, environment: str = "development", schema_management: str = "auto",
                 pool_size: int = 20, max_overflow: int = 30, pool_recycle: int = 3600):
        self._is_sqlite = db_url.startswith("sqlite")
        engine_kwargs = {"echo": False}
        if not self._is_sqlite:
            engine_kwargs.update(
                pool_pre_ping=True,  # Test connections before use
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=pool_recycle,
            )
        self._engine = create_async_engine(db_url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            class_=AsyncSession
        )
        self._environment = getattr(environment, "value", environment)
        self._schema_management = schema_management
        # SQLite has a single writer; units of work are serialized in-process
        self._write_lock: Optional[asyncio.Lock] = asyncio.Lock() if self._is_sqlite else None
        self.logger = get_database_logger_safe("database_manager")
        self.error_logger = get_error_logger_safe("database_manager")

    @property
    def engine(self):
        return self._engine

    async def init(self, environment: str = None, schema_management: str = None):
        """Initialize database with environment-specific approach"""
        env = environment or self._environment
        schema_mgmt = schema_management or self._schema_management

        # Import models so every table is registered on Base.metadata
        from core.database import models  # noqa: F401

        if env == "production" or schema_mgmt == "migrations_only":
            await self._verify_schema_present()
            self.logger.info("Database ready - schema managed externally", environment=env)
        else:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self.logger.info("Database initialized with create_all", environment=env,
                             schema_management=schema_mgmt)

    async def _verify_schema_present(self):
        """Verify that every mapped table exists"""
        async with self._engine.connect() as conn:
            existing = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))
        missing = sorted(set(Base.metadata.tables) - existing)
        if missing:
            self.error_logger.error("Database schema incomplete", missing_tables=missing)
            raise RuntimeError(f"Database schema not initialized, missing tables: {missing}")

    async def verify_connection(self) -> bool:
        """Verify database connection is ready"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            self.logger.error("Database connection verification failed", error=str(e))
            return False

    async def wait_for_ready(self, timeout: int = 30, check_interval: float = 1.0):
        """Wait for database to be ready with timeout"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while (loop.time() - start_time) < timeout:
            if await self.verify_connection():
                self.logger.info("Database connection verified")
                return True

            self.logger.info("Database not ready, waiting...")
            await asyncio.sleep(check_interval)

        raise RuntimeError(f"Database not ready after {timeout} seconds")

    async def shutdown(self):
        """Closes the database connection pool"""
        await self._engine.dispose()
        self.logger.info("Database connection pool closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Provides a new database session WITHOUT auto-commit.

        Services are responsible for transaction boundaries; use
        `transaction()` for anything that writes.
        """
        session_start_time = time.time()
        async with self._session_factory() as session:
            try:
                yield session
            except Exception as session_error:
                await session.rollback()
                # Domain errors and constraint guards are reported by the caller
                if isinstance(session_error, CustodyLedgerException):
                    log = self.logger.debug
                elif isinstance(session_error, IntegrityError):
                    log = self.logger.warning
                else:
                    log = self.error_logger.error
                log("Database session error with rollback",
                    error=str(session_error),
                    error_type=type(session_error).__name__,
                    session_duration_ms=(time.time() - session_start_time) * 1000,
                    environment=self._environment)
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Unit of work: one session, one transaction.

        Commits when the block exits normally and rolls back on any
        exception, so sibling mutations are applied together or not at all.
        """
        if self._write_lock is not None:
            async with self._write_lock:
                async with self._transaction() as session:
                    yield session
        else:
            async with self._transaction() as session:
                yield session

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self.get_session() as session:
            async with session.begin():
                yield session
