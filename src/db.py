import os
import sys
import asyncio
import contextlib
import functools
from typing import Optional, AsyncGenerator, Dict

from sqlalchemy import URL, text, event, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

import traceback
import logging
LOGGER = logging.getLogger(__name__)

from models import Base

from dotenv import load_dotenv
load_dotenv()

class DatabaseManager:
    """Process-local singleton database manager with proper connection handling"""

    _instances: Dict[int, 'DatabaseManager'] = {}  # keyed by process ID

    def __new__(cls) -> 'DatabaseManager':
        pid = os.getpid()
        if pid not in cls._instances:
            instance = super().__new__(cls)
            instance._engine: Optional[AsyncEngine] = None
            instance._session_factory: Optional[async_sessionmaker] = None
            instance._initialized: bool = False
            cls._instances[pid] = instance
        return cls._instances[pid]

    def create_database_url(self) -> URL:
        if database_url := os.environ.get("DATABASE_URL"):
            url = make_url(database_url)
            LOGGER.info(f"Using database URL from environment ({url.drivername}, PID: {os.getpid()}).")
            return url

        if test_db := os.environ.get("TEST_DATABASE_NAME"):
            database_name = test_db
        elif os.getenv("TEST_MODE"):
            database_name = "test_db"
        else:
            database_name = os.environ.get("POSTGRES_DB", "history")

        LOGGER.info(f"Using database '{database_name}' (PID: {os.getpid()}).")

        return URL.create(
            drivername='postgresql+asyncpg',
            username=os.environ["POSTGRES_USER"],
            password=os.environ["POSTGRES_PASSWORD"],
            host=os.environ["POSTGRES_HOST"],
            port=int(os.environ["DB_PORT"]),
            database=database_name
        )

    def _engine_options(self, url: URL) -> dict:
        if url.get_backend_name() == "sqlite":
            return {"echo": False}

        return {
            # Connection pool settings
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": 10,
            "max_overflow": 20,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
            "pool_timeout": 30,
            "echo": False,
            "connect_args": {
                "server_settings": {
                    "application_name": f"listen_import_pid_{os.getpid()}",
                    "jit": "off"
                },
                "command_timeout": 60,
            }
        }

    async def initialize(self) -> None:
        """Initialize database engine and session factory"""
        if self._initialized:
            LOGGER.debug(f"Database already initialized for PID {os.getpid()}")
            return

        LOGGER.info(f"Initializing DB engine for PID {os.getpid()}")
        try:
            url = self.create_database_url()
            self._engine = create_async_engine(url, **self._engine_options(url))

            @event.listens_for(self._engine.sync_engine, "connect")
            def receive_connect(dbapi_connection, connection_record):
                LOGGER.debug(f"New database connection established (PID: {os.getpid()})")

            @event.listens_for(self._engine.sync_engine, "checkout")
            def receive_checkout(dbapi_connection, connection_record, connection_proxy):
                LOGGER.debug(f"Connection checked out from pool (PID: {os.getpid()})")

            async with self._engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                LOGGER.info(f"Database connection test to '{url.database}' successful (PID: {os.getpid()})")

            self._session_factory = async_sessionmaker(
                bind=self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=True,
            )

            self._initialized = True
            LOGGER.info(f"Database engine and session factory initialized successfully (PID: {os.getpid()})")

        except Exception as e:
            LOGGER.error(f"Could not initialize database (PID: {os.getpid()}): {traceback.format_exc()}")
            await self.cleanup()
            raise RuntimeError(f"Database initialization failed: {str(e)}") from e

    @contextlib.asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Context manager for database sessions with proper cleanup"""
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            LOGGER.error(f"Session error, rolling back (PID: {os.getpid()}): {traceback.format_exc()}")
            raise
        finally:
            await session.close()

    async def get_engine(self) -> AsyncEngine:
        """Get the database engine"""
        if not self._initialized:
            LOGGER.info(f"DB not initialized yet for PID {os.getpid()}, doing that now.")
            await self.initialize()
        return self._engine

    async def cleanup(self) -> None:
        """Cleanup database resources for this process"""
        if self._engine:
            await self._engine.dispose()
            LOGGER.info(f"Database engine disposed (PID: {os.getpid()})")

        self._engine = None
        self._session_factory = None
        self._initialized = False

        pid = os.getpid()
        if pid in self._instances:
            del self._instances[pid]

    async def create_tables(self) -> None:
        """Create tables straight from the models (local SQLite runs and tests)."""
        engine = await self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        LOGGER.info(f"Tables created from models (PID: {os.getpid()})")

    async def create_tables_with_alembic(self) -> None:
        """Create tables using Alembic migrations instead of direct creation"""
        import subprocess

        await self.initialize()

        try:
            result = subprocess.run([
                sys.executable, "-m", "alembic", "upgrade", "head"
            ], check=True, capture_output=True, text=True)
            LOGGER.info(f"Alembic upgrade completed: {result.stdout}")
        except subprocess.CalledProcessError as e:
            LOGGER.error(f"Alembic upgrade failed: {e.stderr}")
            raise

    async def setup_tables(self) -> None:
        """Setup database tables, Alembic for PostgreSQL and create_all for SQLite."""
        await self.initialize()

        if self._engine.dialect.name == "sqlite":
            await self.create_tables()
        else:
            await self.create_tables_with_alembic()

        LOGGER.info(f"Database setup completed (PID: {os.getpid()})")

    @classmethod
    async def cleanup_all_instances(cls) -> None:
        """Cleanup all database instances across all processes (for test cleanup)"""
        for pid, instance in list(cls._instances.items()):
            await instance.cleanup()
        cls._instances.clear()

# Global instance getter
_db_manager = None

def get_db_manager():
    global _db_manager
    if _db_manager is None or _db_manager not in DatabaseManager._instances.values():
        _db_manager = DatabaseManager()
    return _db_manager

def get_session():
    """Get session context manager"""
    return get_db_manager().get_session()

def pass_session_capable(func):
    """Use the caller's `session=` if given, otherwise open (and commit) a fresh one."""
    @functools.wraps(func)
    async def inner(*args, **kwargs):
        if kwargs.get("session") is not None:
            return await func(*args, **kwargs)

        async with get_session() as s:
            kwargs["session"] = s
            return await func(*args, **kwargs)

    return inner

async def setup():
    await get_db_manager().setup_tables()

if __name__ == "__main__":
    async def main():
        LOGGER.info("Setting up tables.")

        if "-t" in sys.argv or "--test" in sys.argv:
            os.environ["TEST_MODE"] = "true"

        try:
            await setup()
        finally:
            await get_db_manager().cleanup()

    asyncio.run(main())
