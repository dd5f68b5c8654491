"""
Database service for the StoreSync engine
Async SQLAlchemy session management over SQLite (aiosqlite) or any async URL
"""

import logging
from pathlib import Path
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy import text

from storesync.core.models import Base

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/storesync.db"

REQUIRED_TABLES = ('sync_queue', 'id_mappings', 'sync_conflicts', 'circuit_states', 'sync_settings')


class DatabaseService:
    """Async database service owning the engine and session factory"""

    def __init__(self, database_url: str = DEFAULT_DATABASE_URL, echo: bool = False):
        self.database_url = database_url
        self.logger = logging.getLogger(__name__)

        engine_kwargs = {'echo': echo}
        if database_url.startswith('sqlite'):
            if ':memory:' in database_url or database_url.endswith('sqlite+aiosqlite://'):
                # One shared connection, otherwise every session sees an empty database
                engine_kwargs['poolclass'] = StaticPool
            else:
                self._ensure_sqlite_directory(database_url)
            engine_kwargs['connect_args'] = {"check_same_thread": False}

        self.engine = create_async_engine(database_url, **engine_kwargs)

        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        self.logger.info(f"Database service initialized: {database_url}")

    def _ensure_sqlite_directory(self, database_url: str):
        db_file = database_url.split(':///', 1)[-1]
        if db_file:
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    async def create_tables(self):
        """Create all engine tables"""
        self.logger.info("Creating tables using SQLAlchemy...")
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self.logger.info("All tables created successfully")
        except Exception as e:
            self.logger.error(f"Error creating tables: {e}")
            raise

    async def initialize_database(self):
        """Create tables and verify the schema"""
        await self.create_tables()
        if not await self.health_check():
            raise RuntimeError("Database health check failed after initialization")
        self.logger.info("Database initialization completed successfully")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session"""
        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check database connection health"""
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
                if not self.database_url.startswith('sqlite'):
                    return True

                result = await session.execute(
                    text("SELECT name FROM sqlite_master WHERE type='table'")
                )
                tables = {row[0] for row in result.fetchall()}
                missing = [name for name in REQUIRED_TABLES if name not in tables]
                if missing:
                    self.logger.warning(f"Missing tables: {missing}")
                    return False
                return True
        except Exception as e:
            self.logger.error(f"Database health check failed: {e}")
            return False

    async def close(self):
        """Close database connections"""
        await self.engine.dispose()
        self.logger.info("Database connections closed")
