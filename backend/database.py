# database.py — Async storage handle with an explicit open/close lifecycle
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, Request
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

import config

logger = logging.getLogger("taskdesk.database")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Engine + session factory, opened at process start and disposed at shutdown."""

    def __init__(self, url: str = None, echo: bool = None, pool_size: int = None):
        self.url = url or config.DATABASE_URL
        engine_kwargs = {
            "echo": config.SQL_ECHO if echo is None else echo,
            "pool_pre_ping": True,
        }
        if not self.url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=pool_size or config.DB_POOL_SIZE,
                max_overflow=0,
                pool_recycle=3600,
            )
        self.engine = create_async_engine(self.url, **engine_kwargs)

        # SQLite only enforces ON DELETE rules when asked to
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self):
        """Create any missing tables"""
        from models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def drop_all(self):
        from models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self):
        """Close the connection pool"""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Session for work outside of the FastAPI request cycle"""
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


def get_database(request: Request) -> Database:
    """Dependency: the handle opened by the application lifespan"""
    return request.app.state.database


async def get_db_session(database: Database = Depends(get_database)):
    """Dependency for getting database session (FastAPI Depends)"""
    async with database.session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
