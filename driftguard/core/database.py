import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from driftguard.core.config import Settings

# Initialize logger
logger = logging.getLogger(__name__)


def build_engine(settings: Settings, **kwargs) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the configured database"""
    url = settings.ASYNC_DATABASE_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_async_engine(url, echo=False, connect_args=connect_args, **kwargs)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    """Create an async session factory bound to the engine"""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(session_factory: sessionmaker) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error"""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database error: {str(e)}")
            raise
        finally:
            await session.close()


async def create_db_and_tables(engine: AsyncEngine):
    """Create database and tables on startup"""
    # Register table metadata before create_all
    import driftguard.models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database and tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database and tables: {str(e)}")
        raise
