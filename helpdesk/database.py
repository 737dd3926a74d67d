"""Async SQLAlchemy database engine and session management."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from helpdesk.config import settings


def engine_options(url: str) -> dict:
    """Pool settings for Postgres; SQLite keeps SQLAlchemy's defaults."""
    options: dict = {"echo": False}
    if url.startswith("postgresql"):
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True, pool_recycle=3600)
    return options


engine = create_async_engine(settings.database_url, **engine_options(settings.database_url))
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
logger = logging.getLogger("helpdesk.database")


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


def load_models() -> None:
    """Import model modules so SQLAlchemy metadata is populated."""
    from helpdesk.models import user, organization, category, ticket  # noqa: F401
    from helpdesk.models import activity, notification  # noqa: F401


async def init_db() -> None:
    """Create all tables when AUTO_CREATE_SCHEMA is enabled."""
    if not settings.auto_create_schema:
        logger.info("Skipping Base.metadata.create_all (AUTO_CREATE_SCHEMA=false)")
        return

    load_models()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:  # type: ignore[misc]
    """Dependency yielding an async DB session."""
    async with async_session() as session:
        yield session
