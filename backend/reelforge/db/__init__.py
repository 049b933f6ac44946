"""
Database module for the reelforge control plane.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from reelforge.db.engine import build_engine, build_session_factory
from reelforge.db.models import Base

logger = logging.getLogger(__name__)


async def init_database(engine: AsyncEngine) -> None:
    """Create any missing tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", engine.url.render_as_string(hide_password=True))


__all__ = [
    "Base",
    "build_engine",
    "build_session_factory",
    "init_database",
]
