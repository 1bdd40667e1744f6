"""
Orchestrator Database

Database connection and session management for the work queue.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
import structlog
import os

from .config import OrchestratorSettings
from .control_plane.models import ItemAttempt, QueueItem  # noqa: F401  (register tables)

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager for the work queue.

    Uses async SQLModel with aiosqlite locally and asyncpg against PostgreSQL.
    """

    def __init__(self, settings: OrchestratorSettings) -> None:
        self._settings = settings
        url = settings.async_database_url
        engine_kwargs = {"pool_pre_ping": True, "echo": False}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=5, max_overflow=15)
        self._engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in SQLModel models.
        Set SKIP_INIT_MODELS=true when the schema is managed externally.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("init_models_skipped")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("queue_tables_initialized")

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
