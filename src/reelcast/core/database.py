"""Database engine lifecycle and session factory setup."""

import asyncio

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from reelcast.core.config import Settings

logger = structlog.get_logger(__name__)


def _create_engine(db_url: str, pool_size: int) -> AsyncEngine:
    options: dict = {
        "pool_pre_ping": False,  # Liveness is checked in the background, not per checkout
        "echo": False,  # Don't log SQL queries (use structlog instead)
    }
    if not db_url.startswith("sqlite"):
        options["pool_size"] = pool_size
        options["max_overflow"] = 0
    return create_async_engine(db_url, **options)


class Database:
    """Process-wide database handle with an explicit connect/close lifecycle.

    The engine is created lazily on the first ``connect()`` and reused by every
    caller afterwards. Instead of pinging on every checkout, a background task
    runs ``SELECT 1`` every ``health_check_interval`` seconds; when the check
    fails the pool is disposed so that the next checkout opens fresh connections.

    Example:
        database = Database(settings.database_url, settings.db_pool_size)
        session_factory = await database.connect()
        ...
        await database.close()
    """

    def __init__(
        self,
        db_url: str,
        pool_size: int = 10,
        health_check_interval: float | None = 30.0,
    ):
        self.db_url = db_url
        self.pool_size = pool_size
        self.health_check_interval = health_check_interval
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._health_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self.healthy = False

    @property
    def is_connected(self) -> bool:
        return self._session_factory is not None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._session_factory

    async def connect(self) -> async_sessionmaker[AsyncSession]:
        """Create the engine once and start the background health check."""
        async with self._lock:
            if self._session_factory is not None:
                return self._session_factory

            self._engine = _create_engine(self.db_url, self.pool_size)
            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
            self.healthy = True

            if self.health_check_interval:
                self._health_task = asyncio.create_task(self._health_check_loop())

            logger.info("database.connected", db_url=self.db_url.split("@")[-1])
            return self._session_factory

    async def ping(self) -> bool:
        """Run ``SELECT 1`` and record the outcome."""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            self.healthy = True
        except Exception as e:
            self.healthy = False
            logger.warning(
                "database.health_check_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
        return self.healthy

    async def _health_check_loop(self) -> None:
        assert self.health_check_interval
        while True:
            await asyncio.sleep(self.health_check_interval)
            if not await self.ping() and self._engine is not None:
                await self._engine.dispose()

    async def close(self) -> None:
        """Stop the health check and dispose of the connection pool."""
        async with self._lock:
            if self._health_task is not None:
                self._health_task.cancel()
                await asyncio.gather(self._health_task, return_exceptions=True)
                self._health_task = None

            if self._engine is not None:
                await self._engine.dispose()
                logger.info("database.closed")

            self._engine = None
            self._session_factory = None
            self.healthy = False


_database: Database | None = None


def get_database(settings: Settings) -> Database:
    """Return the process-wide Database, creating it on first use.

    The instance is not connected yet; callers own the ``connect()``/``close()`` calls.
    """
    global _database
    if _database is None:
        _database = Database(
            settings.database_url,
            pool_size=settings.db_pool_size,
            health_check_interval=settings.db_health_check_interval_seconds,
        )
    return _database
