"""SQLite engine, session scope and hot snapshots for the change store."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..orm.base import Base

logger = logging.getLogger(__name__)

# Milliseconds a writer waits on a locked database before failing
BUSY_TIMEOUT_MS = 5000


def _configure_sqlite(dbapi_connection, connection_record) -> None:
    """Per-connection pragmas.

    WAL lets the scanner keep writing while a snapshot or another reader
    holds a read transaction.
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


class DatabaseService:
    """Owns the async engine of one change store file.

    Instances are created per application (and per test) and passed to the
    services that need them.
    """

    def __init__(self, database_path: str | Path):
        self.database_path = Path(database_path).expanduser()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{self.database_path}",
            echo=False,
            pool_pre_ping=True,
        )
        event.listen(self.engine.sync_engine, "connect", _configure_sqlite)

        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def initialize(self) -> None:
        """Create the change store tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("Change store ready at %s", self.database_path)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session committed on exit and rolled back if the block raises."""
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def journal_mode(self) -> str:
        async with self.engine.connect() as conn:
            result = await conn.exec_driver_sql("PRAGMA journal_mode")
            return str(result.scalar()).lower()

    async def snapshot(self, target_path: str | Path) -> Path:
        """Write a consistent copy of the live database to ``target_path``.

        Uses ``VACUUM INTO``, which reads inside a single transaction; with
        WAL enabled, writers on other connections are not blocked meanwhile.

        Raises:
            FileExistsError: If the target already exists.
        """
        target = Path(target_path).expanduser()
        if target.exists():
            raise FileExistsError(f"Backup target already exists: {target}")
        target.parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.exec_driver_sql("VACUUM INTO ?", (str(target),))

        logger.debug("Snapshot of %s written to %s", self.database_path, target)
        return target

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        await self.engine.dispose()
