"""
Database engine and unit-of-work session management.
"""
import asyncio
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncGenerator, Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from taskflow.models.orm import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and hands out one transactional session per logical operation."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        engine_kwargs = {"pool_pre_ping": True, "echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs.update(pool_size=10, max_overflow=20, pool_recycle=3600)

        self.engine = create_engine(url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def check_connection(self):
        """Run a trivial query so misconfiguration fails at startup."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def dispose(self):
        self.engine.dispose()
        logger.info("Database connection closed")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Context manager for one transaction: commit on success, rollback on error."""
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @asynccontextmanager
    async def async_session(self) -> AsyncGenerator[Session, None]:
        """
        Same unit of work for coroutines that await between store calls.

        Commit, rollback and close run in a worker thread; callers offload their
        own store calls with asyncio.to_thread.
        """
        db = self._session_factory()
        try:
            yield db
            await asyncio.to_thread(db.commit)
        except Exception:
            await asyncio.to_thread(db.rollback)
            raise
        finally:
            await asyncio.to_thread(db.close)
