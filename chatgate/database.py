"""SQLAlchemy engine/session helpers and the serialized write queue.

SQLite does not tolerate concurrent writers, so every write goes through one
:class:`WriteQueue` worker that runs the write in a thread and retries
"database is locked/busy" errors with increasing delay.  Reads open their
own session and skip the queue.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any
from typing import Callable
from typing import Iterator
from typing import Optional
from typing import Tuple
from typing import TypeVar

from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chatgate.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        # Writes run in worker threads (asyncio.to_thread).
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            # One shared connection, otherwise every thread sees its own empty DB.
            kwargs.setdefault("poolclass", StaticPool)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps rows usable after the write session that
    produced them has closed.
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def initialize_database(engine: Engine) -> None:
    """Create all tables registered on :data:`Base`."""

    # Register models with Base before create_all.
    from chatgate.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def db_session(session_factory: sessionmaker) -> Iterator[Session]:
    """Session context manager: commit on success, rollback on error, always close.

    Usage:
        with db_session(factory) as db:
            crud.set_setting(db, "key", "value")
    """
    session = session_factory()

    try:
        yield session
        session.commit()

    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise

    finally:
        session.close()


# ---------------------------------------------------------------------------
# Busy detection + write queue
# ---------------------------------------------------------------------------


def is_busy_error(exc: BaseException) -> bool:
    """Return True for SQLite lock contention errors."""

    if not isinstance(exc, OperationalError):
        return False
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return "database is locked" in text or "database is busy" in text or "sqlite_busy" in text


class WriteQueue:
    """FIFO of write callables drained by a single asyncio worker."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_attempts: int = 5,
        initial_delay: float = 0.05,
        factor: float = 1.5,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        # Shrink delays in test mode so the suite never waits on real contention.
        self._initial_delay = initial_delay / 10 if settings.testing else initial_delay
        self._factor = factor
        self._queue: Optional[asyncio.Queue[Optional[Tuple[Callable[[Session], Any], asyncio.Future]]]] = None
        self._worker: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name="chatgate-write-queue")
        logger.info("Write queue started")

    async def stop(self) -> None:
        """Drain pending writes, then stop the worker."""

        if not self.is_running:
            return
        assert self._queue is not None
        await self._queue.put(None)
        await self._worker
        self._worker = None
        logger.info("Write queue stopped")

    async def submit(self, write: Callable[[Session], T]) -> T:
        """Queue *write* (called with a fresh session) and await its result."""

        if not self.is_running:
            self.start()
        assert self._queue is not None
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((write, future))
        return await future

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            item = await self._queue.get()
            if item is None:
                break
            write, future = item
            try:
                result = await self._execute_with_retry(write)
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)

    async def _execute_with_retry(self, write: Callable[[Session], T]) -> T:
        delay = self._initial_delay
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(self._execute, write)
            except OperationalError as exc:
                if not is_busy_error(exc) or attempt >= self._max_attempts:
                    raise
                logger.warning("Database busy, retrying write in %.3fs (attempt %d)", delay, attempt)
                await asyncio.sleep(delay)
                delay *= self._factor
                attempt += 1

    def _execute(self, write: Callable[[Session], T]) -> T:
        with db_session(self._session_factory) as session:
            return write(session)


class Database:
    """Engine + session factory + write queue for one database URL."""

    def __init__(self, db_url: str):
        self.engine = make_engine(db_url)
        self.session_factory = make_sessionmaker(self.engine)
        self.write_queue = WriteQueue(self.session_factory)

    def create_all(self) -> None:
        initialize_database(self.engine)

    async def write(self, write: Callable[[Session], T]) -> T:
        return await self.write_queue.submit(write)

    async def read(self, read: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._read, read)

    def _read(self, read: Callable[[Session], T]) -> T:
        with db_session(self.session_factory) as session:
            return read(session)

    async def close(self) -> None:
        await self.write_queue.stop()
        self.engine.dispose()


__all__ = [
    "Base",
    "Database",
    "WriteQueue",
    "db_session",
    "initialize_database",
    "is_busy_error",
    "make_engine",
    "make_sessionmaker",
]
