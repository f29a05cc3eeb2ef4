"""Database connection and session management."""

import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .errors import RetryExhausted
from .logging_config import get_logger
from .settings import settings
from .tables import Base

logger = get_logger(__name__)

T = TypeVar("T")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Database connection manager."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        """Initialize database connection.

        Args:
            database_url: Database URL (defaults to settings)
            echo: Log SQL statements (defaults to settings)
        """
        self.database_url = database_url or settings.database_url
        is_sqlite = self.database_url.startswith("sqlite")

        connect_args = {}
        if is_sqlite:
            # Writers wait on the file lock instead of failing immediately
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(
            self.database_url,
            echo=settings.database_echo if echo is None else echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        logger.info("database_initialized", url=self.engine.url.render_as_string(hide_password=True))

    def create_tables(self) -> None:
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created")

    def drop_tables(self) -> None:
        """Drop all tables from the database."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("tables_dropped")

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for database operations.

        Commits when the block exits normally and rolls back on any
        exception, so a unit of work never applies partially.

        Yields:
            Database session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, work: Callable[[Session], T], retries: Optional[int] = None) -> T:
        """Run ``work`` inside one transaction, retrying storage conflicts.

        Lock timeouts and serialization failures surface as
        ``OperationalError``; they are retried up to ``retries`` extra times
        before giving up with ``RetryExhausted``. Any other exception
        (including business rejections) propagates after rollback.

        Args:
            work: Callable receiving the session for this attempt
            retries: Extra attempts after the first (defaults to settings)

        Returns:
            Whatever ``work`` returns
        """
        retries = settings.transaction_retries if retries is None else retries
        last_error: Optional[OperationalError] = None

        for attempt in range(1, retries + 2):
            try:
                with self.session() as session:
                    return work(session)
            except OperationalError as e:
                last_error = e
                logger.warning(
                    "transaction_conflict_retry",
                    attempt=attempt,
                    error=str(e.orig),
                )
                time.sleep(0.01 * attempt)

        logger.error("transaction_retries_exhausted", attempts=retries + 1)
        raise RetryExhausted(
            f"Transaction could not be committed after {retries + 1} attempts"
        ) from last_error
