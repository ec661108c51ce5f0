"""
Database interface for notegraph.

Provides engine and session management over the relational store using
SQLAlchemy. Query paths use read_session(), which never commits; the
read/write session() exists for the external indexer and for tests.
"""
import logging
from pathlib import Path
from typing import Optional, Generator, Dict, Any
from contextlib import contextmanager

from sqlalchemy import create_engine, select, func, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from notegraph.models import (
    Base, Node, Supertag, FieldDefinition, FieldValue, Reference
)
from notegraph.config import get_config

logger = logging.getLogger(__name__)


class Database:
    """
    Database interface for notegraph.

    Works directly with a single SQLite file by default; any SQLAlchemy
    URL is accepted through ``url``.
    """

    def __init__(self, path: Optional[str] = None, url: Optional[str] = None,
                 read_only: Optional[bool] = None):
        """
        Initialize database connection.

        Args:
            path: Database file path (for SQLite). Uses config default if not provided.
            url: Full database URL (overrides path).
            read_only: Open the store read-only. Defaults to the config value
                when neither path nor url is given, otherwise False.

        Examples:
            Database()  # Uses config default
            Database(path="notes.db")  # SQLite file, read/write
            Database(path="notes.db", read_only=True)
        """
        config = get_config()

        if url:
            self.url = url
            self.path = None
        elif path:
            self.path = Path(path)
            self.url = f"sqlite:///{self.path}"
        else:
            self.url = config.get_database_url()
            self.path = config.get_database_path() if config.is_sqlite() else None
            if read_only is None:
                read_only = config.read_only

        self.read_only = bool(read_only)
        is_sqlite = self.url.startswith("sqlite:")

        if is_sqlite:
            engine_url = self.url
            if self.read_only and self.path is not None:
                engine_url = f"sqlite:///file:{self.path}?mode=ro&uri=true"
            elif self.path is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                engine_url,
                connect_args={"check_same_thread": False},
                poolclass=NullPool,
                echo=config.database_echo
            )
            event.listen(self.engine, "connect", self._configure_sqlite)
        else:
            self.engine = create_engine(
                self.url,
                pool_pre_ping=True,
                pool_recycle=3600,
                echo=config.database_echo
            )

        self.Session = sessionmaker(bind=self.engine, autoflush=False)

        if not self.read_only:
            Base.metadata.create_all(self.engine)

        logger.debug("Opened database %s (read_only=%s)", self.url, self.read_only)

    def _configure_sqlite(self, dbapi_conn, connection_record):
        """Configure SQLite connection pragmas."""
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        if self.read_only:
            cursor.execute("PRAGMA query_only = ON")
        else:
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA cache_size = -64000")  # 64MB cache
        cursor.execute("PRAGMA temp_store = MEMORY")
        cursor.close()

    @contextmanager
    def session(self, expire_on_commit: bool = True) -> Generator[Session, None, None]:
        """
        Context manager for read/write sessions.

        Yields:
            SQLAlchemy session with automatic commit/rollback
        """
        if self.read_only:
            raise PermissionError(f"Database {self.url} is opened read-only")
        session = self.Session()
        session.expire_on_commit = expire_on_commit
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def read_session(self) -> Generator[Session, None, None]:
        """
        Context manager for query sessions.

        The session is always rolled back, so nothing done through it
        can reach the store.
        """
        session = self.Session()
        try:
            yield session
        finally:
            session.rollback()
            session.close()

    def stats(self) -> Dict[str, Any]:
        """Row counts for each entity of the schema."""
        with self.read_session() as session:
            return {
                'nodes': session.execute(select(func.count(Node.id))).scalar() or 0,
                'supertags': session.execute(select(func.count(Supertag.id))).scalar() or 0,
                'fields': session.execute(select(func.count(FieldDefinition.id))).scalar() or 0,
                'field_values': session.execute(select(func.count(FieldValue.id))).scalar() or 0,
                'references': session.execute(select(func.count(Reference.id))).scalar() or 0,
            }

    def close(self) -> None:
        """Dispose of the engine and its connections."""
        self.engine.dispose()


def get_db(path: Optional[str] = None, read_only: Optional[bool] = None) -> Database:
    """Open a database, using the configured location when path is omitted."""
    return Database(path=path, read_only=read_only)
