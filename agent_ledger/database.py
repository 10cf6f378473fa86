"""Database engine, declarative base and session management."""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all ledger tables."""
    pass


def _enable_sqlite_write_locking(engine: Engine) -> None:
    # SQLite ignores SELECT ... FOR UPDATE; taking the write lock at BEGIN
    # serializes ledger transactions instead.
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the engine and session factory for one database URL."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")

        if self.is_sqlite:
            in_memory = url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url
            self.engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False, "timeout": 30},
                poolclass=StaticPool if in_memory else None,
            )
            _enable_sqlite_write_locking(self.engine)
        else:
            self.engine = create_engine(
                url,
                echo=echo,
                pool_pre_ping=True,
            )

        self.session_factory = sessionmaker(
            self.engine,
            class_=Session,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.database_url, echo=settings.database_echo)

    def create_all(self) -> None:
        """Create all ledger tables."""
        # Imported for its side effect of registering the tables on Base
        from . import tables  # noqa: F401

        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session whose transaction commits on success and rolls back on error."""
        with self.session_factory() as session:
            with session.begin():
                yield session

    def dispose(self) -> None:
        self.engine.dispose()
