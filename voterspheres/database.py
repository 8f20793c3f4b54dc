"""
Database schema and connection management.

Uses SQLAlchemy for candidate records and the durable warm-job queue.
SQLite is used for local runs and tests, PostgreSQL in production.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Union

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    event,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import ConfigError

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Candidate(Base):
    """Candidate directory record."""

    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(255), nullable=False, unique=True)  # name-state-office[-cycle]
    name = Column(String(512), nullable=False)
    office = Column(String(512), nullable=False)
    state = Column(String(64), nullable=False)
    county = Column(String(255))
    district = Column(String(64))
    party = Column(String(255))
    cycle = Column(Integer)
    website = Column(String(1024))
    email = Column(String(512))
    phone = Column(String(64))
    image_url = Column(String(1024))
    source = Column(String(64), nullable=False)  # api, csv, fec, ...
    source_id = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_candidates_source", "source", "source_id"),
        Index("ix_candidates_state_office", "state", "office"),
    )


class WarmJob(Base):
    """Background render/warm job."""

    __tablename__ = "warm_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False)  # warm-profile, warm-sitemap-chunk
    target = Column(String(255), nullable=False)  # slug or chunk number
    state = Column(String(16), nullable=False, default="queued")
    attempts = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=utcnow)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index("ix_warm_jobs_state_available", "state", "available_at"),
        Index("ix_warm_jobs_kind_target", "kind", "target"),
    )


def database_url(db: Union[str, Path]) -> str:
    """Accept either a SQLAlchemy URL or a path to a SQLite file."""
    if isinstance(db, Path):
        return f"sqlite:///{db}"
    if "://" not in db:
        return f"sqlite:///{db}"
    return db


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so per-row SAVEPOINTs work on pysqlite."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(db: Union[str, Path], **kwargs) -> Engine:
    url = database_url(db)
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine
    kwargs.setdefault("pool_size", 10)
    kwargs.setdefault("max_overflow", 20)
    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


class Database:
    """
    Connection pool and session factory for the relational store.

    Constructed once at startup and passed to the components that need it.
    """

    def __init__(self, db: Union[str, Path], **engine_kwargs):
        url = database_url(db)
        if url.startswith("sqlite:///"):
            Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_db_engine(url, **engine_kwargs)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._sessionmaker()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session scoped to one transaction: commit on success, rollback on error."""
        session = self._sessionmaker()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> bool:
        """
        Check that the store is reachable.

        Raises:
            ConfigError: If the database cannot be reached
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise ConfigError(f"Database unreachable: {e}") from e
        return True

    def dispose(self) -> None:
        self.engine.dispose()


def init_database(db: Union[str, Path]) -> Database:
    """
    Initialize database and create tables.

    Args:
        db: SQLAlchemy URL or path to SQLite database file

    Returns:
        Database service object
    """
    database = Database(db)
    database.create_all()
    return database

