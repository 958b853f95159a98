"""
Database schema and engine factory for KSIWatch persistence.

Evidence, evidence-to-control links, validation records and snapshots live
in one SQLAlchemy database (SQLite by default). Evidence rows and validation
records are never updated or deleted once written.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EvidenceRow(Base):
    """Stored evidence artifact (immutable)."""

    __tablename__ = "evidence"

    id = Column(String(64), primary_key=True)
    content_hash = Column(String(64), nullable=False, unique=True, index=True)
    source_uri = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    collected_at = Column(DateTime(timezone=True), nullable=False, index=True)
    stored_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    attributes = Column(JSON, nullable=False, default=dict)
    content = Column(LargeBinary, nullable=True)


class EvidenceLinkRow(Base):
    """Explicit many-to-many link between evidence and a control."""

    __tablename__ = "evidence_links"

    evidence_id = Column(String(64), ForeignKey("evidence.id"), primary_key=True)
    control_id = Column(String(128), primary_key=True, index=True)
    linked_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ValidationRecordRow(Base):
    """One append-only validation record entry for a control."""

    __tablename__ = "validation_records"
    __table_args__ = (UniqueConstraint("control_id", "sequence", name="uq_record_control_sequence"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    control_id = Column(String(128), nullable=False, index=True)
    sequence = Column(Integer, ForeignKey("snapshots.sequence"), nullable=False)
    run_id = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)
    diagnostic = Column(Text, nullable=True)
    stale = Column(Boolean, nullable=False, default=False)
    results = Column(JSON, nullable=False, default=list)


class SnapshotRow(Base):
    """Committed aggregated snapshot."""

    __tablename__ = "snapshots"

    sequence = Column(Integer, primary_key=True, autoincrement=False)
    run_id = Column(String(64), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    statuses = Column(JSON, nullable=False, default=dict)
    diagnostics = Column(JSON, nullable=False, default=dict)
    stale_controls = Column(JSON, nullable=False, default=list)
    drift = Column(JSON, nullable=False, default=list)


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    In-memory SQLite databases share a single connection across threads so
    every session sees the same data. Callers reading from several threads
    at once must serialize those reads (see CheckExecutor). File databases
    get their parent directory created.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        database = url.database
        if not database or database == ":memory:":
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def init_schema(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)
    logger.debug("Schema initialized on %s", engine.url.render_as_string(hide_password=True))


def create_session_factory(database_url: str) -> Callable[[], Session]:
    """Create an engine, initialize the schema and return a session factory."""
    engine = create_db_engine(database_url)
    init_schema(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
