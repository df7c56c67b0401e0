"""
Database schema and connection management.

Uses SQLAlchemy; SQLite by default, PostgreSQL when a ``postgresql://``
URL is configured.
"""

import uuid
from datetime import datetime
from pathlib import Path
from typing import Union

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship

from .models import DEFAULT_MAX_ATTEMPTS, DEFAULT_PRIORITY, TaskStatus

Base = declarative_base()


class BackfillTask(Base):
    """One provider record waiting to be fetched, mapped and persisted."""

    __tablename__ = "backfill_tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(64), nullable=False)
    source_id = Column(String(255), nullable=False)
    dedupe_key = Column(String(320), nullable=False, unique=True)  # source|source_id
    priority = Column(Integer, nullable=False, default=DEFAULT_PRIORITY)
    status = Column(String(16), nullable=False, default=TaskStatus.QUEUED.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_backfill_tasks_dequeue", "status", "priority", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BackfillTask id={self.id} key={self.dedupe_key!r} "
            f"status={self.status} attempts={self.attempts}/{self.max_attempts}>"
        )


class Book(Base):
    """Canonical book record."""

    __tablename__ = "books"

    id = Column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    slug = Column(String(255), nullable=False, unique=True)
    title = Column(String(512), nullable=False)
    subtitle = Column(String(512), nullable=True)
    description = Column(Text, nullable=True)
    isbn13 = Column(String(13), nullable=True, index=True)
    isbn10 = Column(String(10), nullable=True, index=True)
    published_date = Column(Date, nullable=True)
    language = Column(String(16), nullable=True)
    publisher = Column(String(255), nullable=True)
    page_count = Column(Integer, nullable=True)
    authors = Column(JSON, nullable=False, default=list)
    categories = Column(JSON, nullable=False, default=list)
    dimensions = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    external_ids = relationship(
        "BookExternalId", back_populates="book", cascade="all, delete-orphan"
    )


class BookExternalId(Base):
    """A provider's identifier for a book, plus provider-specific metadata."""

    __tablename__ = "book_external_ids"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(String(32), ForeignKey("books.id"), nullable=False, index=True)
    source = Column(String(64), nullable=False)
    external_id = Column(String(255), nullable=False)
    info_link = Column(String(1024), nullable=True)
    preview_link = Column(String(1024), nullable=True)
    average_rating = Column(Float, nullable=True)
    ratings_count = Column(Integer, nullable=True)
    image_links = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)

    book = relationship("Book", back_populates="external_ids")

    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_book_external_ids_source_id"),
    )


def database_url(db: Union[str, Path]) -> str:
    """Turn a filesystem path into a SQLite URL; pass URLs through untouched."""
    if isinstance(db, str) and "://" in db:
        return db
    return f"sqlite:///{Path(db)}"


def get_engine(db: Union[str, Path]) -> Engine:
    """
    Create an engine for a database path or URL.

    SQLite files get their parent directory created and are opened with
    ``check_same_thread=False`` so the scheduler thread can share the pool.
    """
    url = database_url(db)
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_database(db: Union[str, Path]) -> Engine:
    """
    Initialize database and create tables.

    Args:
        db: Path to SQLite database file, or a database URL

    Returns:
        The engine the tables were created on
    """
    engine = get_engine(db)
    Base.metadata.create_all(engine)
    return engine
