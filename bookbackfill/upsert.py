"""
Idempotent persistence of mapped books.

A book is matched by provider identity first, then by ISBN-13, then by
ISBN-10.  A match is refreshed in place; otherwise a new book is created
under a unique slug.  Either way the provider's external-id row is
created or refreshed, so repeating an upsert never creates a duplicate.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .database import Book, BookExternalId
from .logger import get_logger
from .models import BookAggregate, UpsertResult
from .normalize import generate_slug_base
from .schema import validate_aggregate

logger = get_logger()

_REFRESHED_FIELDS = (
    "title",
    "subtitle",
    "description",
    "isbn13",
    "isbn10",
    "published_date",
    "language",
    "publisher",
    "page_count",
)


class BookUpsertService:
    """Writes :class:`BookAggregate` objects to the ``books`` tables.

    Args:
        engine: SQLAlchemy engine (the task store's engine works fine).
    """

    def __init__(self, engine):
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def upsert(self, aggregate: BookAggregate) -> UpsertResult:
        """Create or refresh the book described by *aggregate*.

        Raises:
            ValueError: If the aggregate fails validation.
            sqlalchemy.exc.SQLAlchemyError: On database errors.
        """
        errors = validate_aggregate(aggregate)
        if errors:
            raise ValueError(f"Invalid book aggregate: {'; '.join(errors)}")

        with self._session_factory.begin() as session:
            book = self._find_existing(session, aggregate)
            is_new = book is None
            if is_new:
                book = Book(
                    slug=self._unique_slug(
                        session, aggregate.slug_base or generate_slug_base(aggregate.title, aggregate.authors)
                    ),
                    authors=[],
                    categories=[],
                )
                session.add(book)

            self._apply(book, aggregate)
            session.flush()
            self._upsert_external_id(session, book, aggregate)
            result = UpsertResult(book_id=book.id, slug=book.slug, is_new=is_new)

        logger.debug(
            "Book upserted",
            book_id=result.book_id,
            slug=result.slug,
            is_new=result.is_new,
            source=aggregate.identifiers.source,
            external_id=aggregate.identifiers.external_id,
        )
        return result

    def _find_existing(self, session: Session, aggregate: BookAggregate) -> Optional[Book]:
        ids = aggregate.identifiers
        book = session.scalars(
            select(Book)
            .join(BookExternalId)
            .where(BookExternalId.source == ids.source, BookExternalId.external_id == ids.external_id)
        ).first()
        if book is None and aggregate.isbn13:
            book = session.scalars(select(Book).where(Book.isbn13 == aggregate.isbn13)).first()
        if book is None and aggregate.isbn10:
            book = session.scalars(select(Book).where(Book.isbn10 == aggregate.isbn10)).first()
        return book

    @staticmethod
    def _unique_slug(session: Session, base: str) -> str:
        candidate, suffix = base, 2
        while session.scalar(select(Book.id).where(Book.slug == candidate)) is not None:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    @staticmethod
    def _apply(book: Book, aggregate: BookAggregate) -> None:
        """Copy non-empty aggregate fields onto *book*; empty ones never erase data."""
        for name in _REFRESHED_FIELDS:
            value = getattr(aggregate, name)
            if value is not None:
                setattr(book, name, value)
        if aggregate.authors:
            book.authors = list(aggregate.authors)
        if aggregate.categories:
            book.categories = list(aggregate.categories)
        if aggregate.dimensions is not None and not aggregate.dimensions.is_empty():
            book.dimensions = asdict(aggregate.dimensions)
        book.updated_at = datetime.now()

    @staticmethod
    def _upsert_external_id(session: Session, book: Book, aggregate: BookAggregate) -> None:
        ids = aggregate.identifiers
        row = session.scalars(
            select(BookExternalId).where(
                BookExternalId.source == ids.source,
                BookExternalId.external_id == ids.external_id,
            )
        ).first()
        if row is None:
            row = BookExternalId(source=ids.source, external_id=ids.external_id, book_id=book.id)
            session.add(row)
        row.info_link = ids.info_link or row.info_link
        row.preview_link = ids.preview_link or row.preview_link
        if ids.average_rating is not None:
            row.average_rating = ids.average_rating
        if ids.ratings_count is not None:
            row.ratings_count = ids.ratings_count
        if ids.image_links:
            row.image_links = dict(ids.image_links)
        elif row.image_links is None:
            row.image_links = {}
        row.updated_at = datetime.now()
