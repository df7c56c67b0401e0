"""
Value types shared by the queue, the provider mappers and the upsert service.
"""

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional


class TaskStatus(str, Enum):
    """Lifecycle states of a backfill task."""

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Source(str, Enum):
    """Providers with a registered fetch client and mapper."""

    GOOGLE_BOOKS = "GOOGLE_BOOKS"
    OPEN_LIBRARY = "OPEN_LIBRARY"


DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class QueuedTask:
    """The slice of a task row the coordinator needs to process it."""

    id: int
    source: str
    source_id: str
    priority: int
    attempts: int
    max_attempts: int


@dataclass(frozen=True)
class QueueStats:
    """Task counts per status over the trailing stats window."""

    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.processing + self.completed + self.failed

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class UpsertResult:
    """Identity of a persisted book and whether this call created it."""

    book_id: str
    slug: str
    is_new: bool


@dataclass
class Dimensions:
    height: Optional[str] = None
    width: Optional[str] = None
    thickness: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.height or self.width or self.thickness)


@dataclass
class ExternalIdentifiers:
    """Provider-side identity and provider-specific metadata for a book."""

    source: str
    external_id: str
    info_link: Optional[str] = None
    preview_link: Optional[str] = None
    average_rating: Optional[float] = None
    ratings_count: Optional[int] = None
    image_links: Dict[str, str] = field(default_factory=dict)


@dataclass
class BookAggregate:
    """A provider document mapped into the canonical book shape."""

    title: str
    identifiers: ExternalIdentifiers
    subtitle: Optional[str] = None
    description: Optional[str] = None
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    published_date: Optional[date] = None
    language: Optional[str] = None
    publisher: Optional[str] = None
    page_count: Optional[int] = None
    authors: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    dimensions: Optional[Dimensions] = None
    slug_base: Optional[str] = None
