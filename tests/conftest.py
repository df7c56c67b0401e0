"""
Pytest configuration and shared fixtures.
"""

import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from bookbackfill.coordinator import BackfillCoordinator
from bookbackfill.logger import StructuredLogger
from bookbackfill.models import BookAggregate, ExternalIdentifiers, UpsertResult
from bookbackfill.providers.registry import ProviderRegistry
from bookbackfill.storage import TaskStore


class ScriptedProvider:
    """
    Fake fetch client that replays a script, one entry per call.

    Entries are returned as the fetched document, except exceptions, which
    are raised.  The last entry repeats once the script runs out.
    """

    def __init__(self, *script: Any):
        self.script: List[Any] = list(script) or [None]
        self.calls: List[str] = []

    def fetch(self, source_id: str):
        self.calls.append(source_id)
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        return step


def map_fake_document(document: Dict[str, Any]):
    """Mapper for ScriptedProvider documents: ``{"id": ..., "title": ...}``."""
    if not document.get("title"):
        return None
    return BookAggregate(
        title=document["title"],
        identifiers=ExternalIdentifiers(source="FAKE", external_id=document["id"]),
    )


class RecordingUpsert:
    """Fake upsert collaborator that records every aggregate it receives."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.received: List[BookAggregate] = []

    def __call__(self, aggregate: BookAggregate) -> UpsertResult:
        self.received.append(aggregate)
        if self.error is not None:
            raise self.error
        return UpsertResult(
            book_id=f"book-{len(self.received)}", slug=aggregate.title.lower(), is_new=True
        )


@pytest.fixture
def store(tmp_path) -> TaskStore:
    """Task store backed by a temporary SQLite file."""
    task_store = TaskStore(tmp_path / "backfill.db")
    yield task_store
    task_store.close()


@pytest.fixture
def quiet_logger(tmp_path) -> StructuredLogger:
    """Fresh logger with its own metrics, writing only to tmp_path."""
    return StructuredLogger(name="test-backfill", log_dir=tmp_path / "logs", enable_console=False)


@pytest.fixture
def good_document() -> Dict[str, Any]:
    return {"id": "X", "title": "The Hobbit"}


@pytest.fixture
def make_coordinator(store, quiet_logger):
    """Build a coordinator over the temp store with a single FAKE provider."""

    def _make(provider=None, upsert=None, gate=None, **kwargs) -> BackfillCoordinator:
        registry = ProviderRegistry()
        if provider is not None:
            registry.register("FAKE", provider.fetch, map_fake_document)
        return BackfillCoordinator(
            store=store,
            registry=registry,
            upsert=upsert or RecordingUpsert(),
            gate=gate,
            logger=quiet_logger,
            **kwargs,
        )

    return _make


@pytest.fixture
def google_volume() -> Dict[str, Any]:
    """Google Books volume response (trimmed to the fields the mapper reads)."""
    return {
        "kind": "books#volume",
        "id": "zyTCAlFPjgYC",
        "volumeInfo": {
            "title": "The Google Story",
            "subtitle": "Inside the Hottest Business, Media, and Technology Success of Our Time",
            "authors": ["David A. Vise", "Mark Malseed"],
            "publisher": "Random House Publishing Group",
            "publishedDate": "2005-11-15",
            "description": "<p>Here is the story behind one of the most remarkable Internet "
                           "successes of our time.</p><p>Based on scrupulous research.</p>",
            "industryIdentifiers": [
                {"type": "ISBN_10", "identifier": "055380457X"},
                {"type": "ISBN_13", "identifier": "9780553804577"},
            ],
            "pageCount": 207,
            "dimensions": {"height": "24.00 cm", "width": "16.30 cm", "thickness": "2.70 cm"},
            "categories": ["Browsers (Computer programs)"],
            "averageRating": 3.5,
            "ratingsCount": 136,
            "language": "en",
            "imageLinks": {
                "smallThumbnail": "http://books.google.com/books?id=zyTCAlFPjgYC&zoom=5",
                "thumbnail": "http://books.google.com/books?id=zyTCAlFPjgYC&zoom=1",
            },
            "previewLink": "http://books.google.com/books?id=zyTCAlFPjgYC&hl=&source=gbs_api",
            "infoLink": "https://play.google.com/store/books/details?id=zyTCAlFPjgYC",
        },
    }


@pytest.fixture
def open_library_edition() -> Dict[str, Any]:
    """Open Library Books API ``jscmd=data`` entry for one ISBN."""
    return {
        "url": "https://openlibrary.org/books/OL7353617M/Fantastic_Mr._Fox",
        "key": "/books/OL7353617M",
        "title": "Fantastic Mr. Fox",
        "authors": [{"url": "https://openlibrary.org/authors/OL34184A", "name": "Roald Dahl"}],
        "number_of_pages": 96,
        "identifiers": {
            "isbn_10": ["0140328726"],
            "isbn_13": ["9780140328721"],
            "openlibrary": ["OL7353617M"],
        },
        "publishers": [{"name": "Puffin"}],
        "publish_date": "October 1, 1988",
        "subjects": [
            {"name": "Animals", "url": "https://openlibrary.org/subjects/animals"},
            {"name": "Foxes", "url": "https://openlibrary.org/subjects/foxes"},
        ],
        "cover": {
            "small": "https://covers.openlibrary.org/b/id/6498519-S.jpg",
            "medium": "https://covers.openlibrary.org/b/id/6498519-M.jpg",
            "large": "https://covers.openlibrary.org/b/id/6498519-L.jpg",
        },
    }


@pytest.fixture
def no_backoff_sleep(monkeypatch):
    """Skip the delays between provider retries."""
    sleeps = []
    monkeypatch.setattr("bookbackfill.retry.time.sleep", sleeps.append)
    return sleeps


def make_response(status: int = 200, payload: Any = None, body: Optional[str] = None) -> requests.Response:
    """Build a real requests.Response without touching the network."""
    resp = requests.Response()
    resp.status_code = status
    resp._content = (body if body is not None else json.dumps(payload)).encode("utf-8")
    resp.url = "https://example.test/"
    return resp


class FakeSession:
    """Stands in for requests.Session; replays responses or raises exceptions in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None):
        self.requests.append({"url": url, "params": params, "timeout": timeout})
        step = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(step, Exception):
            raise step
        return step
