"""
Open Library provider.

Task source ids are ISBNs; the edition is looked up through the Books API
(``/api/books?bibkeys=ISBN:...&jscmd=data``) and its ``/books/OL…M`` key
becomes the external id.
"""

from typing import Any, Dict, List, Optional

import requests

from ..logger import get_logger
from ..models import BookAggregate, ExternalIdentifiers, Source
from ..normalize import (
    clean_text,
    generate_slug_base,
    html_to_text,
    normalize_isbn,
    parse_published_date,
    secure_url,
    strip_wrapping_quotes,
)
from ..schema import validate_aggregate
from .common import JsonHttpClient

logger = get_logger()

SOURCE = Source.OPEN_LIBRARY.value
DEFAULT_BASE_URL = "https://openlibrary.org"


class OpenLibraryClient:
    """Fetches edition data from the Open Library Books API by ISBN."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = JsonHttpClient(SOURCE, timeout=timeout, session=session)

    def fetch(self, isbn: str) -> Optional[Dict[str, Any]]:
        """Return the edition document for *isbn*, or None if Open Library has none."""
        bibkey = f"ISBN:{isbn}"
        payload = self.http.get_json(
            f"{self.base_url}/api/books",
            params={"bibkeys": bibkey, "format": "json", "jscmd": "data"},
        )
        if not isinstance(payload, dict):
            return None
        document = payload.get(bibkey)
        if not document:
            logger.debug("Open Library returned no edition", isbn=isbn)
            return None
        return document


def _names(entries: Any) -> List[str]:
    """Open Library lists are either plain strings or ``{"name": ...}`` objects."""
    names = []
    for entry in entries if isinstance(entries, list) else []:
        name = entry.get("name") if isinstance(entry, dict) else entry
        name = strip_wrapping_quotes(name) if isinstance(name, str) else None
        if name:
            names.append(name)
    return names


def _first_isbn(identifiers: Dict[str, Any], key: str) -> Optional[str]:
    for value in identifiers.get(key) or []:
        isbn = normalize_isbn(value)
        if isbn:
            return isbn
    return None


def _description(document: Dict[str, Any]) -> Optional[str]:
    raw = document.get("description")
    if isinstance(raw, dict):
        raw = raw.get("value")
    return html_to_text(raw) if isinstance(raw, str) else None


def _edition_id(key: Optional[str]) -> Optional[str]:
    key = clean_text(key)
    if not key:
        return None
    return key.rstrip("/").rsplit("/", 1)[-1]


def map_edition(document: Optional[Dict[str, Any]]) -> Optional[BookAggregate]:
    """Map an Open Library edition document to a :class:`BookAggregate`."""
    if not isinstance(document, dict):
        return None
    edition_id = _edition_id(document.get("key"))
    title = strip_wrapping_quotes(document.get("title"))
    if not edition_id or not title:
        logger.debug("Open Library edition missing key or title", key=document.get("key"))
        return None

    identifiers = document.get("identifiers") or {}
    authors = _names(document.get("authors"))
    publishers = _names(document.get("publishers"))
    cover = document.get("cover") or {}
    image_links = {
        size: url
        for size, url in ((s, secure_url(cover.get(s))) for s in ("small", "medium", "large"))
        if url
    }
    pages = document.get("number_of_pages")

    aggregate = BookAggregate(
        title=title,
        subtitle=strip_wrapping_quotes(document.get("subtitle")),
        description=_description(document),
        isbn13=_first_isbn(identifiers, "isbn_13"),
        isbn10=_first_isbn(identifiers, "isbn_10"),
        published_date=parse_published_date(document.get("publish_date")),
        publisher=publishers[0] if publishers else None,
        page_count=pages if isinstance(pages, int) and pages > 0 else None,
        authors=authors,
        categories=_names(document.get("subjects")),
        identifiers=ExternalIdentifiers(
            source=SOURCE,
            external_id=edition_id,
            info_link=secure_url(document.get("url")),
            image_links=image_links,
        ),
        slug_base=generate_slug_base(title, authors),
    )

    errors = validate_aggregate(aggregate)
    if errors:
        logger.warning("Open Library edition rejected", edition_id=edition_id, errors=errors)
        return None
    return aggregate
