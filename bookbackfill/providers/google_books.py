"""
Google Books provider: volume fetch client and volume → BookAggregate mapper.
"""

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from ..logger import get_logger
from ..models import BookAggregate, Dimensions, ExternalIdentifiers, Source
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

SOURCE = Source.GOOGLE_BOOKS.value
DEFAULT_BASE_URL = "https://www.googleapis.com/books/v1"
IMAGE_SIZES = ("smallThumbnail", "thumbnail", "small", "medium", "large", "extraLarge")


class GoogleBooksClient:
    """Fetches single volumes from the Google Books API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.http = JsonHttpClient(SOURCE, timeout=timeout, session=session)
        if not api_key:
            logger.warning("GOOGLE_BOOKS_API_KEY not set; volume requests will be rate-limited harder")

    def fetch(self, volume_id: str) -> Optional[Dict[str, Any]]:
        """Return the volume document, or None if Google has no such volume."""
        params = {"key": self.api_key} if self.api_key else None
        url = f"{self.base_url}/volumes/{quote(volume_id, safe='')}"
        document = self.http.get_json(url, params=params)
        if not document:
            logger.debug("Google Books returned no volume", volume_id=volume_id)
            return None
        return document


def _isbns(volume_info: Dict[str, Any]) -> Dict[str, Optional[str]]:
    found: Dict[str, Optional[str]] = {"ISBN_13": None, "ISBN_10": None}
    for ident in volume_info.get("industryIdentifiers") or []:
        kind = ident.get("type")
        if kind in found and found[kind] is None:
            found[kind] = normalize_isbn(ident.get("identifier"))
    return found


def _string_list(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    cleaned = (clean_text(v) for v in values if isinstance(v, str))
    return [v for v in cleaned if v]


def _image_links(volume_info: Dict[str, Any]) -> Dict[str, str]:
    raw = volume_info.get("imageLinks") or {}
    links = {}
    for size in IMAGE_SIZES:
        url = secure_url(raw.get(size))
        if url:
            links[size] = url
    return links


def _dimensions(volume_info: Dict[str, Any]) -> Optional[Dimensions]:
    raw = volume_info.get("dimensions") or {}
    dims = Dimensions(
        height=clean_text(raw.get("height")),
        width=clean_text(raw.get("width")),
        thickness=clean_text(raw.get("thickness")),
    )
    return None if dims.is_empty() else dims


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _float_or_none(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def map_volume(document: Optional[Dict[str, Any]]) -> Optional[BookAggregate]:
    """Map a Google Books volume document to a :class:`BookAggregate`.

    Returns None when the document has no ``volumeInfo``, no id, no title,
    or otherwise fails aggregate validation.
    """
    if not isinstance(document, dict):
        return None
    volume_info = document.get("volumeInfo")
    volume_id = clean_text(document.get("id"))
    if not isinstance(volume_info, dict) or not volume_id:
        logger.debug("Google Books document missing volumeInfo or id")
        return None

    title = strip_wrapping_quotes(volume_info.get("title"))
    if not title:
        logger.debug("Google Books volume has no title", volume_id=volume_id)
        return None

    authors = _string_list(volume_info.get("authors"))
    isbns = _isbns(volume_info)
    page_count = _int_or_none(volume_info.get("pageCount"))

    aggregate = BookAggregate(
        title=title,
        subtitle=strip_wrapping_quotes(volume_info.get("subtitle")),
        description=html_to_text(volume_info.get("description")),
        isbn13=isbns["ISBN_13"],
        isbn10=isbns["ISBN_10"],
        published_date=parse_published_date(volume_info.get("publishedDate")),
        language=clean_text(volume_info.get("language")),
        publisher=strip_wrapping_quotes(volume_info.get("publisher")),
        page_count=page_count if page_count and page_count > 0 else None,
        authors=authors,
        categories=_string_list(volume_info.get("categories")),
        dimensions=_dimensions(volume_info),
        identifiers=ExternalIdentifiers(
            source=SOURCE,
            external_id=volume_id,
            info_link=secure_url(volume_info.get("infoLink")),
            preview_link=secure_url(volume_info.get("previewLink")),
            average_rating=_float_or_none(volume_info.get("averageRating")),
            ratings_count=_int_or_none(volume_info.get("ratingsCount")),
            image_links=_image_links(volume_info),
        ),
        slug_base=generate_slug_base(title, authors),
    )

    errors = validate_aggregate(aggregate)
    if errors:
        logger.warning("Google Books volume rejected", volume_id=volume_id, errors=errors)
        return None
    return aggregate
