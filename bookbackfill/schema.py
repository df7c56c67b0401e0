from typing import Any, List, Optional
from urllib.parse import urlparse

from .models import BookAggregate
from .normalize import normalize_isbn

TITLE_MAX_LENGTH = 512


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _valid_url(v: str) -> bool:
    p = urlparse(v)
    return p.scheme in ("http", "https") and bool(p.netloc)


def _check_isbn(field_name: str, value: Optional[str], length: int, errors: List[str]) -> None:
    if value is None:
        return
    normalized = normalize_isbn(value)
    if normalized is None or len(normalized) != length:
        errors.append(f"Field '{field_name}' must be a {length}-character ISBN")


def validate_aggregate(aggregate: BookAggregate) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []

    if not _is_non_empty_str(aggregate.title):
        errors.append("Missing required field: title")
    elif len(aggregate.title) > TITLE_MAX_LENGTH:
        errors.append(f"Field 'title' exceeds {TITLE_MAX_LENGTH} characters")

    ids = aggregate.identifiers
    if ids is None:
        errors.append("Missing required field: identifiers")
    else:
        if not _is_non_empty_str(ids.source):
            errors.append("Missing required field: identifiers.source")
        if not _is_non_empty_str(ids.external_id):
            errors.append("Missing required field: identifiers.external_id")
        for name in ("info_link", "preview_link"):
            link = getattr(ids, name)
            if link is not None and not _valid_url(link):
                errors.append(f"Field 'identifiers.{name}' must be an absolute http(s) URL")
        for size, link in ids.image_links.items():
            if not _valid_url(link):
                errors.append(f"Image link '{size}' must be an absolute http(s) URL")

    _check_isbn("isbn13", aggregate.isbn13, 13, errors)
    _check_isbn("isbn10", aggregate.isbn10, 10, errors)

    if aggregate.page_count is not None and aggregate.page_count < 0:
        errors.append("Field 'page_count' must be non-negative")

    return errors
