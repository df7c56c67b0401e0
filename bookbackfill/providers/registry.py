"""
Provider registry: which sources the coordinator can backfill, and how.

Each source maps to a fetch function (``source_id -> document | None``)
and a mapper (``document -> BookAggregate | None``).  Looking up a
source that was never registered returns None, which the coordinator
records as an unsupported-source failure.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..models import BookAggregate, Source
from .google_books import GoogleBooksClient, map_volume
from .open_library import OpenLibraryClient, map_edition

FetchFn = Callable[[str], Optional[Any]]
MapFn = Callable[[Any], Optional[BookAggregate]]


@dataclass(frozen=True)
class ProviderAdapter:
    source: str
    fetch: FetchFn
    map: MapFn


class ProviderRegistry:
    def __init__(self) -> None:
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, source: str, fetch: FetchFn, mapper: MapFn) -> None:
        self._adapters[source] = ProviderAdapter(source=source, fetch=fetch, map=mapper)

    def get(self, source: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(source)

    def __contains__(self, source: object) -> bool:
        return source in self._adapters

    @property
    def sources(self) -> List[str]:
        return sorted(self._adapters)


def build_default_registry(settings) -> ProviderRegistry:
    """Register the Google Books and Open Library clients configured by *settings*."""
    registry = ProviderRegistry()

    google = GoogleBooksClient(
        base_url=settings.google_books_base_url,
        api_key=settings.google_books_api_key,
        timeout=settings.fetch_timeout_seconds,
    )
    registry.register(Source.GOOGLE_BOOKS.value, google.fetch, map_volume)

    open_library = OpenLibraryClient(
        base_url=settings.open_library_base_url,
        timeout=settings.fetch_timeout_seconds,
    )
    registry.register(Source.OPEN_LIBRARY.value, open_library.fetch, map_edition)

    return registry
