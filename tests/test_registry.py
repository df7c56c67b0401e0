"""Tests for the provider registry."""

from bookbackfill.config import BackfillSettings
from bookbackfill.providers.google_books import map_volume
from bookbackfill.providers.open_library import map_edition
from bookbackfill.providers.registry import ProviderRegistry, build_default_registry

from conftest import ScriptedProvider, map_fake_document


class TestProviderRegistry:
    def test_register_and_get(self):
        provider = ScriptedProvider({"id": "X", "title": "T"})
        registry = ProviderRegistry()
        registry.register("FAKE", provider.fetch, map_fake_document)

        adapter = registry.get("FAKE")

        assert adapter.source == "FAKE"
        assert adapter.map(adapter.fetch("X")).title == "T"
        assert "FAKE" in registry

    def test_unknown_source_is_none(self):
        registry = ProviderRegistry()
        assert registry.get("AMAZON") is None
        assert "AMAZON" not in registry

    def test_default_registry(self):
        registry = build_default_registry(BackfillSettings(google_books_api_key="k"))

        assert registry.sources == ["GOOGLE_BOOKS", "OPEN_LIBRARY"]
        assert registry.get("GOOGLE_BOOKS").map is map_volume
        assert registry.get("OPEN_LIBRARY").map is map_edition
