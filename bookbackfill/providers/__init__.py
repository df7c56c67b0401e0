"""Provider fetch clients, document mappers and the registry that pairs them."""

from .common import JsonHttpClient, ProviderError
from .registry import ProviderAdapter, ProviderRegistry, build_default_registry

__all__ = [
    "JsonHttpClient",
    "ProviderAdapter",
    "ProviderError",
    "ProviderRegistry",
    "build_default_registry",
]
