"""Vendor adapters: one per provider, dispatched through a lookup table."""

from nexus.providers.base import ChatMessage, Model, Provider, ProviderAdapter, VendorStream
from nexus.providers.registry import PROVIDERS, AdapterRegistry

__all__ = [
    "PROVIDERS",
    "AdapterRegistry",
    "ChatMessage",
    "Model",
    "Provider",
    "ProviderAdapter",
    "VendorStream",
]
