"""Adapters — registry clients used by the image packager.

Public re-exports for convenient access.
"""

from installforge.adapters.base import RegistryClient, RegistryError
from installforge.adapters.mock import MockRegistryClient
from installforge.adapters.registry import create_registry_client

__all__ = [
    "MockRegistryClient",
    "RegistryClient",
    "RegistryError",
    "create_registry_client",
]
