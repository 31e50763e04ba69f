"""
Registry client lookup — maps a configured client name to an instance.
"""

from __future__ import annotations

import logging

from installforge.adapters.base import RegistryClient
from installforge.adapters.containers.docker import DockerCliRegistryClient
from installforge.adapters.mock import MockRegistryClient

logger = logging.getLogger(__name__)

CLIENT_TYPES: dict[str, type[RegistryClient]] = {
    "docker": DockerCliRegistryClient,
    "mock": MockRegistryClient,
}


def create_registry_client(name: str) -> RegistryClient:
    """Instantiate the registry client registered under *name*.

    Raises:
        ValueError: Unknown client name.
    """
    try:
        client_cls = CLIENT_TYPES[name]
    except KeyError:
        raise ValueError(
            f"Unknown registry client '{name}'. Valid: {', '.join(sorted(CLIENT_TYPES))}"
        ) from None
    client = client_cls()
    if not client.is_available():
        logger.warning("Registry client '%s' is not available on this host", name)
    return client
