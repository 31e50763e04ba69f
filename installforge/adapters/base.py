"""
Registry client base — the contract between the image packager and
whatever talks to a container registry.

The packager never shells out or opens sockets itself; it only calls
``resolve_digest`` and ``fetch_image`` on a client.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path


class RegistryError(Exception):
    """A registry operation failed for one image reference."""

    def __init__(self, reference: str, message: str):
        super().__init__(f"{reference}: {message}")
        self.reference = reference
        self.message = message


class RegistryClient(ABC):
    """Abstract base class for registry clients.

    To add a client:
        1. Subclass RegistryClient
        2. Implement name, is_available, resolve_digest, fetch_image
        3. Register it in ``installforge.adapters.registry.CLIENT_TYPES``
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The client identifier (e.g., 'docker', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying tool is usable.  Fast, never raises."""

    @abstractmethod
    def resolve_digest(self, reference: str, *, timeout: float) -> str:
        """Resolve a tag reference to its immutable content digest.

        Returns:
            The digest (``sha256:<hex>``).

        Raises:
            RegistryError: The reference could not be resolved.
        """

    @abstractmethod
    def fetch_image(self, reference: str, digest: str, dest: Path, *, timeout: float) -> int:
        """Retrieve the image *digest* and serialize it to *dest*.

        *reference* is the digest-pinned reference (``name@digest``).

        Returns:
            Bytes written.

        Raises:
            RegistryError: Retrieval or serialization failed.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
