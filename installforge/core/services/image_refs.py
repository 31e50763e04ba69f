"""
Image reference parsing — ``[registry/]repository[:tag][@algorithm:encoded]``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_DIGEST_RE = re.compile(r"^(?P<algorithm>[a-z0-9]+(?:[.+_-][a-z0-9]+)*):(?P<encoded>[A-Za-z0-9=_-]+)$")


def is_digest(value: str) -> bool:
    return bool(_DIGEST_RE.match(value))


def digest_filename(digest: str) -> str:
    """Blob file name for a digest: ``sha256:ab12…`` → ``sha256:ab12….tar``."""
    if not is_digest(digest):
        raise ValueError(f"not a content digest: {digest!r}")
    return f"{digest}.tar"


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""

    repository: str            # including registry host, if any
    tag: str = ""
    digest: str = ""

    @property
    def pinned(self) -> bool:
        return bool(self.digest)

    @property
    def name(self) -> str:
        """Repository plus tag, without the digest."""
        return f"{self.repository}:{self.tag}" if self.tag else self.repository

    def with_digest(self, digest: str) -> str:
        """The reference pinned to *digest* (``name@digest``)."""
        return f"{self.repository}@{digest}"

    def __str__(self) -> str:
        ref = self.name
        return f"{ref}@{self.digest}" if self.digest else ref


def parse_image_reference(ref: str) -> ImageReference:
    """Split an image reference into repository, tag and digest.

    Raises:
        ValueError: Empty reference or malformed digest.
    """
    text = ref.strip()
    if not text:
        raise ValueError("empty image reference")

    digest = ""
    if "@" in text:
        text, digest = text.split("@", 1)
        if not is_digest(digest):
            raise ValueError(f"malformed digest in image reference {ref!r}")

    tag = ""
    # A colon after the last slash separates the tag; one before it is a registry port
    slash = text.rfind("/")
    colon = text.rfind(":")
    if colon > slash:
        text, tag = text[:colon], text[colon + 1:]

    if not text:
        raise ValueError(f"missing repository in image reference {ref!r}")
    return ImageReference(repository=text, tag=tag, digest=digest)
