"""
Archive signing — detached Ed25519 signatures.

The signature covers the raw archive bytes and is stored base64-encoded
in ``installer.tar.gz.sig`` next to the archive.  Keys are PEM files
(PKCS#8 private, SubjectPublicKeyInfo public), optionally passphrase
protected.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from installforge.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def generate_private_key() -> Ed25519PrivateKey:
    return Ed25519PrivateKey.generate()


def private_key_pem(key: Ed25519PrivateKey, passphrase: str = "") -> bytes:
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase else serialization.NoEncryption()
    )
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )


def public_key_pem(key: Ed25519PrivateKey | Ed25519PublicKey) -> bytes:
    public = key.public_key() if isinstance(key, Ed25519PrivateKey) else key
    return public.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_private_key(path: Path, passphrase: str = "") -> Ed25519PrivateKey:
    """Load an Ed25519 private key from a PEM file.

    Raises:
        ConfigurationError: Missing file, wrong passphrase or not Ed25519.
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Cannot read signing key {path}: {e}", entity=str(path)) from e
    try:
        key = serialization.load_pem_private_key(data, password=passphrase.encode() or None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid signing key {path}: {e}", entity=str(path)) from e
    if not isinstance(key, Ed25519PrivateKey):
        raise ConfigurationError(f"Signing key {path} is not an Ed25519 key", entity=str(path))
    return key


def load_public_key(path: Path) -> Ed25519PublicKey:
    try:
        key = serialization.load_pem_public_key(path.read_bytes())
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Invalid public key {path}: {e}", entity=str(path)) from e
    if not isinstance(key, Ed25519PublicKey):
        raise ConfigurationError(f"Public key {path} is not an Ed25519 key", entity=str(path))
    return key


class ArchiveSigner:
    """Produces detached signatures with one private key."""

    def __init__(self, key: Ed25519PrivateKey):
        self._key = key

    @classmethod
    def from_file(cls, path: Path, passphrase: str = "") -> ArchiveSigner:
        return cls(load_private_key(path, passphrase))

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._key.public_key()

    def sign_bytes(self, data: bytes) -> str:
        return base64.b64encode(self._key.sign(data)).decode("ascii")

    def sign_file(self, path: Path) -> str:
        """Base64 Ed25519 signature over the file's bytes."""
        # Ed25519 is not pre-hashed, so the whole message is needed at once
        signature = self.sign_bytes(path.read_bytes())
        logger.debug("Signed %s", path)
        return signature


def verify_signature(path: Path, signature_b64: str, public_key: Ed25519PublicKey) -> bool:
    """Check a detached base64 signature against a file."""
    try:
        signature = base64.b64decode(signature_b64.strip(), validate=True)
    except ValueError:
        return False
    try:
        public_key.verify(signature, path.read_bytes())
    except InvalidSignature:
        return False
    return True
