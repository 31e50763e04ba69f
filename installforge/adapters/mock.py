"""
Mock registry client — deterministic test double.

Digests are derived from the reference text, so the same tag always
resolves to the same digest.  Individual references can be given
explicit digests (to model two tags sharing an image) or made to fail.
"""

from __future__ import annotations

import hashlib
import io
import tarfile
import threading
import time
from pathlib import Path

from installforge.adapters.base import RegistryClient, RegistryError


class MockRegistryClient(RegistryClient):
    """Registry client that never touches the network.

    Args:
        available: Value reported by ``is_available``.
        delay: Seconds each fetch sleeps (to exercise concurrency).
    """

    def __init__(self, available: bool = True, delay: float = 0.0):
        self._available = available
        self._delay = delay
        self._digests: dict[str, str] = {}
        self._resolve_failures: dict[str, str] = {}
        self._fetch_failures: dict[str, str] = {}
        self._lock = threading.Lock()
        self._call_log: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_log(self) -> list[tuple[str, str]]:
        """(operation, reference) for every call received."""
        with self._lock:
            return list(self._call_log)

    def calls(self, operation: str) -> list[str]:
        return [ref for op, ref in self.call_log if op == operation]

    def is_available(self) -> bool:
        return self._available

    @staticmethod
    def digest_for(reference: str) -> str:
        return "sha256:" + hashlib.sha256(reference.encode()).hexdigest()

    def set_digest(self, reference: str, digest: str) -> None:
        """Make *reference* resolve to *digest*."""
        self._digests[reference] = digest

    def set_resolve_failure(self, reference: str, error: str = "manifest unknown") -> None:
        self._resolve_failures[reference] = error

    def set_fetch_failure(self, digest: str, error: str = "blob unavailable") -> None:
        self._fetch_failures[digest] = error

    def _record(self, operation: str, reference: str) -> None:
        with self._lock:
            self._call_log.append((operation, reference))

    def resolve_digest(self, reference: str, *, timeout: float) -> str:
        self._record("resolve", reference)
        if reference in self._resolve_failures:
            raise RegistryError(reference, self._resolve_failures[reference])
        return self._digests.get(reference, self.digest_for(reference))

    def fetch_image(self, reference: str, digest: str, dest: Path, *, timeout: float) -> int:
        self._record("fetch", reference)
        if self._delay:
            time.sleep(self._delay)
        if digest in self._fetch_failures:
            raise RegistryError(reference, self._fetch_failures[digest])

        payload = f'{{"reference": "{reference}", "digest": "{digest}"}}\n'.encode()
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            info = tarfile.TarInfo("manifest.json")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
        data = buf.getvalue()
        dest.write_bytes(data)
        return len(data)

    def reset(self) -> None:
        """Clear call log and configured digests/failures."""
        with self._lock:
            self._call_log.clear()
        self._digests.clear()
        self._resolve_failures.clear()
        self._fetch_failures.clear()
