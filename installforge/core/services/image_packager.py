"""
Image packager — distinct references → pinned digests → one blob per digest.

Two best-effort fan-out phases on a bounded thread pool:

  1. Resolve every unpinned reference to a digest (pinned ones are kept).
  2. Retrieve each *distinct* digest exactly once into
     ``<blob_dir>/<digest>.tar``.

Every task returns an outcome (result or error); nothing fails fast.
After the join, any failed non-optional image raises one aggregate
``ImageRetrievalFailed``.  Optional images (every service using them
sets ``x-offline-optional: true``) are reported as missing instead.
"""

from __future__ import annotations

import concurrent.futures
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from installforge.adapters.base import RegistryClient, RegistryError
from installforge.core.errors import BuildCancelled, ImageRetrievalFailed
from installforge.core.models.compose import ComposeDocument
from installforge.core.observability import metrics as m
from installforge.core.observability.metrics import MetricsRegistry
from installforge.core.services.image_refs import digest_filename, parse_image_reference

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class ImageOutcome:
    """Result slot of one resolve or fetch task."""

    reference: str
    digest: str = ""
    size: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


@dataclass
class ImageBlob:
    """One distinct digest and everything that uses it."""

    digest: str
    references: list[str] = field(default_factory=list)   # pinned references
    services: list[str] = field(default_factory=list)
    modules: list[str] = field(default_factory=list)
    optional: bool = True
    path: Path | None = None
    size: int = 0

    @property
    def filename(self) -> str:
        return digest_filename(self.digest)

    @property
    def retrieved(self) -> bool:
        return self.path is not None


@dataclass
class ImagePackage:
    """The digest map produced for one build."""

    pinned: dict[str, str] = field(default_factory=dict)        # reference → name@digest
    blobs: dict[str, ImageBlob] = field(default_factory=dict)    # digest → blob
    missing_optional: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def apply(self, document: ComposeDocument) -> None:
        """Rewrite service images in *document* to their pinned references."""
        for svc in document.services.values():
            if svc.image and svc.image in self.pinned:
                svc.image = self.pinned[svc.image]

    def digests_for_module(self, module: str) -> list[str]:
        return sorted(d for d, b in self.blobs.items() if module in b.modules and b.retrieved)


@dataclass
class _RefInfo:
    services: list[str]
    optional: bool


class ImagePackager:
    """Resolves and retrieves the images of a merged document.

    Args:
        client: Registry client used for every network operation.
        workers: Size of the bounded fan-out pool.
        timeout: Per-operation timeout in seconds.
        metrics: Optional registry for fetch durations and counts.
    """

    def __init__(
        self,
        client: RegistryClient,
        *,
        workers: int = 4,
        timeout: float = 600.0,
        metrics: MetricsRegistry | None = None,
    ):
        self.client = client
        self.workers = max(1, workers)
        self.timeout = timeout
        self.metrics = metrics

    # ── Collection ──────────────────────────────────────────────

    @staticmethod
    def collect(document: ComposeDocument) -> dict[str, _RefInfo]:
        refs: dict[str, _RefInfo] = {}
        for ref, services in document.image_references().items():
            optional = all(document.services[s].image_optional for s in services)
            refs[ref] = _RefInfo(services=services, optional=optional)
        return refs

    # ── Fan-out helper ──────────────────────────────────────────

    def _fan_out(
        self,
        items: list[str],
        task: Callable[[str], ImageOutcome],
        cancel: threading.Event | None,
        on_done: Callable[[ImageOutcome], None] | None = None,
    ) -> dict[str, ImageOutcome]:
        def _guarded(item: str) -> ImageOutcome:
            if cancel is not None and cancel.is_set():
                return ImageOutcome(reference=item, error="cancelled")
            try:
                return task(item)
            except RegistryError as e:
                return ImageOutcome(reference=item, error=e.message)
            except (OSError, ValueError) as e:
                return ImageOutcome(reference=item, error=str(e))

        outcomes: dict[str, ImageOutcome] = {}
        if not items:
            return outcomes
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.workers, len(items)),
            thread_name_prefix="image",
        ) as pool:
            futures = {pool.submit(_guarded, item): item for item in items}
            for future in concurrent.futures.as_completed(futures):
                outcome = future.result()
                outcomes[futures[future]] = outcome
                if on_done:
                    on_done(outcome)
        return outcomes

    # ── Phase 1: resolve ────────────────────────────────────────

    def _resolve(self, reference: str) -> ImageOutcome:
        parsed = parse_image_reference(reference)
        if parsed.pinned:
            return ImageOutcome(reference=reference, digest=parsed.digest)
        digest = self.client.resolve_digest(parsed.name, timeout=self.timeout)
        return ImageOutcome(reference=reference, digest=digest)

    # ── Phase 2: fetch ──────────────────────────────────────────

    def _fetch(self, blob: ImageBlob, blob_dir: Path) -> ImageOutcome:
        target = blob_dir / blob.filename
        partial = target.with_name(target.name + ".partial")
        reference = blob.references[0]
        try:
            if self.metrics:
                with self.metrics.timer(m.IMAGE_FETCH_MS):
                    size = self.client.fetch_image(reference, blob.digest, partial, timeout=self.timeout)
            else:
                size = self.client.fetch_image(reference, blob.digest, partial, timeout=self.timeout)
            os.replace(partial, target)
        finally:
            if partial.exists():
                partial.unlink()
        return ImageOutcome(reference=reference, digest=blob.digest, size=size)

    # ── Entry point ─────────────────────────────────────────────

    def package(
        self,
        document: ComposeDocument,
        blob_dir: Path,
        *,
        service_modules: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ImagePackage:
        """Resolve, deduplicate and retrieve every image in *document*.

        Args:
            document: Merged document (not modified; see ``ImagePackage.apply``).
            blob_dir: Exclusive per-build directory for image blobs.
            service_modules: Merged service name → owning module name.
            cancel: Set to stop starting new tasks.
            on_progress: Called with (retrieved, total) after every fetch.

        Raises:
            ImageRetrievalFailed: A non-optional image failed to resolve or fetch.
            BuildCancelled: *cancel* was set during packaging.
        """
        service_modules = service_modules or {}
        blob_dir.mkdir(parents=True, exist_ok=True)
        refs = self.collect(document)
        result = ImagePackage()
        failures: dict[str, str] = {}

        resolved = self._fan_out(list(refs), self._resolve, cancel)
        self._check_cancel(cancel)

        for ref, info in refs.items():
            outcome = resolved[ref]
            if not outcome.ok:
                self._record_failure(result, failures, ref, outcome.error, info.optional)
                continue
            pinned = parse_image_reference(ref).with_digest(outcome.digest)
            result.pinned[ref] = pinned
            blob = result.blobs.setdefault(outcome.digest, ImageBlob(digest=outcome.digest))
            if pinned not in blob.references:
                blob.references.append(pinned)
            blob.services.extend(info.services)
            blob.optional = blob.optional and info.optional
            for svc in info.services:
                module = service_modules.get(svc)
                if module and module not in blob.modules:
                    blob.modules.append(module)

        total = len(result.blobs)
        fetched = 0
        lock = threading.Lock()

        def _on_fetched(outcome: ImageOutcome) -> None:
            nonlocal fetched
            with lock:
                fetched += 1
                done = fetched
            if on_progress:
                on_progress(done, total)

        fetch_outcomes = self._fan_out(
            list(result.blobs),
            lambda digest: self._fetch(result.blobs[digest], blob_dir),
            cancel,
            _on_fetched,
        )
        self._check_cancel(cancel)

        for digest, blob in result.blobs.items():
            outcome = fetch_outcomes[digest]
            if outcome.ok:
                blob.path = blob_dir / blob.filename
                blob.size = outcome.size
                if self.metrics:
                    self.metrics.inc(m.IMAGES_FETCHED)
            else:
                for ref in blob.references:
                    self._record_failure(result, failures, ref, outcome.error, blob.optional)

        if failures:
            raise ImageRetrievalFailed(failures)

        logger.info(
            "Packaged %d distinct image(s) for %d reference(s)%s",
            sum(1 for b in result.blobs.values() if b.retrieved),
            len(refs),
            f", {len(result.missing_optional)} optional missing" if result.missing_optional else "",
        )
        return result

    def _record_failure(
        self,
        result: ImagePackage,
        failures: dict[str, str],
        reference: str,
        error: str,
        optional: bool,
    ) -> None:
        if self.metrics:
            self.metrics.inc(m.IMAGE_FAILURES)
        if optional:
            logger.warning("Optional image %s unavailable: %s", reference, error)
            result.missing_optional.append(reference)
            result.warnings.append(f"optional image {reference} not packaged: {error}")
        else:
            logger.error("Image %s failed: %s", reference, error)
            failures[reference] = error

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise BuildCancelled("Build cancelled during image packaging")
