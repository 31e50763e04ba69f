"""
Build orchestrator — state machine, admission control and progress.

    submit → queued ──(slot acquired)──→ building → completed
                  │                          └──→ failed
                  └──(cancelled)──→ failed

At most ``max_concurrent_builds`` builds are ``building`` at once; the
limit is an explicit slot resource (``AdmissionController``), and
excess builds wait ``queued``.  Each build runs on one worker thread;
its image fan-out uses the packager's own bounded pool.

Every failure is recorded on the Build as a structured error (stage,
message, entity); nothing is retried automatically.
"""

from __future__ import annotations

import concurrent.futures
import logging
import shutil
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from installforge.adapters.base import RegistryClient
from installforge.adapters.registry import create_registry_client
from installforge.core.config.loader import ForgeSettings
from installforge.core.engine.pipeline import BuildContext, BuildPipeline
from installforge.core.errors import (
    BuildCancelled,
    BuildInterrupted,
    ConfigurationError,
    ForgeError,
    InvalidState,
    NotFoundError,
    NotReady,
)
from installforge.core.models.build import Build, BuildStatus
from installforge.core.observability import metrics as m
from installforge.core.observability.metrics import MetricsRegistry
from installforge.core.persistence.audit import BuildLedger, BuildLedgerEntry
from installforge.core.persistence.record_store import (
    InMemoryRecordStore,
    JsonFileRecordStore,
    RecordStore,
)
from installforge.core.services.assembler import InstallerAssembler
from installforge.core.services.image_packager import ImagePackager
from installforge.core.services.linter import PolicyLinter
from installforge.core.services.scripts import ScriptRenderer
from installforge.core.services.signing import ArchiveSigner
from installforge.core.services.variables import coerce_variable_map

logger = logging.getLogger(__name__)

# How often a queued worker re-checks for cancellation while waiting for a slot
_SLOT_POLL_SECONDS = 0.1


class AdmissionController:
    """A fixed number of build slots."""

    def __init__(self, ceiling: int):
        if ceiling < 1:
            raise ConfigurationError("max_concurrent_builds must be at least 1")
        self.ceiling = ceiling
        self._slots = threading.BoundedSemaphore(ceiling)
        self._lock = threading.Lock()
        self._in_use = 0

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @contextmanager
    def slot(self, cancel: threading.Event) -> Iterator[bool]:
        """Hold one slot for the duration of the block.

        Yields False (without a slot) if *cancel* is set while waiting.
        """
        while not self._slots.acquire(timeout=_SLOT_POLL_SECONDS):
            if cancel.is_set():
                yield False
                return
        with self._lock:
            self._in_use += 1
        try:
            yield True
        finally:
            with self._lock:
                self._in_use -= 1
            self._slots.release()


class BuildOrchestrator:
    """Accepts builds and runs them through the pipeline.

    Args:
        store: Record store holding projects, modules and builds.
        registry_client: Client used for digest resolution and retrieval.
        settings: Paths and limits; defaults if None.
        renderer: Install/verify script renderer.
        signer: Optional archive signer.
        ledger: Optional build ledger appended at every terminal state.
        metrics: Metrics registry (a private one if None).
        linter: Policy linter (all registered rules if None).
    """

    def __init__(
        self,
        store: RecordStore,
        registry_client: RegistryClient,
        settings: ForgeSettings | None = None,
        *,
        renderer: ScriptRenderer | None = None,
        signer: ArchiveSigner | None = None,
        ledger: BuildLedger | None = None,
        metrics: MetricsRegistry | None = None,
        linter: PolicyLinter | None = None,
    ):
        self.store = store
        self.settings = settings or ForgeSettings()
        self.metrics = metrics or MetricsRegistry()
        self.ledger = ledger
        self.admission = AdmissionController(self.settings.max_concurrent_builds)
        self.pipeline = BuildPipeline(
            store,
            ImagePackager(
                registry_client,
                workers=self.settings.image_workers,
                timeout=self.settings.image_timeout,
                metrics=self.metrics,
            ),
            InstallerAssembler(renderer=renderer, signer=signer),
            linter,
        )
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_builds,
            thread_name_prefix="build",
        )
        self._lock = threading.Lock()
        self._futures: dict[str, concurrent.futures.Future[None]] = {}
        self._cancel: dict[str, threading.Event] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ForgeSettings,
        *,
        store: RecordStore | None = None,
        registry_client: RegistryClient | None = None,
        persistent: bool = True,
    ) -> BuildOrchestrator:
        """Wire an orchestrator from settings (store file, registry, key, ledger)."""
        if store is None:
            store = JsonFileRecordStore(settings.store_path) if persistent else InMemoryRecordStore()
        signer = None
        if settings.signing_key:
            signer = ArchiveSigner.from_file(Path(settings.signing_key), settings.signing_key_passphrase)
        orchestrator = cls(
            store,
            registry_client or create_registry_client(settings.registry),
            settings,
            signer=signer,
            ledger=BuildLedger(settings.ledger_path),
        )
        orchestrator.recover_interrupted()
        return orchestrator

    def recover_interrupted(self) -> list[str]:
        """Fail builds left queued/building by a process that is gone.

        Only builds this orchestrator is not running are touched.
        Returns the ids that were failed.
        """
        with self._lock:
            tracked = set(self._futures)
        recovered = []
        for build in self.store.list_builds():
            if build.is_terminal or build.id in tracked:
                continue
            err = BuildInterrupted("Build interrupted by a restart", entity=build.id)
            if self._fail_without_worker(build, err, {BuildStatus.QUEUED, BuildStatus.BUILDING}):
                recovered.append(build.id)
        if recovered:
            logger.warning("Marked %d interrupted build(s) as failed", len(recovered))
        return recovered

    # ── Public operations ───────────────────────────────────────

    def submit(
        self,
        *,
        project_id: str | None = None,
        manifest: str | None = None,
        variables: Any = None,
        name: str = "",
        owner: str = "",
    ) -> str:
        """Queue a build and return its id immediately.

        Exactly one of *project_id* / *manifest* must be given.

        Raises:
            ConfigurationError: Both/neither source given, or bad variables.
            NotFoundError: Unknown project.
        """
        if (project_id is None) == (manifest is None):
            raise ConfigurationError("Submit either a project_id or a manifest, not both")
        submit_vars = coerce_variable_map(variables, source="variables")
        if project_id is not None:
            project = self.store.get_project(project_id)
            name = name or project.name

        build = self.store.create_build(Build(
            name=name,
            owner=owner,
            project_id=project_id,
            manifest=manifest or "",
            variables=submit_vars,
        ))
        cancel = threading.Event()
        with self._lock:
            self._cancel[build.id] = cancel
            self._futures[build.id] = self._executor.submit(self._run, build.id, cancel)
        self.metrics.inc(m.BUILDS_SUBMITTED)
        logger.info("Build %s queued (%s)", build.id, build.build_type)
        return build.id

    def status(self, build_id: str) -> dict[str, Any]:
        return self.store.get_build(build_id).status_view()

    def get(self, build_id: str) -> Build:
        return self.store.get_build(build_id)

    def list_builds(self, *, owner: str | None = None) -> list[Build]:
        return self.store.list_builds(owner=owner)

    def cancel(self, build_id: str) -> dict[str, Any]:
        """Cancel a queued or building build.

        A queued build fails immediately; a building one fails at its
        next stage boundary (in-flight image tasks finish or time out).

        Raises:
            InvalidState: The build is already terminal.
        """
        build = self.store.get_build(build_id)
        if build.is_terminal:
            raise InvalidState(f"Build {build_id} is already {build.status}", entity=build_id)

        with self._lock:
            event = self._cancel.get(build_id)
            future = self._futures.get(build_id)
        if event is not None:
            event.set()
        if future is not None and future.cancel():
            # The worker never started, so it will not clean up after itself
            self._forget(build_id)

        if event is None and future is None:
            # No worker in this process: queued or building, fail it here
            err = BuildCancelled("Build cancelled", entity=build_id)
            self._fail_without_worker(build, err, {BuildStatus.QUEUED, BuildStatus.BUILDING})
        elif build.status == BuildStatus.QUEUED:
            err = BuildCancelled("Build cancelled before it started", entity=build_id)
            self._fail_without_worker(build, err, {BuildStatus.QUEUED})
        logger.info("Cancellation requested for build %s", build_id)
        return self.status(build_id)

    def result(self, build_id: str) -> str:
        """Archive location of a completed build.

        Raises:
            NotReady: The build is not completed (still running or failed).
        """
        build = self.store.get_build(build_id)
        if not build.is_complete:
            detail = f": {build.error}" if build.is_failed and build.error else ""
            raise NotReady(f"Build {build_id} is {build.status}{detail}", entity=build_id)
        return build.download_location

    def wait(self, build_id: str, timeout: float | None = None) -> dict[str, Any]:
        """Block until the build's worker has finished; return its status."""
        with self._lock:
            future = self._futures.get(build_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except concurrent.futures.CancelledError:
                pass
        return self.status(build_id)

    def shutdown(self, wait: bool = True, *, cancel_pending: bool = False) -> None:
        if cancel_pending:
            with self._lock:
                pending = [bid for bid, f in self._futures.items() if not f.done()]
            for build_id in pending:
                try:
                    self.cancel(build_id)
                except (InvalidState, NotFoundError):
                    continue
        self._executor.shutdown(wait=wait)

    # ── Worker ──────────────────────────────────────────────────

    def _report_progress(self, build_id: str, progress: int) -> None:
        self.store.update_build(build_id, progress=progress)

    def _forget(self, build_id: str) -> None:
        with self._lock:
            self._cancel.pop(build_id, None)
            self._futures.pop(build_id, None)

    @property
    def pending_builds(self) -> list[str]:
        """Ids of builds with a live or waiting worker in this process."""
        with self._lock:
            return list(self._futures)

    def _fail_without_worker(
        self, build: Build, err: ForgeError, expected: set[BuildStatus],
    ) -> Build | None:
        """Fail *build* directly; None if it already left *expected*."""
        try:
            failed = self.store.transition_build(
                build.id, expected, BuildStatus.FAILED,
                error=err.message,
                error_stage=err.stage,
                error_detail=err.to_dict(),
            )
        except InvalidState:
            # Picked up by a worker in the meantime; its cancel event stops it
            logger.debug("Build %s left %s before it could be failed", build.id, build.status)
            return None
        self._finish(failed, duration_ms=0)
        return failed

    def _run(self, build_id: str, cancel: threading.Event) -> None:
        try:
            with self.admission.slot(cancel) as acquired:
                if not acquired:
                    return
                try:
                    build = self.store.transition_build(build_id, {BuildStatus.QUEUED}, BuildStatus.BUILDING)
                except InvalidState:
                    logger.info("Build %s no longer queued, skipping", build_id)
                    return
                self.metrics.add(m.BUILDS_BUILDING, 1)
                start = time.monotonic()
                try:
                    self._execute(build, cancel, start)
                finally:
                    self.metrics.add(m.BUILDS_BUILDING, -1)
        finally:
            self._forget(build_id)

    def _execute(self, build: Build, cancel: threading.Event, start: float) -> None:
        ctx = BuildContext(
            build=build,
            work_dir=self.settings.work_path / build.id,
            output_dir=self.settings.output_path / build.id,
            cancel=cancel,
        )
        logger.info("Build %s started", build.id)
        try:
            self.pipeline.run(ctx, lambda p: self._report_progress(build.id, p))
        except ForgeError as e:
            self._fail(ctx, e.to_dict(), start)
        except Exception as e:
            logger.exception("Build %s crashed during %s", build.id, ctx.stage)
            self._fail(ctx, {
                "stage": ctx.stage,
                "error": type(e).__name__,
                "message": f"Unexpected error during {ctx.stage}: {e}",
                "entity": "",
            }, start)
        else:
            self._complete(ctx, start)
        finally:
            shutil.rmtree(ctx.work_dir, ignore_errors=True)

    def _complete(self, ctx: BuildContext, start: float) -> None:
        done = self.store.transition_build(
            ctx.build.id, {BuildStatus.BUILDING}, BuildStatus.COMPLETED,
            merged_compose=ctx.merge.to_yaml(),
            installer_manifest=ctx.assembly.manifest.to_json(),
            download_location=str(ctx.assembly.archive_path),
            warnings=ctx.warnings(),
            progress=100,
        )
        self.metrics.inc(m.BUILDS_COMPLETED)
        duration_ms = int((time.monotonic() - start) * 1000)
        self.metrics.observe(m.BUILD_DURATION_MS, duration_ms)
        logger.info("Build %s completed in %d ms → %s", done.id, duration_ms, done.download_location)
        self._finish(done, duration_ms=duration_ms, ctx=ctx)

    def _fail(self, ctx: BuildContext, detail: dict[str, Any], start: float) -> None:
        fields: dict[str, Any] = {
            "error": detail["message"],
            "error_stage": detail["stage"],
            "error_detail": detail,
            "warnings": ctx.warnings(),
        }
        if ctx.merge is not None:
            fields["merged_compose"] = ctx.merge.to_yaml()
        if ctx.report is not None and ctx.report.has_errors:
            fields["error_detail"] = {**detail, "findings": [f.to_dict() for f in ctx.report.errors]}
        failed = self.store.transition_build(
            ctx.build.id, {BuildStatus.BUILDING}, BuildStatus.FAILED, **fields,
        )
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning("Build %s failed at %s: %s", failed.id, detail["stage"], detail["message"])
        self._finish(failed, duration_ms=duration_ms, ctx=ctx)

    def _finish(self, build: Build, *, duration_ms: int, ctx: BuildContext | None = None) -> None:
        if build.is_failed:
            self.metrics.inc(m.BUILDS_FAILED, stage=build.error_stage or "unknown")
        if self.ledger is None:
            return
        assembly = ctx.assembly if ctx else None
        self.ledger.write(BuildLedgerEntry(
            build_id=build.id,
            name=build.name,
            owner=build.owner,
            build_type=build.build_type,
            project_id=build.project_id,
            status=build.status.value,
            duration_ms=duration_ms,
            modules=[f"{i.name}@{i.version}" if i.version else i.name for i in (ctx.instances if ctx else [])],
            images=len(assembly.manifest.images) if assembly else 0,
            archive=str(assembly.archive_path) if assembly else "",
            archive_sha256=assembly.archive_sha256 if assembly else "",
            error_stage=build.error_stage,
            error=build.error,
            warnings=len(build.warnings),
        ))
