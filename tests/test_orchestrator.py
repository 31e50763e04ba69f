"""
Tests for the build orchestrator — end-to-end builds on the mock registry.
"""

from __future__ import annotations

import json
import tarfile
import time
from pathlib import Path

import pytest
import yaml

from installforge.adapters.mock import MockRegistryClient
from installforge.core.config.catalog_loader import load_catalog
from installforge.core.config.loader import ForgeSettings
from installforge.core.engine.orchestrator import BuildOrchestrator
from installforge.core.errors import ConfigurationError, InvalidState, NotFoundError, NotReady
from installforge.core.models.build import Build, BuildStatus
from installforge.core.observability import metrics as m
from installforge.core.persistence.record_store import InMemoryRecordStore, JsonFileRecordStore
from installforge.core.services import catalog

CLEAN = "services:\n  web:\n    image: nginx:1.25\n    ports: ['${PORT:-80}:80']\n"


def _wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


@pytest.fixture
def slow_orchestrator(store: InMemoryRecordStore, settings: ForgeSettings):
    """One build slot and a registry whose fetches take a while."""
    orch = BuildOrchestrator(
        store,
        MockRegistryClient(delay=0.4),
        settings.model_copy(update={"max_concurrent_builds": 1}),
    )
    yield orch
    orch.shutdown(wait=True, cancel_pending=True)


class TestProjectBuild:
    def test_completes(self, orchestrator: BuildOrchestrator, store, catalog_file: Path):
        project_id = load_catalog(catalog_file, store).projects["shop"]
        build_id = orchestrator.submit(project_id=project_id, owner="alice")
        status = orchestrator.wait(build_id, timeout=30)

        assert status["status"] == "completed", status
        assert status["progress"] == 100
        assert status["name"] == "shop"
        assert status["type"] == "project"

        archive = Path(orchestrator.result(build_id))
        assert archive.is_file()
        assert archive.with_name(archive.name + ".sha256").is_file()
        with tarfile.open(archive, "r:gz") as tar:
            names = tar.getnames()
            manifest = json.loads(tar.extractfile("manifest.json").read())
        assert "resources/web/1.0.0/conf/nginx.conf" in names
        assert [mod["namespace"] for mod in manifest["modules"]] == ["web", "db"]
        assert len(manifest["images"]) == 3
        assert manifest["required_env"] == ["DB_PASSWORD"]

    def test_merged_compose_pinned_and_layered(self, orchestrator, store, catalog_file: Path):
        project_id = load_catalog(catalog_file, store).projects["shop"]
        build_id = orchestrator.submit(project_id=project_id, variables={"TAG": "1.27"})
        orchestrator.wait(build_id, timeout=30)

        merged = yaml.safe_load(store.get_build(build_id).merged_compose)
        app = merged["services"]["web__app"]
        # pin override (9090) beats the version default (8080)
        assert app["ports"] == ["9090:80"]
        # submit variables beat everything
        assert app["image"] == "nginx@" + MockRegistryClient.digest_for("nginx:1.27")
        assert app["depends_on"] == ["web__cache"]
        assert merged["services"]["db__server"]["volumes"] == ["db__pgdata:/var/lib/postgresql/data"]
        assert set(merged["volumes"]) == {"db__pgdata"}

    def test_ledger_and_metrics(self, orchestrator, store, catalog_file: Path):
        project_id = load_catalog(catalog_file, store).projects["shop"]
        build_id = orchestrator.submit(project_id=project_id)
        orchestrator.wait(build_id, timeout=30)

        entries = orchestrator.ledger.read_all()
        assert [e.build_id for e in entries] == [build_id]
        assert entries[0].status == "completed"
        assert entries[0].modules == ["web@1.0.0", "db@2.0.0"]
        assert orchestrator.metrics.value(m.BUILDS_SUBMITTED) == 1
        assert orchestrator.metrics.value(m.BUILDS_COMPLETED) == 1
        assert orchestrator.metrics.value(m.BUILDS_BUILDING) == 0

    def test_work_dir_removed(self, orchestrator, store, catalog_file: Path, settings):
        project_id = load_catalog(catalog_file, store).projects["shop"]
        build_id = orchestrator.submit(project_id=project_id)
        orchestrator.wait(build_id, timeout=30)
        assert not (settings.work_path / build_id).exists()

    def test_missing_dependency_fails_lint(self, orchestrator, store, catalog_file: Path):
        project_id = load_catalog(catalog_file, store).projects["shop"]
        db_link = store.list_project_modules(project_id)[1]
        catalog.update_project_module(store, db_link.id, enabled=False)

        build_id = orchestrator.submit(project_id=project_id)
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "failed"
        assert status["error_stage"] == "lint"
        detail = store.get_build(build_id).error_detail
        assert detail["findings"][0]["rule"] == "missing-module-dependency"

    def test_unknown_project(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.submit(project_id="nope")


class TestDigestReuse:
    def test_shared_pin_packed_once_listed_under_both(self, orchestrator, registry, store):
        pinned = "services:\n  app:\n    image: nginx@sha256:ABC\n"
        project = catalog.create_project(store, "shared")
        for name in ("front", "back"):
            catalog.create_module(store, name)
            catalog.create_version(store, name, "1.0.0", pinned)
            catalog.publish_version(store, name, "1.0.0")
            catalog.add_project_module(store, project.id, name, "1.0.0")

        build_id = orchestrator.submit(project_id=project.id)
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "completed", status

        with tarfile.open(orchestrator.result(build_id), "r:gz") as tar:
            images = [n for n in tar.getnames() if n.startswith("images/")]
            manifest = json.loads(tar.extractfile("manifest.json").read())
        assert images == ["images/sha256:ABC.tar"]
        assert [mod["digests"] for mod in manifest["modules"]] == [["sha256:ABC"], ["sha256:ABC"]]
        assert registry.calls("resolve") == []
        assert registry.calls("fetch") == ["nginx@sha256:ABC"]

        merged = yaml.safe_load(store.get_build(build_id).merged_compose)
        assert merged["services"]["front__app"]["image"] == "nginx@sha256:ABC"
        assert merged["services"]["back__app"]["image"] == "nginx@sha256:ABC"


class TestManifestBuild:
    def test_completes_without_namespace(self, orchestrator, store):
        build_id = orchestrator.submit(manifest=CLEAN, variables={"PORT": 8080}, name="adhoc")
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "completed", status
        assert status["type"] == "direct"
        merged = yaml.safe_load(store.get_build(build_id).merged_compose)
        assert merged["services"]["web"]["ports"] == ["8080:80"]

    def test_variables_as_json_text(self, orchestrator):
        build_id = orchestrator.submit(manifest=CLEAN, variables='{"PORT": 81}')
        assert orchestrator.wait(build_id, timeout=30)["status"] == "completed"

    def test_lint_failure(self, orchestrator, registry, store):
        build_id = orchestrator.submit(manifest="services:\n  app:\n    build: .\n")
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "failed"
        assert status["error_stage"] == "lint"
        assert "no-build-directive" in status["error"]
        assert registry.call_log == []
        with pytest.raises(NotReady):
            orchestrator.result(build_id)
        assert orchestrator.metrics.value(m.BUILDS_FAILED, stage="lint") == 1

    def test_image_failure(self, orchestrator, registry, store):
        registry.set_resolve_failure("nginx:1.25")
        build_id = orchestrator.submit(manifest=CLEAN)
        status = orchestrator.wait(build_id, timeout=30)
        assert status["error_stage"] == "images"
        assert "nginx:1.25" in store.get_build(build_id).error_detail["failures"]

    def test_optional_image_warning(self, orchestrator, registry):
        registry.set_resolve_failure("extra:1")
        manifest = CLEAN + "  extra:\n    image: extra:1\n    x-offline-optional: true\n"
        build_id = orchestrator.submit(manifest=manifest)
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "completed"
        assert status["warnings"][0]["rule"] == "optional-image"

    def test_unresolved_variable_fails(self, orchestrator, registry, store):
        build_id = orchestrator.submit(manifest="services:\n  a:\n    image: x:${MISSING_VAR}\n")
        status = orchestrator.wait(build_id, timeout=30)
        assert status["error_stage"] == "lint"
        findings = store.get_build(build_id).error_detail["findings"]
        assert findings[0]["rule"] == "unresolved-variable"
        assert "MISSING_VAR" in findings[0]["message"]
        assert registry.call_log == []

    def test_invalid_manifest(self, orchestrator):
        build_id = orchestrator.submit(manifest="services: [")
        status = orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "failed"
        assert status["error_stage"] == "configuration"


class TestSubmitValidation:
    def test_needs_exactly_one_source(self, orchestrator):
        with pytest.raises(ConfigurationError):
            orchestrator.submit()
        with pytest.raises(ConfigurationError):
            orchestrator.submit(project_id="p", manifest=CLEAN)

    def test_bad_variables(self, orchestrator):
        with pytest.raises(ConfigurationError):
            orchestrator.submit(manifest=CLEAN, variables="[1, 2]")

    def test_unknown_build(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.status("missing")


class TestCancellation:
    def test_cancel_queued(self, slow_orchestrator: BuildOrchestrator):
        first = slow_orchestrator.submit(manifest=CLEAN)
        second = slow_orchestrator.submit(manifest=CLEAN)
        status = slow_orchestrator.cancel(second)
        assert status["status"] == "failed"
        assert status["error_stage"] == "cancelled"
        assert slow_orchestrator.wait(first, timeout=30)["status"] == "completed"
        assert slow_orchestrator.wait(second, timeout=5)["status"] == "failed"

    def test_cancel_building(self, slow_orchestrator: BuildOrchestrator, store):
        build_id = slow_orchestrator.submit(manifest=CLEAN)
        _wait_until(lambda: store.get_build(build_id).status == BuildStatus.BUILDING)
        slow_orchestrator.cancel(build_id)
        status = slow_orchestrator.wait(build_id, timeout=30)
        assert status["status"] == "failed"
        assert status["error_stage"] == "cancelled"

    def test_cancel_terminal(self, orchestrator):
        build_id = orchestrator.submit(manifest=CLEAN)
        orchestrator.wait(build_id, timeout=30)
        with pytest.raises(InvalidState):
            orchestrator.cancel(build_id)


class TestAdmission:
    def test_building_never_exceeds_ceiling(self, store, settings):
        orch = BuildOrchestrator(
            store,
            MockRegistryClient(delay=0.1),
            settings.model_copy(update={"max_concurrent_builds": 2}),
        )
        try:
            ids = [orch.submit(manifest=CLEAN) for _ in range(5)]
            peak = 0
            deadline = time.monotonic() + 30
            while time.monotonic() < deadline:
                builds = [store.get_build(i) for i in ids]
                peak = max(peak, sum(b.status == BuildStatus.BUILDING for b in builds))
                assert orch.admission.in_use <= 2
                if all(b.is_terminal for b in builds):
                    break
                time.sleep(0.005)
            assert peak <= 2
            assert all(orch.status(i)["status"] == "completed" for i in ids)
        finally:
            orch.shutdown(wait=True)

    def test_progress_is_monotonic(self, slow_orchestrator: BuildOrchestrator, store):
        build_id = slow_orchestrator.submit(manifest=CLEAN)
        seen = []
        while not store.get_build(build_id).is_terminal:
            seen.append(store.get_build(build_id).progress)
            time.sleep(0.01)
        seen.append(store.get_build(build_id).progress)
        assert seen == sorted(seen)
        assert seen[-1] == 100


class TestRestart:
    def test_interrupted_builds_failed_on_startup(self, settings: ForgeSettings):
        store = JsonFileRecordStore(settings.store_path)
        queued = store.create_build(Build(name="q", manifest=CLEAN))
        running = store.create_build(Build(name="r", manifest=CLEAN))
        store.transition_build(running.id, {BuildStatus.QUEUED}, BuildStatus.BUILDING)

        orch = BuildOrchestrator.from_settings(settings)
        try:
            for build_id in (queued.id, running.id):
                status = orch.status(build_id)
                assert status["status"] == "failed"
                assert status["error_stage"] == "interrupted"
            assert JsonFileRecordStore(settings.store_path).get_build(running.id).is_failed
            assert {e.build_id for e in orch.ledger.read_all()} == {queued.id, running.id}
        finally:
            orch.shutdown()

    def test_cancel_build_without_worker(self, orchestrator, store):
        orphan = store.create_build(Build(name="orphan", manifest=CLEAN))
        store.transition_build(orphan.id, {BuildStatus.QUEUED}, BuildStatus.BUILDING)
        status = orchestrator.cancel(orphan.id)
        assert status["status"] == "failed"
        assert status["error_stage"] == "cancelled"

    def test_worker_state_released(self, slow_orchestrator: BuildOrchestrator):
        first = slow_orchestrator.submit(manifest=CLEAN)
        second = slow_orchestrator.submit(manifest=CLEAN)
        slow_orchestrator.cancel(second)
        slow_orchestrator.wait(first, timeout=30)
        assert slow_orchestrator.pending_builds == []
