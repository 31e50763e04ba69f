"""
Tests for image reference parsing and the image packager.
"""

import threading
from pathlib import Path

import pytest

from installforge.adapters.mock import MockRegistryClient
from installforge.core.errors import BuildCancelled, ImageRetrievalFailed
from installforge.core.models.compose import ComposeDocument
from installforge.core.observability import metrics as m
from installforge.core.observability.metrics import MetricsRegistry
from installforge.core.services.image_packager import ImagePackager
from installforge.core.services.image_refs import (
    digest_filename,
    is_digest,
    parse_image_reference,
)

DIGEST = "sha256:" + "ab" * 32


class TestImageReference:
    @pytest.mark.parametrize("ref,repo,tag,digest", [
        ("nginx", "nginx", "", ""),
        ("nginx:1.25", "nginx", "1.25", ""),
        ("registry.local:5000/team/app:2.0", "registry.local:5000/team/app", "2.0", ""),
        ("registry.local:5000/team/app", "registry.local:5000/team/app", "", ""),
        (f"nginx:1.25@{DIGEST}", "nginx", "1.25", DIGEST),
    ])
    def test_parse(self, ref, repo, tag, digest):
        parsed = parse_image_reference(ref)
        assert (parsed.repository, parsed.tag, parsed.digest) == (repo, tag, digest)
        assert str(parsed) == ref

    def test_with_digest_drops_tag(self):
        assert parse_image_reference("nginx:1.25").with_digest(DIGEST) == f"nginx@{DIGEST}"

    def test_bad_references(self):
        with pytest.raises(ValueError):
            parse_image_reference("  ")
        with pytest.raises(ValueError):
            parse_image_reference("nginx@sha256:")
        with pytest.raises(ValueError):
            parse_image_reference("nginx@sha256:ab/cd")

    def test_short_digest_pin_kept(self):
        parsed = parse_image_reference("nginx@sha256:ABC")
        assert (parsed.repository, parsed.digest) == ("nginx", "sha256:ABC")

    def test_digest_helpers(self):
        assert is_digest(DIGEST)
        assert is_digest("sha256:ABC")
        assert not is_digest("latest")
        assert digest_filename(DIGEST) == DIGEST + ".tar"
        assert digest_filename("sha256:ABC") == "sha256:ABC.tar"
        with pytest.raises(ValueError):
            digest_filename("nope")


def _doc(text: str) -> ComposeDocument:
    return ComposeDocument.from_yaml(text)


class TestImagePackager:
    def test_resolves_and_fetches(self, tmp_path: Path):
        client = MockRegistryClient()
        doc = _doc("services:\n  a:\n    image: nginx:1.25\n  b:\n    image: redis:7\n")
        package = ImagePackager(client, workers=2).package(
            doc, tmp_path, service_modules={"a": "web", "b": "cache"},
        )
        assert len(package.blobs) == 2
        for blob in package.blobs.values():
            assert blob.retrieved
            assert blob.path.is_file()
            assert blob.size == blob.path.stat().st_size
        assert package.pinned["nginx:1.25"] == f"nginx@{client.digest_for('nginx:1.25')}"
        assert package.digests_for_module("web") == [client.digest_for("nginx:1.25")]
        assert not list(tmp_path.glob("*.partial"))

    def test_shared_digest_fetched_once(self, tmp_path: Path):
        client = MockRegistryClient()
        client.set_digest("app:1.0", DIGEST)
        client.set_digest("app:latest", DIGEST)
        doc = _doc(
            "services:\n  a:\n    image: app:1.0\n  b:\n    image: app:latest\n  c:\n    image: app:1.0\n"
        )
        package = ImagePackager(client).package(doc, tmp_path)
        assert list(package.blobs) == [DIGEST]
        blob = package.blobs[DIGEST]
        assert sorted(blob.services) == ["a", "b", "c"]
        assert blob.references == [f"app@{DIGEST}"]
        assert len(client.calls("fetch")) == 1
        assert sorted(client.calls("resolve")) == ["app:1.0", "app:latest"]

    def test_pinned_reference_not_resolved(self, tmp_path: Path):
        client = MockRegistryClient()
        doc = _doc(f"services:\n  a:\n    image: nginx@{DIGEST}\n")
        package = ImagePackager(client).package(doc, tmp_path)
        assert client.calls("resolve") == []
        assert list(package.blobs) == [DIGEST]

    def test_apply_pins_document(self, tmp_path: Path):
        client = MockRegistryClient()
        doc = _doc("services:\n  a:\n    image: nginx:1.25\n")
        package = ImagePackager(client).package(doc, tmp_path)
        assert doc.services["a"].image == "nginx:1.25"
        package.apply(doc)
        assert doc.services["a"].image == f"nginx@{client.digest_for('nginx:1.25')}"

    def test_failures_aggregated(self, tmp_path: Path):
        client = MockRegistryClient()
        client.set_resolve_failure("bad:1")
        client.set_fetch_failure(client.digest_for("worse:1"))
        doc = _doc(
            "services:\n  a:\n    image: bad:1\n  b:\n    image: worse:1\n  c:\n    image: good:1\n"
        )
        metrics = MetricsRegistry()
        with pytest.raises(ImageRetrievalFailed) as exc:
            ImagePackager(client, metrics=metrics).package(doc, tmp_path)
        assert set(exc.value.failures) == {"bad:1", "worse:1"}
        assert exc.value.to_dict()["stage"] == "images"
        # good:1 was still attempted
        assert any(ref.startswith("good@") for ref in client.calls("fetch"))
        assert metrics.value(m.IMAGE_FAILURES) == 2

    def test_optional_image_becomes_warning(self, tmp_path: Path):
        client = MockRegistryClient()
        client.set_resolve_failure("extra:1")
        doc = _doc(
            "services:\n"
            "  a:\n    image: nginx:1\n"
            "  b:\n    image: extra:1\n    x-offline-optional: true\n"
        )
        package = ImagePackager(client).package(doc, tmp_path)
        assert package.missing_optional == ["extra:1"]
        assert len(package.warnings) == 1
        assert len(package.blobs) == 1

    def test_optional_only_if_every_user_optional(self, tmp_path: Path):
        client = MockRegistryClient()
        client.set_resolve_failure("extra:1")
        doc = _doc(
            "services:\n"
            "  a:\n    image: extra:1\n"
            "  b:\n    image: extra:1\n    x-offline-optional: true\n"
        )
        with pytest.raises(ImageRetrievalFailed):
            ImagePackager(client).package(doc, tmp_path)

    def test_progress_reported(self, tmp_path: Path):
        client = MockRegistryClient()
        doc = _doc("services:\n  a:\n    image: x:1\n  b:\n    image: y:1\n  c:\n    image: z:1\n")
        seen: list[tuple[int, int]] = []
        ImagePackager(client, workers=3).package(
            doc, tmp_path, on_progress=lambda done, total: seen.append((done, total)),
        )
        assert sorted(seen) == [(1, 3), (2, 3), (3, 3)]

    def test_cancelled(self, tmp_path: Path):
        cancel = threading.Event()
        cancel.set()
        client = MockRegistryClient()
        doc = _doc("services:\n  a:\n    image: x:1\n")
        with pytest.raises(BuildCancelled):
            ImagePackager(client).package(doc, tmp_path, cancel=cancel)
        assert client.calls("resolve") == []

    def test_metrics_recorded(self, tmp_path: Path):
        metrics = MetricsRegistry()
        doc = _doc("services:\n  a:\n    image: x:1\n")
        ImagePackager(MockRegistryClient(), metrics=metrics).package(doc, tmp_path)
        assert metrics.value(m.IMAGES_FETCHED) == 1
        assert metrics.histogram(m.IMAGE_FETCH_MS).count == 1

    def test_no_images(self, tmp_path: Path):
        package = ImagePackager(MockRegistryClient()).package(_doc("services: {}\n"), tmp_path)
        assert package.blobs == {}
