"""
Tests for the installer assembler, script rendering and archive signing.
"""

import hashlib
import json
import tarfile
from pathlib import Path

import pytest

from installforge.adapters.mock import MockRegistryClient
from installforge.core.errors import ArchiveWriteError, ConfigurationError
from installforge.core.models.compose import ComposeDocument
from installforge.core.services.assembler import (
    ARCHIVE_NAME,
    COMPOSE_PATH,
    MANIFEST_PATH,
    AssemblyInput,
    InstallerAssembler,
    ModuleResources,
    contents_checksum,
    render_env_example,
)
from installforge.core.services.image_packager import ImagePackager
from installforge.core.services.merger import ModuleInventory
from installforge.core.services.scripts import DefaultScriptRenderer, ScriptContext
from installforge.core.services.signing import (
    ArchiveSigner,
    generate_private_key,
    load_private_key,
    load_public_key,
    private_key_pem,
    public_key_pem,
    verify_signature,
)

COMPOSE = "services:\n  web__app:\n    image: nginx:1.25\n"


@pytest.fixture()
def resource_root(tmp_path: Path) -> Path:
    root = tmp_path / "module-files"
    (root / "conf").mkdir(parents=True)
    (root / "conf" / "nginx.conf").write_text("server {}\n")
    (root / "conf" / "mime.types").write_text("types {}\n")
    (root / "README").write_text("web module\n")
    return root


@pytest.fixture()
def images(tmp_path: Path):
    doc = ComposeDocument.from_yaml(COMPOSE)
    return ImagePackager(MockRegistryClient()).package(
        doc, tmp_path / "blobs", service_modules={"web__app": "web"},
    )


def _job(resource_root: Path, images, **overrides) -> AssemblyInput:
    fields = dict(
        build_id="b-1",
        build_name="shop",
        created_at="2024-01-01T00:00:00+00:00",
        compose_yaml=COMPOSE,
        modules=[ModuleInventory(name="web", version="1.0.0", namespace="web", order=0)],
        resources=[ModuleResources("web", "1.0.0", resource_root, ["conf", "README"])],
        images=images,
        env_vars={"DOMAIN": "example.com", "API_KEY": ""},
        required_env=["API_KEY"],
    )
    fields.update(overrides)
    return AssemblyInput(**fields)


def _members(archive: Path) -> dict[str, tarfile.TarInfo]:
    with tarfile.open(archive, "r:gz") as tar:
        return {m.name: m for m in tar.getmembers()}


def _read(archive: Path, name: str) -> bytes:
    with tarfile.open(archive, "r:gz") as tar:
        return tar.extractfile(name).read()


class TestAssemble:
    def test_layout(self, tmp_path: Path, resource_root: Path, images):
        result = InstallerAssembler().assemble(_job(resource_root, images), tmp_path / "out")
        assert result.archive_path == tmp_path / "out" / ARCHIVE_NAME
        members = _members(result.archive_path)
        blob = next(iter(images.blobs.values()))
        for name in (
            COMPOSE_PATH,
            "env/.env.example",
            MANIFEST_PATH,
            "bin/install.sh",
            "bin/verify.sh",
            f"images/{blob.filename}",
            "resources/web/1.0.0/conf/nginx.conf",
            "resources/web/1.0.0/conf/mime.types",
            "resources/web/1.0.0/README",
        ):
            assert name in members, name
        assert members["bin/install.sh"].mode == 0o755
        assert members["images"].isdir()
        assert all(m.mtime == 0 and m.uid == 0 for m in members.values())

    def test_manifest_contents(self, tmp_path: Path, resource_root: Path, images):
        result = InstallerAssembler().assemble(_job(resource_root, images), tmp_path)
        manifest = json.loads(_read(result.archive_path, MANIFEST_PATH))
        assert manifest["build_id"] == "b-1"
        assert manifest["required_env"] == ["API_KEY"]
        assert manifest["modules"][0]["digests"] == list(images.blobs)
        assert manifest["images"][0]["modules"] == ["web"]
        listed = {f["path"]: f["sha256"] for f in manifest["files"]}
        compose = _read(result.archive_path, COMPOSE_PATH)
        assert listed[COMPOSE_PATH] == hashlib.sha256(compose).hexdigest()
        assert result.manifest.file_checksums() == listed

    def test_contents_checksum_matches_payload(self, tmp_path: Path, resource_root: Path, images):
        result = InstallerAssembler().assemble(_job(resource_root, images), tmp_path)
        payload: dict[str, str] = {}
        with tarfile.open(result.archive_path, "r:gz") as tar:
            for member in tar.getmembers():
                if member.isfile() and member.name.split("/")[0] in ("compose", "env", "images", "resources"):
                    payload[member.name] = hashlib.sha256(tar.extractfile(member).read()).hexdigest()
        assert contents_checksum(payload) == result.manifest.contents_checksum
        verify = _read(result.archive_path, "bin/verify.sh").decode()
        assert result.manifest.contents_checksum in verify

    def test_checksum_sidecar(self, tmp_path: Path, resource_root: Path, images):
        result = InstallerAssembler().assemble(_job(resource_root, images), tmp_path)
        digest = hashlib.sha256(result.archive_path.read_bytes()).hexdigest()
        assert result.archive_sha256 == digest
        assert result.checksum_path.read_text() == f"{digest}  {ARCHIVE_NAME}\n"
        assert result.signature_path is None

    def test_deterministic(self, tmp_path: Path, resource_root: Path, images):
        a = InstallerAssembler().assemble(_job(resource_root, images), tmp_path / "a")
        b = InstallerAssembler().assemble(_job(resource_root, images), tmp_path / "b")
        assert a.archive_path.read_bytes() == b.archive_path.read_bytes()

    def test_no_temp_files_left(self, tmp_path: Path, resource_root: Path, images):
        out = tmp_path / "out"
        InstallerAssembler().assemble(_job(resource_root, images), out)
        assert sorted(p.name for p in out.iterdir()) == [ARCHIVE_NAME, f"{ARCHIVE_NAME}.sha256"]

    def test_missing_resource(self, tmp_path: Path, resource_root: Path, images):
        job = _job(resource_root, images, resources=[
            ModuleResources("web", "1.0.0", resource_root, ["nope.txt"]),
        ])
        with pytest.raises(ArchiveWriteError) as exc:
            InstallerAssembler().assemble(job, tmp_path / "out")
        assert "nope.txt" in exc.value.path
        assert not (tmp_path / "out" / ARCHIVE_NAME).exists()

    def test_escaping_resource(self, tmp_path: Path, resource_root: Path, images):
        (tmp_path / "secret").write_text("x")
        job = _job(resource_root, images, resources=[
            ModuleResources("web", "1.0.0", resource_root, ["../secret"]),
        ])
        with pytest.raises(ArchiveWriteError):
            InstallerAssembler().assemble(job, tmp_path / "out")

    def test_without_images(self, tmp_path: Path, resource_root: Path):
        result = InstallerAssembler().assemble(_job(resource_root, None, resources=[]), tmp_path)
        assert result.manifest.images == []
        assert "images" in _members(result.archive_path)


class TestScripts:
    def test_install_script(self):
        scripts = DefaultScriptRenderer().render(ScriptContext(
            build_id="b-9",
            build_name="shop",
            namespaces=["web", "db"],
            required_env=["API_KEY", "DB_PASSWORD"],
            contents_checksum="abc",
        ))
        install = scripts["install.sh"]
        assert install.startswith("#!/bin/sh")
        assert "docker load -i" in install
        assert "docker compose -f compose/docker-compose.yaml" in install
        assert "for var in API_KEY DB_PASSWORD; do" in install
        assert 'EXPECTED="abc"' in scripts["verify.sh"]

    def test_env_example(self):
        text = render_env_example({"B": "2", "A": ""}, ["C"])
        assert text.splitlines()[1:] == ["A=", "B=2", "C="]


class TestSigning:
    def test_signed_archive_verifies(self, tmp_path: Path, resource_root: Path, images):
        key = generate_private_key()
        result = InstallerAssembler(signer=ArchiveSigner(key)).assemble(
            _job(resource_root, images), tmp_path,
        )
        assert result.signature_path is not None
        signature = result.signature_path.read_text()
        assert verify_signature(result.archive_path, signature, key.public_key())

    def test_tampered_archive_fails(self, tmp_path: Path):
        key = generate_private_key()
        target = tmp_path / "file.bin"
        target.write_bytes(b"original")
        signature = ArchiveSigner(key).sign_file(target)
        target.write_bytes(b"tampered")
        assert not verify_signature(target, signature, key.public_key())
        assert not verify_signature(target, "not base64!!", key.public_key())

    def test_key_files(self, tmp_path: Path):
        key = generate_private_key()
        priv = tmp_path / "signing.pem"
        pub = tmp_path / "signing.pub"
        priv.write_bytes(private_key_pem(key, passphrase="hunter2"))
        pub.write_bytes(public_key_pem(key))

        signer = ArchiveSigner.from_file(priv, "hunter2")
        target = tmp_path / "data"
        target.write_bytes(b"payload")
        assert verify_signature(target, signer.sign_file(target), load_public_key(pub))

        with pytest.raises(ConfigurationError):
            load_private_key(priv, "wrong")
        with pytest.raises(ConfigurationError):
            load_private_key(tmp_path / "missing.pem")
