"""
Installer assembler — merged manifest + image blobs + resources → archive.

Archive layout::

    compose/docker-compose.yaml
    images/<digest>.tar                one per distinct digest
    resources/<module>/<version>/...
    env/.env.example
    bin/install.sh                     mode 0755
    bin/verify.sh                      mode 0755
    manifest.json

Checksums are always computed here, never by the script renderer.
The archive is written to a temp file in the destination directory and
renamed into place, so a failed build never leaves a partial archive
under the published name.  Entries are sorted with owner and mtime
normalized, so identical inputs give a byte-identical archive.
"""

from __future__ import annotations

import gzip
import hashlib
import io
import logging
import os
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from installforge.core.errors import ArchiveWriteError
from installforge.core.models.installer import (
    FileEntry,
    ImageEntry,
    InstallerManifest,
    ModuleEntry,
)
from installforge.core.services.image_packager import ImagePackage
from installforge.core.services.merger import ModuleInventory
from installforge.core.services.scripts import (
    PAYLOAD_DIRS,
    DefaultScriptRenderer,
    ScriptContext,
    ScriptRenderer,
)
from installforge.core.services.signing import ArchiveSigner

logger = logging.getLogger(__name__)

COMPOSE_PATH = "compose/docker-compose.yaml"
ENV_EXAMPLE_PATH = "env/.env.example"
MANIFEST_PATH = "manifest.json"
ARCHIVE_NAME = "installer.tar.gz"

_CHUNK = 1024 * 1024
_FILE_MODE = 0o644
_EXEC_MODE = 0o755
_DIR_MODE = 0o755


@dataclass
class ModuleResources:
    """Resource paths one module version declares, relative to ``root``."""

    module: str
    version: str
    root: Path
    paths: list[str] = field(default_factory=list)


@dataclass
class AssemblyInput:
    """Everything that goes into one archive."""

    build_id: str
    build_name: str
    created_at: str
    compose_yaml: str
    modules: list[ModuleInventory] = field(default_factory=list)
    resources: list[ModuleResources] = field(default_factory=list)
    images: ImagePackage | None = None
    env_vars: dict[str, str] = field(default_factory=dict)
    required_env: list[str] = field(default_factory=list)
    warnings: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AssemblyResult:
    archive_path: Path
    checksum_path: Path
    signature_path: Path | None
    archive_sha256: str
    size: int
    manifest: InstallerManifest


@dataclass
class _Entry:
    arcname: str
    data: bytes | None = None     # in-memory content
    source: Path | None = None    # or a file on disk
    mode: int = _FILE_MODE
    sha256: str = ""
    size: int = 0


# ── Hashing ─────────────────────────────────────────────────────


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_CHUNK):
            h.update(chunk)
    return h.hexdigest()


def contents_checksum(files: dict[str, str]) -> str:
    """sha256 over a ``sha256sum``-style listing of *files* (path → hex).

    Paths are sorted bytewise, matching ``LC_ALL=C sort``.
    """
    listing = "".join(
        f"{files[path]}  {path}\n"
        for path in sorted(files, key=lambda p: p.encode("utf-8"))
    )
    return hashlib.sha256(listing.encode("utf-8")).hexdigest()


def render_env_example(env_vars: dict[str, str], required: list[str]) -> str:
    lines = ["# Environment for docker compose; copy to .env and fill in the blanks"]
    for key in sorted(set(env_vars) | set(required)):
        lines.append(f"{key}={env_vars.get(key) or ''}")
    return "\n".join(lines) + "\n"


# ── Assembler ───────────────────────────────────────────────────


class InstallerAssembler:
    """Lays out, checksums, signs and atomically publishes one archive.

    Args:
        renderer: Script renderer; the default POSIX-sh renderer if None.
        signer: Optional signer producing ``installer.tar.gz.sig``.
    """

    def __init__(
        self,
        renderer: ScriptRenderer | None = None,
        signer: ArchiveSigner | None = None,
    ):
        self.renderer = renderer or DefaultScriptRenderer()
        self.signer = signer

    # ── Layout ──────────────────────────────────────────────────

    def _payload(self, job: AssemblyInput) -> list[_Entry]:
        entries = [
            _Entry(COMPOSE_PATH, data=job.compose_yaml.encode("utf-8")),
            _Entry(ENV_EXAMPLE_PATH, data=render_env_example(job.env_vars, job.required_env).encode()),
        ]

        if job.images:
            for blob in job.images.blobs.values():
                if blob.retrieved:
                    entries.append(_Entry(f"images/{blob.filename}", source=blob.path))

        seen = {e.arcname for e in entries}
        for res in job.resources:
            for entry in self._resource_entries(res):
                if entry.arcname not in seen:
                    seen.add(entry.arcname)
                    entries.append(entry)
        return entries

    @staticmethod
    def _resource_entries(res: ModuleResources) -> list[_Entry]:
        root = res.root.resolve()
        prefix = f"resources/{res.module}/{res.version}"
        entries: list[_Entry] = []
        for rel in res.paths:
            source = (root / rel).resolve()
            if source != root and root not in source.parents:
                raise ArchiveWriteError(
                    f"Resource '{rel}' of module '{res.module}' escapes its resource root",
                    path=str(source),
                )
            if source.is_file():
                entries.append(_Entry(f"{prefix}/{source.relative_to(root).as_posix()}", source=source))
            elif source.is_dir():
                for path in sorted(p for p in source.rglob("*") if p.is_file()):
                    entries.append(_Entry(f"{prefix}/{path.relative_to(root).as_posix()}", source=path))
            else:
                raise ArchiveWriteError(
                    f"Resource '{rel}' of module '{res.module}' does not exist",
                    path=str(source),
                )
        return entries

    @staticmethod
    def _checksum(entry: _Entry) -> None:
        try:
            if entry.data is not None:
                entry.sha256 = hashlib.sha256(entry.data).hexdigest()
                entry.size = len(entry.data)
            else:
                entry.sha256 = sha256_file(entry.source)
                entry.size = entry.source.stat().st_size
        except OSError as e:
            raise ArchiveWriteError(
                f"Cannot read {entry.source}: {e.strerror or e}", path=str(entry.source),
            ) from e

    def _manifest(
        self,
        job: AssemblyInput,
        entries: list[_Entry],
        checksum: str,
    ) -> InstallerManifest:
        package = job.images
        modules = [
            ModuleEntry(
                name=mod.name,
                version=mod.version,
                namespace=mod.namespace,
                order=mod.order,
                digests=package.digests_for_module(mod.name) if package else [],
            )
            for mod in job.modules
        ]
        images: list[ImageEntry] = []
        if package:
            for digest in sorted(package.blobs):
                blob = package.blobs[digest]
                if not blob.retrieved:
                    continue
                images.append(ImageEntry(
                    digest=digest,
                    file=f"images/{blob.filename}",
                    references=sorted(blob.references),
                    modules=list(blob.modules),
                    optional=blob.optional,
                ))
        return InstallerManifest(
            build_id=job.build_id,
            build_name=job.build_name,
            created_at=job.created_at,
            compose_file=COMPOSE_PATH,
            modules=modules,
            images=images,
            missing_images=list(package.missing_optional) if package else [],
            required_env=list(job.required_env),
            files=[
                FileEntry(path=e.arcname, sha256=e.sha256, size=e.size)
                for e in sorted(entries, key=lambda e: e.arcname)
            ],
            contents_checksum=checksum,
            warnings=list(job.warnings),
        )

    # ── Writing ─────────────────────────────────────────────────

    @staticmethod
    def _tarinfo(name: str, *, size: int = 0, mode: int = _FILE_MODE, is_dir: bool = False) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name)
        info.size = size
        info.mode = mode
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        if is_dir:
            info.type = tarfile.DIRTYPE
        return info

    def _write_tar(self, fileobj: Any, entries: list[_Entry]) -> None:
        dirs = sorted({"bin", *PAYLOAD_DIRS} | {
            "/".join(e.arcname.split("/")[:i])
            for e in entries
            for i in range(1, e.arcname.count("/") + 1)
        })
        with gzip.GzipFile(filename="", mode="wb", fileobj=fileobj, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for d in dirs:
                    tar.addfile(self._tarinfo(d, mode=_DIR_MODE, is_dir=True))
                for entry in sorted(entries, key=lambda e: e.arcname):
                    info = self._tarinfo(entry.arcname, size=entry.size, mode=entry.mode)
                    if entry.data is not None:
                        tar.addfile(info, io.BytesIO(entry.data))
                        continue
                    try:
                        with open(entry.source, "rb") as src:
                            tar.addfile(info, src)
                    except OSError as e:
                        raise ArchiveWriteError(
                            f"Cannot add {entry.source}: {e.strerror or e}",
                            path=str(entry.source),
                        ) from e

    def _publish_sidecar(self, path: Path, content: str) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise ArchiveWriteError(f"Cannot write {path}: {e.strerror or e}", path=str(path)) from e

    def assemble(self, job: AssemblyInput, dest_dir: Path) -> AssemblyResult:
        """Build and publish ``<dest_dir>/installer.tar.gz``.

        Raises:
            ArchiveWriteError: Any I/O failure; names the offending path.
        """
        entries = self._payload(job)
        for entry in entries:
            self._checksum(entry)
        checksum = contents_checksum({e.arcname: e.sha256 for e in entries})

        scripts = self.renderer.render(ScriptContext(
            build_id=job.build_id,
            build_name=job.build_name,
            namespaces=[m.namespace for m in job.modules if m.namespace],
            required_env=list(job.required_env),
            contents_checksum=checksum,
            compose_file=COMPOSE_PATH,
            env_example=ENV_EXAMPLE_PATH,
        ))
        for name in sorted(scripts):
            script = _Entry(f"bin/{name}", data=scripts[name].encode("utf-8"), mode=_EXEC_MODE)
            self._checksum(script)
            entries.append(script)

        manifest = self._manifest(job, entries, checksum)
        manifest_entry = _Entry(MANIFEST_PATH, data=manifest.to_json().encode("utf-8"))
        self._checksum(manifest_entry)

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveWriteError(f"Cannot create {dest_dir}: {e.strerror or e}", path=str(dest_dir)) from e

        archive = dest_dir / ARCHIVE_NAME
        try:
            fd, tmp_name = tempfile.mkstemp(dir=dest_dir, prefix=".installer_", suffix=".tmp")
        except OSError as e:
            raise ArchiveWriteError(f"Cannot write to {dest_dir}: {e.strerror or e}", path=str(dest_dir)) from e

        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                self._write_tar(out, [*entries, manifest_entry])
                out.flush()
                os.fsync(out.fileno())
            archive_sha = sha256_file(tmp)
            os.replace(tmp, archive)
        except OSError as e:
            raise ArchiveWriteError(
                f"Cannot write archive {archive}: {e.strerror or e}", path=str(archive),
            ) from e
        finally:
            tmp.unlink(missing_ok=True)

        checksum_path = dest_dir / f"{ARCHIVE_NAME}.sha256"
        self._publish_sidecar(checksum_path, f"{archive_sha}  {ARCHIVE_NAME}\n")

        signature_path = None
        if self.signer is not None:
            signature_path = dest_dir / f"{ARCHIVE_NAME}.sig"
            self._publish_sidecar(signature_path, self.signer.sign_file(archive) + "\n")

        size = archive.stat().st_size
        logger.info(
            "Assembled %s (%d files, %d bytes, contents %s)",
            archive, len(manifest.files), size, checksum[:12],
        )
        return AssemblyResult(
            archive_path=archive,
            checksum_path=checksum_path,
            signature_path=signature_path,
            archive_sha256=archive_sha,
            size=size,
            manifest=manifest,
        )
