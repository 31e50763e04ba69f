"""
Installer manifest — the ``manifest.json`` inventory inside every archive.

The schema is stable: consumers check ``schema_version`` before reading.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

INSTALLER_SCHEMA_VERSION = 1


class ModuleEntry(BaseModel):
    """One module instance included in the build."""

    name: str
    version: str
    namespace: str
    order: int = 0
    digests: list[str] = Field(default_factory=list)


class ImageEntry(BaseModel):
    """One distinct image digest shipped in ``images/``."""

    digest: str
    file: str                                           # archive path
    references: list[str] = Field(default_factory=list)  # pinned refs using it
    modules: list[str] = Field(default_factory=list)
    optional: bool = False


class FileEntry(BaseModel):
    """Checksum of one payload file."""

    path: str
    sha256: str
    size: int = 0


class InstallerManifest(BaseModel):
    """Contents of ``manifest.json``."""

    schema_version: int = INSTALLER_SCHEMA_VERSION
    build_id: str
    build_name: str = ""
    created_at: str
    compose_file: str = "compose/docker-compose.yaml"
    modules: list[ModuleEntry] = Field(default_factory=list)
    images: list[ImageEntry] = Field(default_factory=list)
    missing_images: list[str] = Field(default_factory=list)
    required_env: list[str] = Field(default_factory=list)
    files: list[FileEntry] = Field(default_factory=list)
    contents_checksum: str = ""
    warnings: list[dict[str, Any]] = Field(default_factory=list)

    def file_checksums(self) -> dict[str, str]:
        return {f.path: f.sha256 for f in self.files}

    def to_json(self) -> str:
        return self.model_dump_json(indent=2) + "\n"
