"""
Module model — a reusable, versioned compose definition.

A Module is a named unit owning an append-only list of ModuleVersions.
Each version carries the compose manifest text, default variables,
resource declarations and inter-module dependencies.  Once a version
is published those fields are frozen forever.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator

# Semantic version, optional leading "v" (v1.2.3, 1.2.3-rc.1+build.5)
_SEMVER_RE = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)

# Module names double as namespace seeds and archive directory names
_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def is_semver(version: str) -> bool:
    """Whether *version* follows semantic versioning (leading 'v' allowed)."""
    return bool(_SEMVER_RE.match(version))


class ModuleDependency(BaseModel):
    """A declared dependency on another module."""

    module: str
    version: str = ""        # informational constraint, not enforced
    optional: bool = False


class Module(BaseModel):
    """A named, reusable unit of composition."""

    id: str = Field(default_factory=_new_id)
    name: str
    author: str = ""
    description: str = ""
    repository: str = ""
    active: bool = True
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _NAME_RE.match(value):
            raise ValueError(
                f"invalid module name '{value}' "
                "(letters, digits, '.', '_' and '-' only)"
            )
        return value


class ModuleVersion(BaseModel):
    """One release of a module.

    Drafts may be edited; ``publish()`` freezes the manifest, variables,
    resources and dependencies.  The record store rejects later edits
    with a ConflictError.
    """

    FROZEN_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"compose", "variables", "resources", "dependencies", "resource_root"}
    )

    id: str = Field(default_factory=_new_id)
    module_id: str
    version: str
    compose: str
    variables: dict[str, Any] = Field(default_factory=dict)
    resources: list[str] = Field(default_factory=list)
    dependencies: list[ModuleDependency] = Field(default_factory=list)
    resource_root: str = ""   # directory declared resource paths are relative to
    published: bool = False
    published_at: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not is_semver(value):
            raise ValueError(
                f"version '{value}' must follow semantic versioning (e.g. 1.0.0)"
            )
        return value

    @property
    def can_modify(self) -> bool:
        return not self.published

    def publish(self) -> None:
        """Mark the version as published (one-way)."""
        self.published = True
        self.published_at = _now_iso()
        self.updated_at = self.published_at
