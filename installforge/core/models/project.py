"""
Project model — a user's composition of pinned module versions.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


class ProjectModule(BaseModel):
    """Pins one ModuleVersion into a Project at a given position.

    ``order`` is the merge/emit order.  ``override_vars`` win over the
    version's defaults key by key.  A disabled link is excluded from
    every pipeline stage.
    """

    id: str = Field(default_factory=_new_id)
    project_id: str
    module_id: str
    module_version_id: str
    order: int = 0
    enabled: bool = True
    override_vars: dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def is_configured(self) -> bool:
        return bool(self.override_vars)


class Project(BaseModel):
    """A named composition belonging to a user."""

    id: str = Field(default_factory=_new_id)
    name: str
    owner: str = ""
    description: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)
    env_vars: dict[str, str] = Field(default_factory=dict)
    active: bool = True
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    def required_env(self) -> list[str]:
        """Environment variable names the operator must fill in (empty values)."""
        return [k for k, v in self.env_vars.items() if v in ("", None)]
