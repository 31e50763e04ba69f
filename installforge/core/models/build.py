"""
Build model — one execution of the installer pipeline.

Status lifecycle::

    queued → building → completed
    queued → building → failed
    queued → failed                (cancelled before a slot was free)

``completed`` and ``failed`` are absorbing.  Progress never decreases
while the build is running.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from installforge.core.errors import InvalidState


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class BuildStatus(StrEnum):
    """Build states."""

    QUEUED = "queued"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({BuildStatus.COMPLETED, BuildStatus.FAILED})

_TRANSITIONS: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.QUEUED: frozenset({BuildStatus.BUILDING, BuildStatus.FAILED}),
    BuildStatus.BUILDING: frozenset({BuildStatus.COMPLETED, BuildStatus.FAILED}),
    BuildStatus.COMPLETED: frozenset(),
    BuildStatus.FAILED: frozenset(),
}


def can_transition(current: BuildStatus, new: BuildStatus) -> bool:
    """Whether ``current → new`` is a legal build transition."""
    return new in _TRANSITIONS[current]


class Build(BaseModel):
    """A package build job."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    owner: str = ""
    project_id: str | None = None     # None → ad-hoc manifest build

    status: BuildStatus = BuildStatus.QUEUED
    progress: int = 0

    # Inputs of an ad-hoc build
    manifest: str = ""
    variables: dict[str, Any] = Field(default_factory=dict)

    # Results
    merged_compose: str = ""
    installer_manifest: str = ""
    download_location: str = ""
    warnings: list[dict[str, Any]] = Field(default_factory=list)

    # Failure detail
    error: str = ""
    error_stage: str = ""
    error_detail: dict[str, Any] = Field(default_factory=dict)

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    started_at: str | None = None
    completed_at: str | None = None
    deleted: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def is_complete(self) -> bool:
        return self.status == BuildStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == BuildStatus.FAILED

    @property
    def build_type(self) -> str:
        return "project" if self.project_id is not None else "direct"

    def transition(self, new: BuildStatus) -> None:
        """Move to *new*, raising InvalidState on an illegal transition."""
        if not can_transition(self.status, new):
            raise InvalidState(
                f"Build {self.id}: cannot move from '{self.status}' to '{new}'",
                entity=self.id,
            )
        now = _now_iso()
        self.status = new
        self.updated_at = now
        if new == BuildStatus.BUILDING:
            self.started_at = now
        elif new in TERMINAL_STATES:
            self.completed_at = now
            if new == BuildStatus.COMPLETED:
                self.progress = 100

    def status_view(self) -> dict[str, Any]:
        """The caller-facing status snapshot."""
        view: dict[str, Any] = {
            "build_id": self.id,
            "name": self.name,
            "type": self.build_type,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }
        if self.error:
            view["error"] = self.error
            view["error_stage"] = self.error_stage
        if self.warnings:
            view["warnings"] = self.warnings
        if self.download_location:
            view["download_location"] = self.download_location
        return view
