"""
Error taxonomy — every failure the pipeline can record on a Build.

Each error carries a ``stage`` identifier and a human-readable detail.
The orchestrator stores ``to_dict()`` on the Build instead of the raw
exception, so ``status()`` always shows which stage failed and which
entity (service, image, path) caused it.
"""

from __future__ import annotations

from typing import Any


class ForgeError(Exception):
    """Base class for all installforge errors."""

    stage = "pipeline"

    def __init__(self, message: str, *, entity: str = "", stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.entity = entity
        if stage is not None:
            self.stage = stage

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "error": self.__class__.__name__,
            "message": self.message,
            "entity": self.entity,
        }

    def __str__(self) -> str:
        return self.message


# ── Input / structure ───────────────────────────────────────────


class ConfigurationError(ForgeError):
    """Malformed variable maps, manifest text, settings or catalog files."""

    stage = "configuration"


class IncompatibleSchemaVersion(ForgeError):
    """Two modules declare conflicting top-level scalar fields."""

    stage = "merge"


class DuplicateNamespace(ForgeError):
    """Two module instances resolve to the same namespace."""

    stage = "merge"


# ── Pipeline stages ─────────────────────────────────────────────


class LintFailed(ForgeError):
    """The merged document has ERROR-severity lint findings."""

    stage = "lint"

    def __init__(self, report: Any):
        self.report = report
        super().__init__(report.error_summary())


class ImageRetrievalFailed(ForgeError):
    """One or more non-optional images could not be resolved or retrieved."""

    stage = "images"

    def __init__(self, failures: dict[str, str]):
        self.failures = dict(failures)
        detail = "; ".join(f"{ref}: {reason}" for ref, reason in sorted(self.failures.items()))
        super().__init__(f"{len(self.failures)} image(s) failed: {detail}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["failures"] = self.failures
        return data


class ArchiveWriteError(ForgeError):
    """An I/O failure while laying out or publishing the installer archive."""

    stage = "assemble"

    def __init__(self, message: str, *, path: str = ""):
        super().__init__(message, entity=path)
        self.path = path


class BuildCancelled(ForgeError):
    """The build owner cancelled the build."""

    stage = "cancelled"


class BuildInterrupted(ForgeError):
    """The process running the build went away before it finished."""

    stage = "interrupted"


# ── Caller / record errors ──────────────────────────────────────


class NotFoundError(ForgeError):
    """A referenced record does not exist."""

    stage = "request"


class ConflictError(ForgeError):
    """Mutation of a frozen record (published version, terminal build)."""

    stage = "request"


class InvalidState(ConflictError):
    """The Build is in the wrong status for the requested operation."""


class NotReady(ForgeError):
    """The Build has not completed yet."""

    stage = "request"
