"""
Record store — CRUD for modules, versions, projects and builds.

The pipeline only talks to the ``RecordStore`` interface.  Two
implementations ship:

  InMemoryRecordStore   thread-safe, used by tests and the web server
  JsonFileRecordStore   same semantics, snapshotted to one JSON file
                        after every mutation (atomic write-then-rename)

Store-enforced rules:
  - a published ModuleVersion's frozen fields never change (ConflictError)
  - publishing is one-way and happens exactly once
  - only published versions can be pinned into a project
  - build status moves only through ``transition_build`` (compare-and-set)
  - a terminal build is append-only except for soft deletion
  - build progress never decreases
"""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from installforge.core.errors import ConfigurationError, ConflictError, InvalidState, NotFoundError
from installforge.core.models.build import Build, BuildStatus
from installforge.core.models.module import Module, ModuleVersion
from installforge.core.models.project import Project, ProjectModule

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RecordStore(ABC):
    """Persistence contract used by the catalog and the orchestrator."""

    # ── Modules ─────────────────────────────────────────────────

    @abstractmethod
    def create_module(self, module: Module) -> Module: ...

    @abstractmethod
    def get_module(self, module_id: str) -> Module: ...

    @abstractmethod
    def get_module_by_name(self, name: str) -> Module: ...

    @abstractmethod
    def list_modules(self, *, active_only: bool = False) -> list[Module]: ...

    @abstractmethod
    def update_module(self, module_id: str, **fields: Any) -> Module: ...

    @abstractmethod
    def delete_module(self, module_id: str) -> None: ...

    # ── Versions ────────────────────────────────────────────────

    @abstractmethod
    def create_version(self, version: ModuleVersion) -> ModuleVersion: ...

    @abstractmethod
    def get_version(self, version_id: str) -> ModuleVersion: ...

    @abstractmethod
    def find_version(self, module_id: str, version: str) -> ModuleVersion: ...

    @abstractmethod
    def list_versions(self, module_id: str) -> list[ModuleVersion]: ...

    @abstractmethod
    def update_version(self, version_id: str, **fields: Any) -> ModuleVersion: ...

    @abstractmethod
    def publish_version(self, version_id: str) -> ModuleVersion: ...

    # ── Projects ────────────────────────────────────────────────

    @abstractmethod
    def create_project(self, project: Project) -> Project: ...

    @abstractmethod
    def get_project(self, project_id: str) -> Project: ...

    @abstractmethod
    def list_projects(self, *, owner: str | None = None) -> list[Project]: ...

    @abstractmethod
    def update_project(self, project_id: str, **fields: Any) -> Project: ...

    @abstractmethod
    def add_project_module(self, link: ProjectModule) -> ProjectModule: ...

    @abstractmethod
    def get_project_module(self, link_id: str) -> ProjectModule: ...

    @abstractmethod
    def list_project_modules(
        self, project_id: str, *, enabled_only: bool = False,
    ) -> list[ProjectModule]: ...

    @abstractmethod
    def update_project_module(self, link_id: str, **fields: Any) -> ProjectModule: ...

    @abstractmethod
    def remove_project_module(self, link_id: str) -> None: ...

    # ── Builds ──────────────────────────────────────────────────

    @abstractmethod
    def create_build(self, build: Build) -> Build: ...

    @abstractmethod
    def get_build(self, build_id: str) -> Build: ...

    @abstractmethod
    def list_builds(
        self, *, owner: str | None = None, include_deleted: bool = False,
    ) -> list[Build]: ...

    @abstractmethod
    def update_build(self, build_id: str, **fields: Any) -> Build: ...

    @abstractmethod
    def transition_build(
        self,
        build_id: str,
        expected: Iterable[BuildStatus],
        new: BuildStatus,
        **fields: Any,
    ) -> Build: ...

    @abstractmethod
    def delete_build(self, build_id: str) -> None: ...


class InMemoryRecordStore(RecordStore):
    """Dict-backed store.  Every read returns a deep copy."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._modules: dict[str, Module] = {}
        self._versions: dict[str, ModuleVersion] = {}
        self._projects: dict[str, Project] = {}
        self._links: dict[str, ProjectModule] = {}
        self._builds: dict[str, Build] = {}

    def _commit(self) -> None:
        """Hook called (under the lock) after every successful mutation."""

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _get(table: dict[str, M], key: str, kind: str) -> M:
        try:
            return table[key]
        except KeyError:
            raise NotFoundError(f"{kind} '{key}' not found", entity=key) from None

    @staticmethod
    def _apply(record: M, fields: dict[str, Any], kind: str) -> M:
        """Validated copy of *record* with *fields* replaced."""
        unknown = set(fields) - set(type(record).model_fields)
        if unknown:
            raise ConfigurationError(
                f"{kind}: unknown field(s) {', '.join(sorted(unknown))}", entity=kind,
            )
        data = record.model_dump()
        data.update(fields)
        if "updated_at" in type(record).model_fields:
            data["updated_at"] = _now_iso()
        try:
            return type(record).model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"{kind}: {e.errors()[0]['msg']}", entity=kind) from e

    @staticmethod
    def _copy(record: M) -> M:
        return record.model_copy(deep=True)

    # ── Modules ─────────────────────────────────────────────────

    def create_module(self, module: Module) -> Module:
        with self._lock:
            if any(m.name == module.name for m in self._modules.values()):
                raise ConflictError(f"Module '{module.name}' already exists", entity=module.name)
            self._modules[module.id] = self._copy(module)
            self._commit()
            return self._copy(module)

    def get_module(self, module_id: str) -> Module:
        with self._lock:
            return self._copy(self._get(self._modules, module_id, "Module"))

    def get_module_by_name(self, name: str) -> Module:
        with self._lock:
            for module in self._modules.values():
                if module.name == name:
                    return self._copy(module)
        raise NotFoundError(f"Module '{name}' not found", entity=name)

    def list_modules(self, *, active_only: bool = False) -> list[Module]:
        with self._lock:
            modules = [self._copy(m) for m in self._modules.values() if m.active or not active_only]
        return sorted(modules, key=lambda m: m.name)

    def update_module(self, module_id: str, **fields: Any) -> Module:
        with self._lock:
            current = self._get(self._modules, module_id, "Module")
            if "name" in fields and fields["name"] != current.name:
                if any(m.name == fields["name"] for m in self._modules.values()):
                    raise ConflictError(f"Module '{fields['name']}' already exists", entity=fields["name"])
            updated = self._apply(current, fields, "Module")
            self._modules[module_id] = updated
            self._commit()
            return self._copy(updated)

    def delete_module(self, module_id: str) -> None:
        with self._lock:
            module = self._get(self._modules, module_id, "Module")
            if any(link.module_id == module_id for link in self._links.values()):
                raise ConflictError(
                    f"Module '{module.name}' is used by a project; deactivate it instead",
                    entity=module.name,
                )
            del self._modules[module_id]
            for vid in [v.id for v in self._versions.values() if v.module_id == module_id]:
                del self._versions[vid]
            self._commit()

    # ── Versions ────────────────────────────────────────────────

    def create_version(self, version: ModuleVersion) -> ModuleVersion:
        with self._lock:
            self._get(self._modules, version.module_id, "Module")
            if any(
                v.module_id == version.module_id and v.version == version.version
                for v in self._versions.values()
            ):
                raise ConflictError(f"Version {version.version} already exists", entity=version.version)
            self._versions[version.id] = self._copy(version)
            self._commit()
            return self._copy(version)

    def get_version(self, version_id: str) -> ModuleVersion:
        with self._lock:
            return self._copy(self._get(self._versions, version_id, "ModuleVersion"))

    def find_version(self, module_id: str, version: str) -> ModuleVersion:
        with self._lock:
            for v in self._versions.values():
                if v.module_id == module_id and v.version == version:
                    return self._copy(v)
        raise NotFoundError(f"Version {version} of module '{module_id}' not found", entity=version)

    def list_versions(self, module_id: str) -> list[ModuleVersion]:
        with self._lock:
            self._get(self._modules, module_id, "Module")
            versions = [self._copy(v) for v in self._versions.values() if v.module_id == module_id]
        return sorted(versions, key=lambda v: v.created_at)

    def update_version(self, version_id: str, **fields: Any) -> ModuleVersion:
        with self._lock:
            current = self._get(self._versions, version_id, "ModuleVersion")
            if current.published:
                frozen = ModuleVersion.FROZEN_FIELDS & set(fields)
                if frozen or "published" in fields or "version" in fields:
                    raise ConflictError(
                        f"Version {current.version} is published; "
                        f"cannot modify {', '.join(sorted(frozen or set(fields)))}",
                        entity=current.version,
                    )
            if "published" in fields or "published_at" in fields:
                raise ConflictError("Use publish_version to publish", entity=current.version)
            updated = self._apply(current, fields, "ModuleVersion")
            self._versions[version_id] = updated
            self._commit()
            return self._copy(updated)

    def publish_version(self, version_id: str) -> ModuleVersion:
        with self._lock:
            current = self._get(self._versions, version_id, "ModuleVersion")
            if current.published:
                raise ConflictError(
                    f"Version {current.version} is already published", entity=current.version,
                )
            updated = self._copy(current)
            updated.publish()
            self._versions[version_id] = updated
            self._commit()
            return self._copy(updated)

    # ── Projects ────────────────────────────────────────────────

    def create_project(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = self._copy(project)
            self._commit()
            return self._copy(project)

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            return self._copy(self._get(self._projects, project_id, "Project"))

    def list_projects(self, *, owner: str | None = None) -> list[Project]:
        with self._lock:
            projects = [
                self._copy(p) for p in self._projects.values()
                if owner is None or p.owner == owner
            ]
        return sorted(projects, key=lambda p: p.name)

    def update_project(self, project_id: str, **fields: Any) -> Project:
        with self._lock:
            updated = self._apply(self._get(self._projects, project_id, "Project"), fields, "Project")
            self._projects[project_id] = updated
            self._commit()
            return self._copy(updated)

    def _check_pin(self, link: ProjectModule) -> None:
        version = self._get(self._versions, link.module_version_id, "ModuleVersion")
        if version.module_id != link.module_id:
            raise ConfigurationError(
                f"Version {version.version} does not belong to module '{link.module_id}'",
                entity=link.module_version_id,
            )
        if not version.published:
            raise ConflictError(
                f"Version {version.version} is not published and cannot be pinned",
                entity=version.version,
            )

    def add_project_module(self, link: ProjectModule) -> ProjectModule:
        with self._lock:
            self._get(self._projects, link.project_id, "Project")
            self._get(self._modules, link.module_id, "Module")
            self._check_pin(link)
            self._links[link.id] = self._copy(link)
            self._commit()
            return self._copy(link)

    def get_project_module(self, link_id: str) -> ProjectModule:
        with self._lock:
            return self._copy(self._get(self._links, link_id, "ProjectModule"))

    def list_project_modules(
        self, project_id: str, *, enabled_only: bool = False,
    ) -> list[ProjectModule]:
        with self._lock:
            self._get(self._projects, project_id, "Project")
            links = [
                self._copy(pm) for pm in self._links.values()
                if pm.project_id == project_id and (pm.enabled or not enabled_only)
            ]
        return sorted(links, key=lambda pm: (pm.order, pm.created_at))

    def update_project_module(self, link_id: str, **fields: Any) -> ProjectModule:
        with self._lock:
            updated = self._apply(
                self._get(self._links, link_id, "ProjectModule"), fields, "ProjectModule",
            )
            if "module_version_id" in fields or "module_id" in fields:
                self._check_pin(updated)
            self._links[link_id] = updated
            self._commit()
            return self._copy(updated)

    def remove_project_module(self, link_id: str) -> None:
        with self._lock:
            self._get(self._links, link_id, "ProjectModule")
            del self._links[link_id]
            self._commit()

    # ── Builds ──────────────────────────────────────────────────

    def create_build(self, build: Build) -> Build:
        with self._lock:
            if build.id in self._builds:
                raise ConflictError(f"Build '{build.id}' already exists", entity=build.id)
            self._builds[build.id] = self._copy(build)
            self._commit()
            return self._copy(build)

    def get_build(self, build_id: str) -> Build:
        with self._lock:
            build = self._get(self._builds, build_id, "Build")
            if build.deleted:
                raise NotFoundError(f"Build '{build_id}' not found", entity=build_id)
            return self._copy(build)

    def list_builds(
        self, *, owner: str | None = None, include_deleted: bool = False,
    ) -> list[Build]:
        with self._lock:
            builds = [
                self._copy(b) for b in self._builds.values()
                if (include_deleted or not b.deleted) and (owner is None or b.owner == owner)
            ]
        return sorted(builds, key=lambda b: b.created_at, reverse=True)

    def _merge_build_fields(self, current: Build, fields: dict[str, Any]) -> dict[str, Any]:
        if "status" in fields:
            raise InvalidState("Build status changes go through transition_build", entity=current.id)
        if current.is_terminal and set(fields) - {"deleted"}:
            raise ConflictError(
                f"Build {current.id} is {current.status}; its record is final",
                entity=current.id,
            )
        if "progress" in fields:
            fields = {**fields, "progress": max(current.progress, int(fields["progress"]))}
        return fields

    def update_build(self, build_id: str, **fields: Any) -> Build:
        with self._lock:
            current = self._get(self._builds, build_id, "Build")
            updated = self._apply(current, self._merge_build_fields(current, fields), "Build")
            self._builds[build_id] = updated
            self._commit()
            return self._copy(updated)

    def transition_build(
        self,
        build_id: str,
        expected: Iterable[BuildStatus],
        new: BuildStatus,
        **fields: Any,
    ) -> Build:
        """Atomically move a build from one of *expected* to *new*.

        Raises:
            InvalidState: Current status is not in *expected*, or the
                move is not a legal transition.
        """
        expected = set(expected)
        with self._lock:
            current = self._get(self._builds, build_id, "Build")
            if current.status not in expected:
                raise InvalidState(
                    f"Build {build_id} is '{current.status}', expected "
                    f"{' or '.join(sorted(s.value for s in expected))}",
                    entity=build_id,
                )
            updated = self._apply(current, self._merge_build_fields(current, fields), "Build")
            updated.transition(new)
            self._builds[build_id] = updated
            self._commit()
            return self._copy(updated)

    def delete_build(self, build_id: str) -> None:
        with self._lock:
            current = self._get(self._builds, build_id, "Build")
            self._builds[build_id] = self._apply(current, {"deleted": True}, "Build")
            self._commit()


# ── JSON snapshot store ─────────────────────────────────────────


_TABLES: dict[str, type[BaseModel]] = {
    "modules": Module,
    "versions": ModuleVersion,
    "projects": Project,
    "project_modules": ProjectModule,
    "builds": Build,
}


class JsonFileRecordStore(InMemoryRecordStore):
    """InMemoryRecordStore persisted to a single JSON file.

    The file is loaded once on construction and rewritten after every
    mutation (temp file in the same directory, then rename).
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = path
        self._load()

    def _tables(self) -> dict[str, dict[str, Any]]:
        return {
            "modules": self._modules,
            "versions": self._versions,
            "projects": self._projects,
            "project_modules": self._links,
            "builds": self._builds,
        }

    def _load(self) -> None:
        if not self.path.is_file():
            logger.info("No record store at %s — starting empty", self.path)
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot load record store {self.path}: {e}", entity=str(self.path)) from e

        tables = self._tables()
        try:
            for name, model in _TABLES.items():
                for raw in data.get(name, []):
                    record = model.model_validate(raw)
                    tables[name][record.id] = record
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid record in {self.path}: {e.errors()[0]['msg']}", entity=str(self.path),
            ) from e
        logger.debug(
            "Loaded record store %s (%d modules, %d builds)",
            self.path, len(self._modules), len(self._builds),
        )

    def _commit(self) -> None:
        snapshot = {
            name: [r.model_dump(mode="json") for r in table.values()]
            for name, table in self._tables().items()
        }
        content = json.dumps(snapshot, indent=2, ensure_ascii=False) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".store_", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self.path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
