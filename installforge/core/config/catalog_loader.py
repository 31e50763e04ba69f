"""
Catalog loader — seeds a record store from a YAML catalog file.

Format::

    modules:
      - name: web
        author: ops
        versions:
          - version: 1.0.0
            compose_file: web/docker-compose.yml   # or inline "compose:"
            variables: {PORT: 8080}
            resources: [conf/nginx.conf]
            resource_root: web                     # default: catalog dir
            dependencies:
              - {module: db, optional: false}
            published: true

    projects:
      - name: shop
        owner: alice
        variables: {TAG: "1.25"}
        env: {DB_PASSWORD: ""}
        modules:
          - {module: web, version: 1.0.0, overrides: {PORT: 80}}

Relative paths are resolved against the catalog file's directory.
Modules and versions that already exist in the store are reused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from installforge.core.config.loader import read_yaml_mapping
from installforge.core.errors import ConfigurationError, NotFoundError
from installforge.core.persistence.record_store import RecordStore
from installforge.core.services import catalog

logger = logging.getLogger(__name__)


@dataclass
class CatalogLoadResult:
    modules: list[str] = field(default_factory=list)
    versions: list[str] = field(default_factory=list)       # name@version
    projects: dict[str, str] = field(default_factory=dict)  # name → id

    def to_dict(self) -> dict[str, Any]:
        return {"modules": self.modules, "versions": self.versions, "projects": self.projects}


def _as_list(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"Catalog '{what}' must be a list", entity=what)
    return value


def _compose_text(entry: dict[str, Any], base: Path, label: str) -> str:
    if "compose" in entry:
        return str(entry["compose"])
    if "compose_file" in entry:
        path = base / str(entry["compose_file"])
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"{label}: cannot read {path}: {e}", entity=str(path)) from e
    raise ConfigurationError(f"{label}: needs 'compose' or 'compose_file'", entity=label)


def _load_module(store: RecordStore, entry: dict[str, Any], base: Path, result: CatalogLoadResult) -> None:
    name = str(entry.get("name", ""))
    if not name:
        raise ConfigurationError("Catalog module without a name", entity="modules")
    try:
        module = store.get_module_by_name(name)
    except NotFoundError:
        module = catalog.create_module(
            store,
            name,
            author=str(entry.get("author", "")),
            description=str(entry.get("description", "")),
            repository=str(entry.get("repository", "")),
        )
        result.modules.append(name)

    for ventry in _as_list(entry.get("versions"), f"{name}.versions"):
        version = str(ventry.get("version", ""))
        label = f"{name}@{version}"
        try:
            store.find_version(module.id, version)
            continue
        except NotFoundError:
            pass
        root = ventry.get("resource_root")
        resource_root = str((base / str(root)).resolve()) if root else str(base.resolve())
        created = catalog.create_version(
            store,
            module.id,
            version,
            _compose_text(ventry, base, label),
            variables=ventry.get("variables") or {},
            resources=_as_list(ventry.get("resources"), f"{label}.resources"),
            dependencies=_as_list(ventry.get("dependencies"), f"{label}.dependencies"),
            resource_root=resource_root,
        )
        if ventry.get("published", False):
            store.publish_version(created.id)
        result.versions.append(label)


def _load_project(store: RecordStore, entry: dict[str, Any], result: CatalogLoadResult) -> None:
    name = str(entry.get("name", ""))
    if not name:
        raise ConfigurationError("Catalog project without a name", entity="projects")
    project = catalog.create_project(
        store,
        name,
        owner=str(entry.get("owner", "")),
        description=str(entry.get("description", "")),
        variables=entry.get("variables") or {},
        env_vars=entry.get("env") or {},
    )
    for pos, pin in enumerate(_as_list(entry.get("modules"), f"{name}.modules")):
        catalog.add_project_module(
            store,
            project.id,
            str(pin.get("module", "")),
            str(pin.get("version", "")),
            order=int(pin.get("order", pos)),
            enabled=bool(pin.get("enabled", True)),
            override_vars=pin.get("overrides") or {},
        )
    result.projects[name] = project.id


def load_catalog(path: Path, store: RecordStore) -> CatalogLoadResult:
    """Load *path* into *store*.

    Raises:
        ConfigurationError: Invalid catalog content.
        NotFoundError / ConflictError: Unknown module pins, unpublished pins.
    """
    data = read_yaml_mapping(path)
    base = path.parent
    result = CatalogLoadResult()

    for entry in _as_list(data.get("modules"), "modules"):
        _load_module(store, entry, base, result)
    for entry in _as_list(data.get("projects"), "projects"):
        _load_project(store, entry, result)

    logger.info(
        "Loaded catalog %s: %d module(s), %d version(s), %d project(s)",
        path, len(result.modules), len(result.versions), len(result.projects),
    )
    return result
