"""
Catalog operations — modules, versions, projects and their pins.

Thin business rules on top of the record store, shared by the CLI,
the web API and the catalog loader.  Modules and versions may be
addressed by id or by name/version string.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from installforge.core.errors import ConfigurationError, NotFoundError
from installforge.core.models.compose import ComposeDocument
from installforge.core.models.module import Module, ModuleDependency, ModuleVersion
from installforge.core.models.project import Project, ProjectModule
from installforge.core.persistence.record_store import RecordStore

logger = logging.getLogger(__name__)


def _validated(model: type, data: dict[str, Any], kind: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {kind}: {e.errors()[0]['msg']}", entity=kind) from e


def _dependencies(raw: list[Any] | None) -> list[ModuleDependency]:
    deps: list[ModuleDependency] = []
    for item in raw or []:
        if isinstance(item, ModuleDependency):
            deps.append(item)
        elif isinstance(item, str):
            deps.append(ModuleDependency(module=item))
        elif isinstance(item, dict):
            deps.append(_validated(ModuleDependency, item, "dependency"))
        else:
            raise ConfigurationError(f"Invalid dependency entry: {item!r}", entity="dependencies")
    return deps


# ── Modules ─────────────────────────────────────────────────────


def resolve_module(store: RecordStore, ref: str) -> Module:
    """Look a module up by id, then by name."""
    try:
        return store.get_module(ref)
    except NotFoundError:
        return store.get_module_by_name(ref)


def create_module(
    store: RecordStore,
    name: str,
    *,
    author: str = "",
    description: str = "",
    repository: str = "",
) -> Module:
    module = _validated(Module, {
        "name": name, "author": author, "description": description, "repository": repository,
    }, "module")
    created = store.create_module(module)
    logger.info("Created module %s", name)
    return created


def update_module(store: RecordStore, module_ref: str, **fields: Any) -> Module:
    module = resolve_module(store, module_ref)
    return store.update_module(module.id, **fields)


def deactivate_module(store: RecordStore, module_ref: str) -> Module:
    """Soft-delete: the module stays resolvable for existing projects."""
    module = resolve_module(store, module_ref)
    logger.info("Deactivating module %s", module.name)
    return store.update_module(module.id, active=False)


# ── Versions ────────────────────────────────────────────────────


def create_version(
    store: RecordStore,
    module_ref: str,
    version: str,
    compose: str,
    *,
    variables: dict[str, Any] | None = None,
    resources: list[str] | None = None,
    dependencies: list[Any] | None = None,
    resource_root: str = "",
) -> ModuleVersion:
    """Create a draft version.  The manifest must parse as a compose document."""
    module = resolve_module(store, module_ref)
    ComposeDocument.from_yaml(compose, source=f"{module.name} {version}")
    record = _validated(ModuleVersion, {
        "module_id": module.id,
        "version": version,
        "compose": compose,
        "variables": dict(variables or {}),
        "resources": list(resources or []),
        "dependencies": _dependencies(dependencies),
        "resource_root": resource_root,
    }, "module version")
    created = store.create_version(record)
    logger.info("Created %s %s (draft)", module.name, version)
    return created


def resolve_version(store: RecordStore, module_ref: str, version: str) -> ModuleVersion:
    module = resolve_module(store, module_ref)
    try:
        return store.get_version(version)
    except NotFoundError:
        return store.find_version(module.id, version)


def update_version(store: RecordStore, module_ref: str, version: str, **fields: Any) -> ModuleVersion:
    """Edit a draft.  Published versions raise ConflictError."""
    record = resolve_version(store, module_ref, version)
    if "compose" in fields:
        ComposeDocument.from_yaml(fields["compose"], source=f"{module_ref} {version}")
    if "dependencies" in fields:
        fields["dependencies"] = _dependencies(fields["dependencies"])
    return store.update_version(record.id, **fields)


def publish_version(store: RecordStore, module_ref: str, version: str) -> ModuleVersion:
    record = resolve_version(store, module_ref, version)
    published = store.publish_version(record.id)
    logger.info("Published %s %s", module_ref, published.version)
    return published


def list_versions(store: RecordStore, module_ref: str) -> list[ModuleVersion]:
    return store.list_versions(resolve_module(store, module_ref).id)


# ── Projects ────────────────────────────────────────────────────


def create_project(
    store: RecordStore,
    name: str,
    *,
    owner: str = "",
    description: str = "",
    variables: dict[str, Any] | None = None,
    env_vars: dict[str, str] | None = None,
) -> Project:
    project = _validated(Project, {
        "name": name,
        "owner": owner,
        "description": description,
        "variables": dict(variables or {}),
        "env_vars": {k: "" if v is None else str(v) for k, v in (env_vars or {}).items()},
    }, "project")
    return store.create_project(project)


def resolve_project(store: RecordStore, ref: str) -> Project:
    """Look a project up by id, then by (unique) name."""
    try:
        return store.get_project(ref)
    except NotFoundError:
        matches = [p for p in store.list_projects() if p.name == ref]
    if not matches:
        raise NotFoundError(f"Project '{ref}' not found", entity=ref)
    if len(matches) > 1:
        raise ConfigurationError(f"Project name '{ref}' is ambiguous; use its id", entity=ref)
    return matches[0]


def add_project_module(
    store: RecordStore,
    project_id: str,
    module_ref: str,
    version: str,
    *,
    order: int | None = None,
    enabled: bool = True,
    override_vars: dict[str, Any] | None = None,
) -> ProjectModule:
    """Pin a published module version into a project.

    Without an explicit *order* the module is appended after the last one.
    """
    module = resolve_module(store, module_ref)
    record = resolve_version(store, module.id, version)
    if order is None:
        existing = store.list_project_modules(project_id)
        order = (max(pm.order for pm in existing) + 1) if existing else 0
    link = ProjectModule(
        project_id=project_id,
        module_id=module.id,
        module_version_id=record.id,
        order=order,
        enabled=enabled,
        override_vars=dict(override_vars or {}),
    )
    created = store.add_project_module(link)
    logger.info("Pinned %s %s into project %s at %d", module.name, record.version, project_id, order)
    return created


def update_project_module(store: RecordStore, link_id: str, **fields: Any) -> ProjectModule:
    return store.update_project_module(link_id, **fields)


def reorder_project_modules(store: RecordStore, project_id: str, link_ids: list[str]) -> list[ProjectModule]:
    """Assign orders 0..n-1 following *link_ids*.

    Raises:
        ConfigurationError: *link_ids* is not exactly the project's links.
    """
    current = {pm.id for pm in store.list_project_modules(project_id)}
    if set(link_ids) != current or len(link_ids) != len(current):
        raise ConfigurationError(
            "Reorder must list every module link of the project exactly once",
            entity=project_id,
        )
    for position, link_id in enumerate(link_ids):
        store.update_project_module(link_id, order=position)
    return store.list_project_modules(project_id)


def remove_project_module(store: RecordStore, link_id: str) -> None:
    store.remove_project_module(link_id)


def project_summary(store: RecordStore, project_id: str) -> dict[str, Any]:
    """Project plus its pinned modules, for display."""
    project = store.get_project(project_id)
    modules = []
    for pm in store.list_project_modules(project_id):
        module = store.get_module(pm.module_id)
        version = store.get_version(pm.module_version_id)
        modules.append({
            "link_id": pm.id,
            "module": module.name,
            "version": version.version,
            "order": pm.order,
            "enabled": pm.enabled,
            "override_vars": pm.override_vars,
        })
    return {
        **project.model_dump(mode="json"),
        "required_env": project.required_env(),
        "modules": modules,
    }
