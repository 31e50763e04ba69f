"""
Catalog routes — modules, versions and projects.

Blueprint: modules_bp
Prefix: /api

Endpoints:
    GET    /modules                                  — list modules (?all=1 includes inactive)
    POST   /modules                                  — create {name, author, description, repository}
    GET    /modules/<ref>                            — module with its versions
    DELETE /modules/<ref>                            — deactivate
    POST   /modules/<ref>/versions                   — create draft {version, compose, variables, ...}
    PATCH  /modules/<ref>/versions/<version>         — edit a draft
    POST   /modules/<ref>/versions/<version>/publish — freeze a version
    GET    /projects                                 — list projects (?owner=)
    POST   /projects                                 — create {name, owner, variables, env_vars}
    GET    /projects/<ref>                           — project with pinned modules
    POST   /projects/<ref>/modules                   — pin {module, version, order, enabled, override_vars}
    PATCH  /projects/<ref>/modules/<link_id>         — update {order, enabled, override_vars}
    DELETE /projects/<ref>/modules/<link_id>         — unpin
    PUT    /projects/<ref>/modules/order             — reorder {links: [link_id, ...]}
"""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from installforge.core.errors import ConfigurationError, NotFoundError
from installforge.core.services import catalog
from installforge.ui.web.helpers import json_body, store

modules_bp = Blueprint("modules", __name__)

_LINK_FIELDS = ("order", "enabled", "override_vars")
_DRAFT_FIELDS = ("compose", "variables", "resources", "dependencies", "resource_root")


def _required(body: dict[str, Any], key: str) -> Any:
    value = body.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"'{key}' is required", entity=key)
    return value


def _dump(record: Any) -> dict[str, Any]:
    return record.model_dump(mode="json")


# ── Modules ─────────────────────────────────────────────────────


@modules_bp.route("/modules")
def list_modules():  # type: ignore[no-untyped-def]
    active_only = request.args.get("all") not in ("1", "true")
    return jsonify({"modules": [_dump(m) for m in store().list_modules(active_only=active_only)]})


@modules_bp.route("/modules", methods=["POST"])
def create_module():  # type: ignore[no-untyped-def]
    body = json_body()
    module = catalog.create_module(
        store(),
        str(_required(body, "name")),
        author=str(body.get("author", "")),
        description=str(body.get("description", "")),
        repository=str(body.get("repository", "")),
    )
    return jsonify(_dump(module)), 201


@modules_bp.route("/modules/<ref>")
def get_module(ref: str):  # type: ignore[no-untyped-def]
    module = catalog.resolve_module(store(), ref)
    return jsonify({
        **_dump(module),
        "versions": [_dump(v) for v in store().list_versions(module.id)],
    })


@modules_bp.route("/modules/<ref>", methods=["DELETE"])
def deactivate_module(ref: str):  # type: ignore[no-untyped-def]
    return jsonify(_dump(catalog.deactivate_module(store(), ref)))


@modules_bp.route("/modules/<ref>/versions", methods=["POST"])
def create_version(ref: str):  # type: ignore[no-untyped-def]
    body = json_body()
    version = catalog.create_version(
        store(),
        ref,
        str(_required(body, "version")),
        str(_required(body, "compose")),
        variables=body.get("variables"),
        resources=body.get("resources"),
        dependencies=body.get("dependencies"),
        resource_root=str(body.get("resource_root", "")),
    )
    return jsonify(_dump(version)), 201


@modules_bp.route("/modules/<ref>/versions/<version>", methods=["PATCH"])
def update_version(ref: str, version: str):  # type: ignore[no-untyped-def]
    body = json_body()
    fields = {k: body[k] for k in _DRAFT_FIELDS if k in body}
    return jsonify(_dump(catalog.update_version(store(), ref, version, **fields)))


@modules_bp.route("/modules/<ref>/versions/<version>/publish", methods=["POST"])
def publish_version(ref: str, version: str):  # type: ignore[no-untyped-def]
    return jsonify(_dump(catalog.publish_version(store(), ref, version)))


# ── Projects ────────────────────────────────────────────────────


@modules_bp.route("/projects")
def list_projects():  # type: ignore[no-untyped-def]
    owner = request.args.get("owner")
    return jsonify({"projects": [_dump(p) for p in store().list_projects(owner=owner)]})


@modules_bp.route("/projects", methods=["POST"])
def create_project():  # type: ignore[no-untyped-def]
    body = json_body()
    project = catalog.create_project(
        store(),
        str(_required(body, "name")),
        owner=str(body.get("owner", "")),
        description=str(body.get("description", "")),
        variables=body.get("variables"),
        env_vars=body.get("env_vars"),
    )
    return jsonify(_dump(project)), 201


@modules_bp.route("/projects/<ref>")
def get_project(ref: str):  # type: ignore[no-untyped-def]
    project = catalog.resolve_project(store(), ref)
    return jsonify(catalog.project_summary(store(), project.id))


@modules_bp.route("/projects/<ref>/modules", methods=["POST"])
def pin_module(ref: str):  # type: ignore[no-untyped-def]
    body = json_body()
    project = catalog.resolve_project(store(), ref)
    link = catalog.add_project_module(
        store(),
        project.id,
        str(_required(body, "module")),
        str(_required(body, "version")),
        order=body.get("order"),
        enabled=bool(body.get("enabled", True)),
        override_vars=body.get("override_vars"),
    )
    return jsonify(_dump(link)), 201


def _project_link(ref: str, link_id: str) -> str:
    project = catalog.resolve_project(store(), ref)
    link = store().get_project_module(link_id)
    if link.project_id != project.id:
        raise NotFoundError(f"Module link {link_id} not in project {project.name}", entity=link_id)
    return link.id


@modules_bp.route("/projects/<ref>/modules/<link_id>", methods=["PATCH"])
def update_link(ref: str, link_id: str):  # type: ignore[no-untyped-def]
    body = json_body()
    fields = {k: body[k] for k in _LINK_FIELDS if k in body}
    link = catalog.update_project_module(store(), _project_link(ref, link_id), **fields)
    return jsonify(_dump(link))


@modules_bp.route("/projects/<ref>/modules/<link_id>", methods=["DELETE"])
def remove_link(ref: str, link_id: str):  # type: ignore[no-untyped-def]
    catalog.remove_project_module(store(), _project_link(ref, link_id))
    return jsonify({"ok": True, "removed": link_id})


@modules_bp.route("/projects/<ref>/modules/order", methods=["PUT"])
def reorder_links(ref: str):  # type: ignore[no-untyped-def]
    links = _required(json_body(), "links")
    if not isinstance(links, list):
        raise ConfigurationError("'links' must be a list of link ids", entity="links")
    project = catalog.resolve_project(store(), ref)
    ordered = catalog.reorder_project_modules(store(), project.id, [str(x) for x in links])
    return jsonify({"modules": [_dump(pm) for pm in ordered]})
