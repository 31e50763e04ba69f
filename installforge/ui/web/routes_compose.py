"""
Compose routes — merge and lint without building.

Blueprint: compose_bp
Prefix: /api

Endpoints:
    POST /compose/merge   — {manifest, variables} or {modules: [{name, manifest, variables}]}
    POST /compose/lint    — same body; returns the lint report
"""

from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify

from installforge.core.errors import ConfigurationError
from installforge.core.services.linter import lint_merge
from installforge.core.services.merger import (
    MergeResult,
    ModuleInstance,
    derive_namespaces,
    merge_manifest,
    merge_modules,
)
from installforge.core.services.variables import coerce_variable_map
from installforge.ui.web.helpers import json_body

compose_bp = Blueprint("compose", __name__)


def _merge_from_body(body: dict[str, Any]) -> MergeResult:
    variables = coerce_variable_map(body.get("variables"), source="variables")
    modules = body.get("modules")
    if modules is None:
        manifest = body.get("manifest")
        if not isinstance(manifest, str):
            raise ConfigurationError("Body needs 'manifest' text or a 'modules' list", entity="body")
        return merge_manifest(manifest, variables)

    if not isinstance(modules, list) or not modules:
        raise ConfigurationError("'modules' must be a non-empty list", entity="modules")
    names = [str(m.get("name", f"module-{i}")) for i, m in enumerate(modules)]
    instances = [
        ModuleInstance(
            name=name,
            version=str(mod.get("version", "")),
            namespace=namespace,
            compose=str(mod.get("manifest", "")),
            variables={**variables, **coerce_variable_map(mod.get("variables"), source=name)},
            order=order,
        )
        for order, (mod, name, namespace) in enumerate(zip(modules, names, derive_namespaces(names), strict=True))
    ]
    return merge_modules(instances)


@compose_bp.route("/compose/merge", methods=["POST"])
def compose_merge():  # type: ignore[no-untyped-def]
    result = _merge_from_body(json_body())
    return jsonify({
        "ok": True,
        "compose": result.to_yaml(),
        "modules": [m.to_dict() for m in result.modules],
        "unresolved": [u.to_dict() for u in result.unresolved],
    })


@compose_bp.route("/compose/lint", methods=["POST"])
def compose_lint():  # type: ignore[no-untyped-def]
    report = lint_merge(_merge_from_body(json_body()))
    return jsonify(report.to_dict())
