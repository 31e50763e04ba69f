"""
Build routes — submit, inspect, cancel and download builds.

Blueprint: builds_bp
Prefix: /api

Endpoints:
    POST /builds                  — submit {project_id | manifest, variables, name, owner}
    GET  /builds                  — list builds (?owner=)
    GET  /builds/<id>             — status and progress
    POST /builds/<id>/cancel      — cancel a queued or building build
    GET  /builds/<id>/result      — archive location and installer manifest
    GET  /builds/<id>/download    — the archive itself
    GET  /builds/<id>/compose     — merged compose manifest
"""

from __future__ import annotations

import json
from pathlib import Path

from flask import Blueprint, Response, jsonify, request, send_file

from installforge.core.errors import NotFoundError
from installforge.ui.web.helpers import json_body, orchestrator, store

builds_bp = Blueprint("builds", __name__)


@builds_bp.route("/builds", methods=["POST"])
def submit_build():  # type: ignore[no-untyped-def]
    """Queue a build; returns 202 with the build id."""
    body = json_body()
    build_id = orchestrator().submit(
        project_id=body.get("project_id"),
        manifest=body.get("manifest"),
        variables=body.get("variables"),
        name=str(body.get("name", "")),
        owner=str(body.get("owner", "")),
    )
    return jsonify({"ok": True, "build_id": build_id, "status": "queued"}), 202


@builds_bp.route("/builds")
def list_builds():  # type: ignore[no-untyped-def]
    owner = request.args.get("owner")
    return jsonify({"builds": [b.status_view() for b in orchestrator().list_builds(owner=owner)]})


@builds_bp.route("/builds/<build_id>")
def build_status(build_id: str):  # type: ignore[no-untyped-def]
    return jsonify(orchestrator().status(build_id))


@builds_bp.route("/builds/<build_id>/cancel", methods=["POST"])
def cancel_build(build_id: str):  # type: ignore[no-untyped-def]
    return jsonify(orchestrator().cancel(build_id))


@builds_bp.route("/builds/<build_id>/result")
def build_result(build_id: str):  # type: ignore[no-untyped-def]
    """Archive location of a completed build (409 until then)."""
    location = orchestrator().result(build_id)
    build = store().get_build(build_id)
    return jsonify({
        "build_id": build_id,
        "download_location": location,
        "manifest": json.loads(build.installer_manifest) if build.installer_manifest else None,
        "warnings": build.warnings,
    })


@builds_bp.route("/builds/<build_id>/download")
def download_build(build_id: str):  # type: ignore[no-untyped-def]
    archive = Path(orchestrator().result(build_id))
    if not archive.is_file():
        raise NotFoundError(f"Archive for build {build_id} is gone", entity=str(archive))
    return send_file(
        archive,
        mimetype="application/gzip",
        as_attachment=True,
        download_name=f"installer-{build_id}.tar.gz",
    )


@builds_bp.route("/builds/<build_id>/compose")
def build_compose(build_id: str):  # type: ignore[no-untyped-def]
    build = store().get_build(build_id)
    if not build.merged_compose:
        raise NotFoundError(f"Build {build_id} has no merged manifest", entity=build_id)
    return Response(build.merged_compose, mimetype="application/yaml")
