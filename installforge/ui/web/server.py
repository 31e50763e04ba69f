"""
Build API server — Flask app factory.

Every route is a thin JSON wrapper over the orchestrator, the catalog
operations or the merger/linter.  Pipeline errors map to HTTP status
codes in one place (``_handle_forge_error``).
"""

from __future__ import annotations

import logging

from flask import Flask, jsonify

from installforge.core.config.loader import ForgeSettings
from installforge.core.engine.orchestrator import BuildOrchestrator
from installforge.core.errors import ConflictError, ForgeError, NotFoundError, NotReady

logger = logging.getLogger(__name__)

EXTENSION_KEY = "installforge"


def _status_for(err: ForgeError) -> int:
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, (ConflictError, NotReady)):
        return 409
    return 400


def create_app(
    settings: ForgeSettings | None = None,
    orchestrator: BuildOrchestrator | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        settings: Paths and limits (ignored when *orchestrator* is given).
        orchestrator: Pre-built orchestrator; wired from *settings* if None.

    Returns:
        Configured Flask application.
    """
    app = Flask(__name__)

    if orchestrator is None:
        orchestrator = BuildOrchestrator.from_settings(settings or ForgeSettings())
    app.extensions[EXTENSION_KEY] = orchestrator
    app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024  # manifests and variable maps only

    from installforge.ui.web.routes_builds import builds_bp
    from installforge.ui.web.routes_compose import compose_bp
    from installforge.ui.web.routes_modules import modules_bp

    app.register_blueprint(builds_bp, url_prefix="/api")
    app.register_blueprint(compose_bp, url_prefix="/api")
    app.register_blueprint(modules_bp, url_prefix="/api")

    @app.errorhandler(ForgeError)
    def _handle_forge_error(err: ForgeError):  # type: ignore[no-untyped-def]
        status = _status_for(err)
        if status >= 500 or status == 400:
            logger.info("Request rejected (%s): %s", err.stage, err.message)
        return jsonify({"ok": False, **err.to_dict()}), status

    @app.route("/api/health")
    def health():  # type: ignore[no-untyped-def]
        return jsonify({
            "ok": True,
            "slots": orchestrator.admission.ceiling,
            "building": orchestrator.admission.in_use,
        })

    @app.route("/api/metrics")
    def metrics():  # type: ignore[no-untyped-def]
        return jsonify(orchestrator.metrics.to_dict())

    logger.info("Build API app created (slots=%d)", orchestrator.admission.ceiling)
    return app


def run_server(
    app: Flask,
    host: str = "127.0.0.1",
    port: int = 8000,
    debug: bool = False,
) -> None:
    """Run the Flask development server."""
    logger.info("Starting build API on %s:%d", host, port)
    try:
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        app.extensions[EXTENSION_KEY].shutdown(wait=False, cancel_pending=True)
