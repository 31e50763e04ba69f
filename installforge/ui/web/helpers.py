"""
Shared helpers for route blueprints.
"""

from __future__ import annotations

from typing import Any

from flask import current_app, request

from installforge.core.engine.orchestrator import BuildOrchestrator
from installforge.core.errors import ConfigurationError
from installforge.core.persistence.record_store import RecordStore


def orchestrator() -> BuildOrchestrator:
    return current_app.extensions["installforge"]


def store() -> RecordStore:
    return orchestrator().store


def json_body() -> dict[str, Any]:
    """The request's JSON object (empty body → {})."""
    data = request.get_json(silent=True)
    if data is None:
        if request.get_data(cache=True).strip():
            raise ConfigurationError("Request body is not valid JSON", entity="body")
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Request body must be a JSON object", entity="body")
    return data
