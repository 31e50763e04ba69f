"""
Shared test fixtures and configuration.
"""

from __future__ import annotations

import textwrap
from collections.abc import Iterator
from pathlib import Path

import pytest

from installforge.adapters.mock import MockRegistryClient
from installforge.core.config.loader import ForgeSettings
from installforge.core.engine.orchestrator import BuildOrchestrator
from installforge.core.persistence.audit import BuildLedger
from installforge.core.persistence.record_store import InMemoryRecordStore

WEB_COMPOSE = textwrap.dedent("""\
    services:
      app:
        image: nginx:${TAG}
        ports: ["${PORT}:80"]
        depends_on: [cache]
        volumes:
          - ./conf/nginx.conf:/etc/nginx/nginx.conf:ro
      cache:
        image: redis:7
""")

DB_COMPOSE = textwrap.dedent("""\
    services:
      server:
        image: postgres:16
        environment:
          POSTGRES_PASSWORD: ${DB_PASSWORD:-changeme}
        volumes: [pgdata:/var/lib/postgresql/data]
    volumes:
      pgdata: {}
""")


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Return an empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def registry() -> MockRegistryClient:
    """Return a mock registry client (no network)."""
    return MockRegistryClient()


@pytest.fixture
def settings(tmp_path: Path) -> ForgeSettings:
    """Return settings rooted in a temporary data directory."""
    return ForgeSettings(data_dir=str(tmp_path / "data"), registry="mock")


@pytest.fixture
def orchestrator(
    store: InMemoryRecordStore,
    registry: MockRegistryClient,
    settings: ForgeSettings,
) -> Iterator[BuildOrchestrator]:
    """Return an orchestrator over the in-memory store and mock registry."""
    orch = BuildOrchestrator(
        store, registry, settings, ledger=BuildLedger(settings.ledger_path),
    )
    yield orch
    orch.shutdown(wait=True, cancel_pending=True)


@pytest.fixture
def catalog_file(tmp_path: Path) -> Path:
    """Write a two-module catalog (web, db) with one project (shop)."""
    root = tmp_path / "catalog"
    (root / "web" / "conf").mkdir(parents=True)
    (root / "web" / "conf" / "nginx.conf").write_text("events {}\n")
    (root / "web" / "docker-compose.yml").write_text(WEB_COMPOSE)
    (root / "db").mkdir()
    (root / "db" / "docker-compose.yml").write_text(DB_COMPOSE)

    path = root / "catalog.yml"
    path.write_text(textwrap.dedent("""\
        modules:
          - name: web
            author: ops
            versions:
              - version: 1.0.0
                compose_file: web/docker-compose.yml
                variables: {TAG: "1.25", PORT: 8080}
                resources: [conf/nginx.conf]
                resource_root: web
                dependencies:
                  - {module: db}
                published: true
              - version: 1.1.0
                compose_file: web/docker-compose.yml
          - name: db
            versions:
              - version: 2.0.0
                compose_file: db/docker-compose.yml
                published: true
        projects:
          - name: shop
            owner: alice
            env: {DB_PASSWORD: "", DOMAIN: shop.example.com}
            modules:
              - {module: web, version: 1.0.0, overrides: {PORT: 9090}}
              - {module: db, version: 2.0.0}
    """))
    return path
