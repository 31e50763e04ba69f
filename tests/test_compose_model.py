"""
Tests for the typed compose document.
"""

import textwrap

import pytest

from installforge.core.errors import ConfigurationError
from installforge.core.models.compose import (
    ComposeDocument,
    Reference,
    Service,
    mount_source,
    parse_compose_text,
)

MANIFEST = textwrap.dedent("""\
    version: "3.8"
    services:
      web:
        image: nginx:1.25
        depends_on: [api]
        networks: [front]
        volumes:
          - static:/usr/share/nginx/html
          - ./conf:/etc/nginx/conf.d:ro
        labels:
          tier: edge
      api:
        image: example/api:2.0
        network_mode: "service:web"
        secrets:
          - source: api_key
            target: /run/secrets/key
        configs: [api_conf]
    networks:
      front: {}
    volumes:
      static:
    secrets:
      api_key:
        file: ./api_key.txt
    configs:
      api_conf:
        file: ./api.conf
    x-common:
      restart: always
""")


class TestParsing:
    def test_parse_roundtrip_keeps_unknown_keys(self):
        doc = ComposeDocument.from_yaml(MANIFEST)
        out = doc.to_mapping()
        assert out["version"] == "3.8"
        assert out["services"]["web"]["labels"] == {"tier": "edge"}
        assert out["x-common"] == {"restart": "always"}
        assert list(out["services"]["web"]) == ["image", "depends_on", "networks", "volumes", "labels"]

    def test_empty_text(self):
        assert parse_compose_text("") == {}
        assert ComposeDocument.from_yaml("").services == {}

    def test_invalid_yaml(self):
        with pytest.raises(ConfigurationError):
            parse_compose_text("services: [unclosed", source="broken")

    def test_non_mapping_document(self):
        with pytest.raises(ConfigurationError):
            parse_compose_text("- a\n- b\n")

    def test_bad_service_body(self):
        with pytest.raises(ConfigurationError):
            ComposeDocument.from_yaml("services:\n  web: nope\n")

    def test_external_resource(self):
        doc = ComposeDocument.from_yaml("networks:\n  shared:\n    external: true\n  own: {}\n")
        assert doc.networks["shared"].external
        assert not doc.networks["own"].external


class TestReferences:
    def test_service_references(self):
        doc = ComposeDocument.from_yaml(MANIFEST)
        refs = {(svc, ref.kind, ref.name) for svc, ref in doc.iter_references()}
        assert ("web", "service", "api") in refs
        assert ("web", "network", "front") in refs
        assert ("web", "volume", "static") in refs
        assert ("api", "service", "web") in refs
        assert ("api", "secret", "api_key") in refs
        assert ("api", "config", "api_conf") in refs

    def test_bind_mounts_are_not_references(self):
        doc = ComposeDocument.from_yaml(MANIFEST)
        names = {ref.name for _, ref in doc.iter_references()}
        assert "./conf" not in names

    def test_rewrite_references(self):
        svc = Service.from_mapping("web", {
            "depends_on": {"db": {"condition": "service_healthy"}},
            "links": ["db:database"],
            "volumes_from": ["cache:ro", "container:abc"],
            "volumes": ["data:/var/lib", {"type": "volume", "source": "logs", "target": "/logs"}],
        })
        svc.rewrite_references(lambda kind, name: f"m__{name}")
        out = svc.to_mapping()
        assert out["depends_on"] == {"m__db": {"condition": "service_healthy"}}
        assert out["links"] == ["m__db:database"]
        assert out["volumes_from"] == ["m__cache:ro", "container:abc"]
        assert out["volumes"][0] == "m__data:/var/lib"
        assert out["volumes"][1]["source"] == "m__logs"

    def test_image_references_grouped(self):
        doc = ComposeDocument.from_yaml(
            "services:\n  a:\n    image: x:1\n  b:\n    image: x:1\n  c:\n    build: .\n"
        )
        assert doc.image_references() == {"x:1": ["a", "b"]}
        assert doc.services["c"].has_build

    def test_reference_is_hashable(self):
        assert Reference("service", "db", "depends_on") in {Reference("service", "db", "depends_on")}


class TestMountSource:
    @pytest.mark.parametrize("entry,expected", [
        ("data:/var/lib", ("volume", "data")),
        ("./src:/app", ("bind", "./src")),
        ("/abs:/app", ("bind", "/abs")),
        ("/only-target", ("anonymous", None)),
        ({"type": "tmpfs", "target": "/tmp"}, ("tmpfs", None)),
        ({"type": "bind", "source": "/h", "target": "/c"}, ("bind", "/h")),
    ])
    def test_classification(self, entry, expected):
        assert mount_source(entry) == expected
