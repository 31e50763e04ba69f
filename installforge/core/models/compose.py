"""
Compose document — a typed tree over a docker-compose manifest.

The merger, linter and image packager all work on this tree instead of
raw nested dicts.  Every field that can *reference* another entity
(depends_on, links, volumes_from, network_mode, networks, volume mounts,
configs, secrets) is a typed attribute on ``Service``, so the rename and
dangling-reference passes walk one exhaustive list.  Everything the
system does not interpret lives in an ordered ``extra`` passthrough
bucket and is emitted back verbatim.

Reference kinds and the top-level collection that declares them::

    service → services      network → networks      volume → volumes
    config  → configs       secret  → secrets
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, ClassVar

import yaml

from installforge.core.errors import ConfigurationError

KIND_COLLECTIONS: dict[str, str] = {
    "service": "services",
    "network": "networks",
    "volume": "volumes",
    "config": "configs",
    "secret": "secrets",
}

ENTITY_COLLECTIONS = tuple(KIND_COLLECTIONS.values())

# Network every service joins implicitly
DEFAULT_NETWORK = "default"

# Service-level extension flag marking an image as optional for packaging
OPTIONAL_IMAGE_KEY = "x-offline-optional"

Renamer = Callable[[str, str], str]


@dataclass(frozen=True)
class Reference:
    """One reference from a service to another entity."""

    kind: str    # service, network, volume, config, secret
    name: str
    field: str   # where it appears, e.g. "depends_on" or "volumes[1]"


# ── YAML I/O ────────────────────────────────────────────────────


def parse_compose_text(text: str, *, source: str = "manifest") -> dict[str, Any]:
    """Parse compose YAML text into a mapping.

    Raises:
        ConfigurationError: On invalid YAML or a non-mapping document.
    """
    try:
        data = yaml.safe_load(text) if text and text.strip() else {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {source}: {e}", entity=source) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {source}, got {type(data).__name__}",
            entity=source,
        )
    return data


def dump_yaml(data: dict[str, Any]) -> str:
    """Render a mapping as block-style YAML, keeping key order."""
    return yaml.safe_dump(
        data,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


# ── Volume mount helpers ────────────────────────────────────────


def mount_source(entry: Any) -> tuple[str, str | None]:
    """Classify a service volume entry.

    Returns:
        (kind, source) where kind is "volume" (named volume), "bind",
        "anonymous", "tmpfs" or "unknown".  source is the named volume
        or host path, None for anonymous/tmpfs mounts.
    """
    if isinstance(entry, dict):
        mount_type = entry.get("type", "volume")
        source = entry.get("source")
        if mount_type == "volume":
            return ("volume", str(source)) if source else ("anonymous", None)
        if mount_type == "bind":
            return "bind", str(source) if source else None
        return str(mount_type), None

    if not isinstance(entry, str):
        return "unknown", None

    parts = entry.split(":")
    if len(parts) == 1:
        return "anonymous", None

    source = parts[0]
    if not source:
        return "anonymous", None
    if source.startswith(("/", ".", "~", "$")) or "/" in source or "\\" in source:
        return "bind", source
    return "volume", source


def _rewrite_mount(entry: Any, new_source: str) -> Any:
    if isinstance(entry, dict):
        updated = dict(entry)
        updated["source"] = new_source
        return updated
    _, _, rest = entry.partition(":")
    return f"{new_source}:{rest}"


def _ref_name(entry: Any) -> str | None:
    """Name referenced by a short- or long-syntax config/secret entry."""
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict) and entry.get("source"):
        return str(entry["source"])
    return None


# ── Top-level resources ─────────────────────────────────────────


@dataclass
class Resource:
    """A top-level network, volume, config or secret declaration."""

    name: str
    body: dict[str, Any] | None = None

    @property
    def external(self) -> bool:
        """Whether the entity is managed outside this document."""
        if not isinstance(self.body, dict):
            return False
        return bool(self.body.get("external"))

    def to_value(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.body)

    @classmethod
    def from_value(cls, name: str, value: Any, *, kind: str) -> Resource:
        if value is not None and not isinstance(value, dict):
            raise ConfigurationError(
                f"{kind} '{name}': expected a mapping, got {type(value).__name__}",
                entity=name,
            )
        return cls(name=name, body=copy.deepcopy(value))


# ── Services ────────────────────────────────────────────────────


def _as_list(value: Any, *, service: str, key: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    raise ConfigurationError(
        f"Service '{service}': '{key}' must be a list, got {type(value).__name__}",
        entity=service,
    )


def _as_list_or_map(value: Any, *, service: str, key: str) -> list[Any] | dict[str, Any]:
    if value is None:
        return []
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return list(value)
    raise ConfigurationError(
        f"Service '{service}': '{key}' must be a list or mapping, got {type(value).__name__}",
        entity=service,
    )


@dataclass
class Service:
    """One compose service with typed reference fields."""

    TYPED_KEYS: ClassVar[tuple[str, ...]] = (
        "image", "build", "depends_on", "links", "volumes_from", "network_mode",
        "networks", "volumes", "configs", "secrets", "ports", "privileged", "cap_add",
    )

    name: str
    image: str | None = None
    build: Any = None
    depends_on: list[str] | dict[str, Any] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    volumes_from: list[str] = field(default_factory=list)
    network_mode: str | None = None
    networks: list[str] | dict[str, Any] = field(default_factory=list)
    volumes: list[Any] = field(default_factory=list)
    configs: list[Any] = field(default_factory=list)
    secrets: list[Any] = field(default_factory=list)
    ports: list[Any] = field(default_factory=list)
    privileged: Any = False
    cap_add: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    key_order: list[str] = field(default_factory=list)

    @property
    def has_build(self) -> bool:
        return "build" in self.key_order

    @property
    def image_optional(self) -> bool:
        return self.extra.get(OPTIONAL_IMAGE_KEY) is True

    @classmethod
    def from_mapping(cls, name: str, data: Any) -> Service:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Service '{name}': expected a mapping, got {type(data).__name__}",
                entity=name,
            )

        image = data.get("image")
        network_mode = data.get("network_mode")
        svc = cls(
            name=name,
            image=str(image) if image is not None else None,
            build=copy.deepcopy(data.get("build")),
            depends_on=_as_list_or_map(data.get("depends_on"), service=name, key="depends_on"),
            links=[str(v) for v in _as_list(data.get("links"), service=name, key="links")],
            volumes_from=[
                str(v) for v in _as_list(data.get("volumes_from"), service=name, key="volumes_from")
            ],
            network_mode=str(network_mode) if network_mode is not None else None,
            networks=_as_list_or_map(data.get("networks"), service=name, key="networks"),
            volumes=copy.deepcopy(_as_list(data.get("volumes"), service=name, key="volumes")),
            configs=copy.deepcopy(_as_list(data.get("configs"), service=name, key="configs")),
            secrets=copy.deepcopy(_as_list(data.get("secrets"), service=name, key="secrets")),
            ports=copy.deepcopy(_as_list(data.get("ports"), service=name, key="ports")),
            privileged=data.get("privileged", False),
            cap_add=[str(v) for v in _as_list(data.get("cap_add"), service=name, key="cap_add")],
            key_order=[str(k) for k in data],
        )
        for key, value in data.items():
            if key not in cls.TYPED_KEYS:
                svc.extra[key] = copy.deepcopy(value)
        return svc

    def to_mapping(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in self.key_order:
            if key in self.TYPED_KEYS:
                out[key] = copy.deepcopy(getattr(self, key))
            elif key in self.extra:
                out[key] = copy.deepcopy(self.extra[key])
        # Keys added after parsing go last
        for key, value in self.extra.items():
            if key not in out:
                out[key] = copy.deepcopy(value)
        if self.image is not None and "image" not in out:
            out["image"] = self.image
        return out

    # ── References ──────────────────────────────────────────────

    def iter_references(self) -> Iterator[Reference]:
        """Every reference this service makes to another entity."""
        for dep in self.depends_on:
            yield Reference("service", str(dep), "depends_on")

        for link in self.links:
            yield Reference("service", link.split(":", 1)[0], "links")

        for entry in self.volumes_from:
            if not entry.startswith("container:"):
                yield Reference("service", entry.split(":", 1)[0], "volumes_from")

        if self.network_mode and self.network_mode.startswith("service:"):
            yield Reference("service", self.network_mode.split(":", 1)[1], "network_mode")

        for net in self.networks:
            yield Reference("network", str(net), "networks")

        for idx, entry in enumerate(self.volumes):
            kind, source = mount_source(entry)
            if kind == "volume" and source:
                yield Reference("volume", source, f"volumes[{idx}]")

        for idx, entry in enumerate(self.configs):
            ref = _ref_name(entry)
            if ref:
                yield Reference("config", ref, f"configs[{idx}]")

        for idx, entry in enumerate(self.secrets):
            ref = _ref_name(entry)
            if ref:
                yield Reference("secret", ref, f"secrets[{idx}]")

    def rewrite_references(self, rename: Renamer) -> None:
        """Rewrite every reference through ``rename(kind, name) → new_name``.

        ``rename`` returns the name unchanged for entities it does not own
        (host paths and container: references are never passed to it).
        """
        if isinstance(self.depends_on, dict):
            self.depends_on = {rename("service", str(k)): v for k, v in self.depends_on.items()}
        else:
            self.depends_on = [rename("service", str(d)) for d in self.depends_on]

        links: list[str] = []
        for link in self.links:
            target, sep, alias = link.partition(":")
            links.append(f"{rename('service', target)}{sep}{alias}")
        self.links = links

        volumes_from: list[str] = []
        for entry in self.volumes_from:
            if entry.startswith("container:"):
                volumes_from.append(entry)
                continue
            target, sep, mode = entry.partition(":")
            volumes_from.append(f"{rename('service', target)}{sep}{mode}")
        self.volumes_from = volumes_from

        if self.network_mode and self.network_mode.startswith("service:"):
            target = self.network_mode.split(":", 1)[1]
            self.network_mode = f"service:{rename('service', target)}"

        if isinstance(self.networks, dict):
            self.networks = {rename("network", str(k)): v for k, v in self.networks.items()}
        else:
            self.networks = [rename("network", str(n)) for n in self.networks]

        mounts: list[Any] = []
        for entry in self.volumes:
            kind, source = mount_source(entry)
            if kind == "volume" and source:
                new_source = rename("volume", source)
                if new_source != source:
                    entry = _rewrite_mount(entry, new_source)
            mounts.append(entry)
        self.volumes = mounts

        self.configs = [self._rewrite_named(e, "config", rename) for e in self.configs]
        self.secrets = [self._rewrite_named(e, "secret", rename) for e in self.secrets]

    @staticmethod
    def _rewrite_named(entry: Any, kind: str, rename: Renamer) -> Any:
        if isinstance(entry, str):
            return rename(kind, entry)
        if isinstance(entry, dict) and entry.get("source"):
            updated = dict(entry)
            updated["source"] = rename(kind, str(entry["source"]))
            return updated
        return entry


# ── Document ────────────────────────────────────────────────────


@dataclass
class ComposeDocument:
    """A whole compose manifest.

    ``scalars`` holds top-level scalar fields (``version``, ``name``...),
    ``extensions`` the ``x-*`` blocks and ``extra`` any other top-level
    key the system does not interpret.
    """

    scalars: dict[str, Any] = field(default_factory=dict)
    services: dict[str, Service] = field(default_factory=dict)
    networks: dict[str, Resource] = field(default_factory=dict)
    volumes: dict[str, Resource] = field(default_factory=dict)
    configs: dict[str, Resource] = field(default_factory=dict)
    secrets: dict[str, Resource] = field(default_factory=dict)
    extensions: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ComposeDocument:
        doc = cls()
        for key, value in data.items():
            key = str(key)
            if key == "services":
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ConfigurationError("'services' must be a mapping", entity="services")
                for name, body in value.items():
                    doc.services[str(name)] = Service.from_mapping(str(name), body)
            elif key in ENTITY_COLLECTIONS:
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ConfigurationError(f"'{key}' must be a mapping", entity=key)
                target = doc.collection(key)
                for name, body in value.items():
                    target[str(name)] = Resource.from_value(str(name), body, kind=key[:-1])
            elif key.startswith("x-"):
                doc.extensions[key] = copy.deepcopy(value)
            elif isinstance(value, (dict, list)):
                doc.extra[key] = copy.deepcopy(value)
            else:
                doc.scalars[key] = value
        return doc

    @classmethod
    def from_yaml(cls, text: str, *, source: str = "manifest") -> ComposeDocument:
        return cls.from_mapping(parse_compose_text(text, source=source))

    def collection(self, name: str) -> dict[str, Any]:
        """Entity collection by top-level key (``services``, ``networks``...)."""
        if name not in ENTITY_COLLECTIONS:
            raise KeyError(name)
        return getattr(self, name)

    def declared(self, kind: str) -> dict[str, Any]:
        """Entities declared for a reference kind (``service``, ``volume``...)."""
        return self.collection(KIND_COLLECTIONS[kind])

    def iter_references(self) -> Iterator[tuple[str, Reference]]:
        """(service name, reference) for every reference in the document."""
        for name, svc in self.services.items():
            for ref in svc.iter_references():
                yield name, ref

    def image_references(self) -> dict[str, list[str]]:
        """Distinct image reference → services using it, in document order."""
        images: dict[str, list[str]] = {}
        for name, svc in self.services.items():
            if svc.image:
                images.setdefault(svc.image, []).append(name)
        return images

    def to_mapping(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, value in self.scalars.items():
            out[key] = value
        if self.services:
            out["services"] = {n: s.to_mapping() for n, s in self.services.items()}
        for key in ENTITY_COLLECTIONS[1:]:
            coll = self.collection(key)
            if coll:
                out[key] = {n: r.to_value() for n, r in coll.items()}
        for key, value in self.extra.items():
            out[key] = copy.deepcopy(value)
        for key, value in self.extensions.items():
            out[key] = copy.deepcopy(value)
        return out

    def to_yaml(self) -> str:
        return dump_yaml(self.to_mapping())

    def copy(self) -> ComposeDocument:
        return copy.deepcopy(self)
