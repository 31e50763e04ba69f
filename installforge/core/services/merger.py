"""
Compose merger — N module manifests → one conflict-free document.

Per module instance, in order:

  1. Parse the manifest text.
  2. Interpolate placeholders with the instance's effective variables.
  3. Prefix every owned service/network/volume/config/secret key with
     ``{namespace}__``.
  4. Rewrite every in-document reference to a renamed entity.

The renamed collections are then unioned.  Two instances never share a
namespace, so the union of owned keys is disjoint by construction;
external entities keep their key and collapse when identical.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from installforge.core.errors import (
    ConfigurationError,
    DuplicateNamespace,
    IncompatibleSchemaVersion,
)
from installforge.core.models.compose import (
    ENTITY_COLLECTIONS,
    KIND_COLLECTIONS,
    ComposeDocument,
    Resource,
    parse_compose_text,
)
from installforge.core.models.module import ModuleDependency
from installforge.core.services.interpolation import UnresolvedPlaceholder, interpolate_document

logger = logging.getLogger(__name__)

NAMESPACE_SEPARATOR = "__"

# Top-level keys that pull content from outside the document
_FORBIDDEN_TOP_LEVEL = {"include"}


# ── Namespaces ──────────────────────────────────────────────────


def slugify(name: str) -> str:
    """Lowercase *name* and collapse anything outside [a-z0-9] into '-'."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "module"


def derive_namespaces(names: list[str]) -> list[str]:
    """Namespaces for an ordered list of module names.

    A name that occurs more than once gets its 1-based position as a
    suffix on every occurrence, so ``["db", "web", "db"]`` yields
    ``["db-1", "web", "db-3"]``.  A suffix already taken by another
    module's name is bumped until free: ``["db", "db", "db-1"]`` yields
    ``["db-2", "db-3", "db-1"]``.
    """
    slugs = [slugify(n) for n in names]
    counts: dict[str, int] = {}
    for slug in slugs:
        counts[slug] = counts.get(slug, 0) + 1

    taken = {slug for slug in slugs if counts[slug] == 1}
    namespaces: list[str] = []
    for pos, slug in enumerate(slugs, start=1):
        if counts[slug] == 1:
            namespaces.append(slug)
            continue
        n = pos
        while f"{slug}-{n}" in taken:
            n += 1
        taken.add(f"{slug}-{n}")
        namespaces.append(f"{slug}-{n}")
    return namespaces


def prefixed(namespace: str, name: str) -> str:
    if not namespace:
        return name
    return f"{namespace}{NAMESPACE_SEPARATOR}{name}"


# ── Input / output types ────────────────────────────────────────


@dataclass
class ModuleInstance:
    """One enabled module version prepared for merging."""

    name: str
    version: str
    namespace: str
    compose: str
    variables: dict[str, Any] = field(default_factory=dict)
    resources: list[str] = field(default_factory=list)
    resource_root: str = ""
    dependencies: list[ModuleDependency] = field(default_factory=list)
    order: int = 0


@dataclass
class ModuleInventory:
    """What one module contributed to the merged document."""

    name: str
    version: str
    namespace: str
    order: int
    dependencies: list[ModuleDependency] = field(default_factory=list)
    services: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "namespace": self.namespace,
            "order": self.order,
            "dependencies": [d.model_dump() for d in self.dependencies],
            "services": list(self.services),
        }


@dataclass
class MergeResult:
    """Output of ``merge_modules``."""

    document: ComposeDocument
    unresolved: list[UnresolvedPlaceholder] = field(default_factory=list)
    modules: list[ModuleInventory] = field(default_factory=list)
    service_modules: dict[str, str] = field(default_factory=dict)   # merged service → module

    def to_yaml(self) -> str:
        return self.document.to_yaml()


# ── Scalar compatibility ────────────────────────────────────────


def _version_key(value: Any) -> tuple[int, ...] | str:
    text = str(value).strip()
    try:
        parts = [int(p) for p in text.split(".")]
    except ValueError:
        return text
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def scalars_compatible(key: str, a: Any, b: Any) -> bool:
    """Whether two top-level scalar values may coexist.

    ``version`` compares numerically ("3" ≡ "3.0"); anything else by value.
    """
    if key == "version":
        return _version_key(a) == _version_key(b)
    return a == b


# ── Per-module rewriting ────────────────────────────────────────


def _rename_document(doc: ComposeDocument, namespace: str, module: str) -> ComposeDocument:
    """Return a copy of *doc* with owned keys prefixed and references rewritten."""
    owned: dict[str, set[str]] = {}
    for kind, coll_name in KIND_COLLECTIONS.items():
        coll = doc.collection(coll_name)
        if kind == "service":
            owned[kind] = set(coll)
        else:
            owned[kind] = {n for n, r in coll.items() if not r.external}

    def rename(kind: str, name: str) -> str:
        if name in owned.get(kind, ()):
            return prefixed(namespace, name)
        return name

    out = ComposeDocument(scalars=dict(doc.scalars), extra=copy.deepcopy(doc.extra))

    for name, svc in doc.services.items():
        svc = copy.deepcopy(svc)
        svc.name = rename("service", name)
        svc.rewrite_references(rename)
        out.services[svc.name] = svc

    for coll_name in ENTITY_COLLECTIONS[1:]:
        kind = coll_name[:-1]
        target = out.collection(coll_name)
        for name, res in doc.collection(coll_name).items():
            new_name = rename(kind, name)
            target[new_name] = Resource(name=new_name, body=res.to_value())

    for key, value in doc.extensions.items():
        new_key = f"x-{prefixed(namespace, key[2:])}" if namespace else key
        out.extensions[new_key] = copy.deepcopy(value)

    logger.debug(
        "Renamed module '%s' into namespace '%s' (%d services)",
        module, namespace, len(out.services),
    )
    return out


def prepare_module(
    instance: ModuleInstance,
) -> tuple[ComposeDocument, list[UnresolvedPlaceholder]]:
    """Parse, interpolate and namespace one module's manifest."""
    data = parse_compose_text(instance.compose, source=f"module '{instance.name}'")

    for key in _FORBIDDEN_TOP_LEVEL:
        if key in data:
            raise ConfigurationError(
                f"Module '{instance.name}': top-level '{key}' is not supported "
                "(it references content outside the manifest)",
                entity=instance.name,
            )

    data, unresolved = interpolate_document(data, instance.variables, module=instance.name)

    try:
        doc = ComposeDocument.from_mapping(data)
    except ConfigurationError as e:
        raise ConfigurationError(
            f"Module '{instance.name}': {e.message}", entity=e.entity or instance.name,
        ) from e

    return _rename_document(doc, instance.namespace, instance.name), unresolved


# ── Union ───────────────────────────────────────────────────────


def _union_scalars(merged: ComposeDocument, part: ComposeDocument, module: str) -> None:
    for key, value in part.scalars.items():
        if key not in merged.scalars:
            merged.scalars[key] = value
            continue
        if not scalars_compatible(key, merged.scalars[key], value):
            raise IncompatibleSchemaVersion(
                f"Module '{module}' declares {key}={value!r}, "
                f"incompatible with {merged.scalars[key]!r} from an earlier module",
                entity=module,
            )


def _union_collection(
    merged: dict[str, Any],
    part: dict[str, Any],
    *,
    coll_name: str,
    module: str,
) -> None:
    for name, entity in part.items():
        existing = merged.get(name)
        if existing is None:
            merged[name] = entity
            continue
        external = (
            isinstance(existing, Resource) and isinstance(entity, Resource)
            and existing.external and entity.external
        )
        if external:
            if existing.body != entity.body:
                raise ConfigurationError(
                    f"Module '{module}': external {coll_name[:-1]} '{name}' "
                    "is declared differently by another module",
                    entity=name,
                )
            continue
        raise ConfigurationError(
            f"Module '{module}': {coll_name[:-1]} '{name}' collides with "
            "an entity from another module",
            entity=name,
        )


def _union_extra(merged: ComposeDocument, part: ComposeDocument, module: str) -> None:
    for key, value in part.extra.items():
        if key in merged.extra and merged.extra[key] != value:
            raise ConfigurationError(
                f"Module '{module}': top-level '{key}' conflicts with another module",
                entity=key,
            )
        merged.extra[key] = value
    for key, value in part.extensions.items():
        if key in merged.extensions and merged.extensions[key] != value:
            raise ConfigurationError(
                f"Module '{module}': extension '{key}' conflicts with another module",
                entity=key,
            )
        merged.extensions[key] = value


def merge_modules(instances: list[ModuleInstance]) -> MergeResult:
    """Merge module instances into one document.

    Instances are processed in ``order`` (stable for ties).

    Raises:
        ConfigurationError: Unparseable manifest, ``include``, colliding
            keys or differing external declarations.
        IncompatibleSchemaVersion: Conflicting top-level scalar fields.
        DuplicateNamespace: Two instances share a namespace.
    """
    ordered = sorted(instances, key=lambda i: i.order)

    seen: dict[str, str] = {}
    for inst in ordered:
        if inst.namespace in seen:
            raise DuplicateNamespace(
                f"Namespace '{inst.namespace}' is used by both "
                f"'{seen[inst.namespace]}' and '{inst.name}'",
                entity=inst.namespace,
            )
        seen[inst.namespace] = inst.name

    result = MergeResult(document=ComposeDocument())
    merged = result.document

    for inst in ordered:
        part, unresolved = prepare_module(inst)
        result.unresolved.extend(unresolved)

        _union_scalars(merged, part, inst.name)
        for coll_name in ENTITY_COLLECTIONS:
            _union_collection(
                merged.collection(coll_name),
                part.collection(coll_name),
                coll_name=coll_name,
                module=inst.name,
            )
        _union_extra(merged, part, inst.name)

        for svc_name in part.services:
            result.service_modules[svc_name] = inst.name
        result.modules.append(ModuleInventory(
            name=inst.name,
            version=inst.version,
            namespace=inst.namespace,
            order=inst.order,
            dependencies=list(inst.dependencies),
            services=list(part.services),
        ))

    logger.info(
        "Merged %d module(s): %d services, %d unresolved placeholder(s)",
        len(ordered), len(merged.services), len(result.unresolved),
    )
    return result


def merge_manifest(
    manifest: str,
    variables: dict[str, Any] | None = None,
    *,
    name: str = "manifest",
) -> MergeResult:
    """Run a single ad-hoc manifest through the merger without prefixing."""
    return merge_modules([
        ModuleInstance(
            name=name,
            version="",
            namespace="",
            compose=manifest,
            variables=dict(variables or {}),
        ),
    ])
