"""
Policy linter — rule-table validation of a merged compose document.

Rules register by id with ``@register_rule``; the linter runs every
registered rule (no short-circuit) and never mutates the document.

Severity:
  ERROR    blocks the build before any image is resolved
  WARNING  advisory, attached to the build result

Findings are ordered by rule registration order, then document order.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from installforge.core.models.compose import DEFAULT_NETWORK, ComposeDocument
from installforge.core.services.interpolation import UnresolvedPlaceholder
from installforge.core.services.merger import MergeResult, ModuleInventory

logger = logging.getLogger(__name__)


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class LintFinding:
    """One rule violation."""

    severity: Severity
    rule: str
    location: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": self.severity.value,
            "rule": self.rule,
            "location": self.location,
            "message": self.message,
        }

    def __str__(self) -> str:
        return f"[{self.rule}] {self.location}: {self.message}"


@dataclass
class LintReport:
    """Ordered findings of one lint run."""

    findings: list[LintFinding] = field(default_factory=list)

    @property
    def errors(self) -> list[LintFinding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[LintFinding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def has_errors(self) -> bool:
        return any(f.severity == Severity.ERROR for f in self.findings)

    def error_summary(self) -> str:
        """All ERROR findings joined into one message."""
        errors = self.errors
        if not errors:
            return "no lint errors"
        return f"{len(errors)} lint error(s): " + "; ".join(str(f) for f in errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": not self.has_errors,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass
class LintContext:
    """Everything a rule may inspect (read-only)."""

    document: ComposeDocument
    unresolved: list[UnresolvedPlaceholder] = field(default_factory=list)
    modules: list[ModuleInventory] = field(default_factory=list)

    @classmethod
    def from_merge(cls, merge: MergeResult) -> LintContext:
        return cls(document=merge.document, unresolved=merge.unresolved, modules=merge.modules)


# ── Rule registry ───────────────────────────────────────────────


RuleCheck = Callable[[LintContext, "LintRule"], Iterable[LintFinding]]


@dataclass(frozen=True)
class LintRule:
    """A registered rule."""

    id: str
    severity: Severity
    description: str
    check: RuleCheck

    def finding(self, location: str, message: str, severity: Severity | None = None) -> LintFinding:
        return LintFinding(
            severity=severity or self.severity,
            rule=self.id,
            location=location,
            message=message,
        )


_RULES: dict[str, LintRule] = {}


def register_rule(
    rule_id: str,
    severity: Severity,
    description: str = "",
) -> Callable[[RuleCheck], RuleCheck]:
    """Decorator adding a check function to the rule table.

    Re-registering an id replaces the earlier rule in place.
    """

    def decorator(func: RuleCheck) -> RuleCheck:
        _RULES[rule_id] = LintRule(
            id=rule_id,
            severity=severity,
            description=description or (func.__doc__ or "").strip(),
            check=func,
        )
        return func

    return decorator


def unregister_rule(rule_id: str) -> None:
    _RULES.pop(rule_id, None)


def registered_rules() -> list[LintRule]:
    return list(_RULES.values())


# ── Port parsing ────────────────────────────────────────────────


@dataclass(frozen=True)
class PublishedPort:
    host_ip: str
    port: int
    protocol: str


_WILDCARD_ADDRESSES = {"", "0.0.0.0", "::", "[::]"}

_SHORT_PORT_RE = re.compile(
    r"^(?:(?P<ip>\[[^\]]+\]|[^:\[\]]+):)??"
    r"(?:(?P<host>[\d]+(?:-\d+)?)?:)?"
    r"(?P<container>\d+(?:-\d+)?)"
    r"(?:/(?P<proto>\w+))?$"
)


def _port_range(text: str) -> list[int]:
    if "-" in text:
        start, end = (int(p) for p in text.split("-", 1))
        return list(range(start, end + 1))
    return [int(text)]


def parse_published_ports(entry: Any) -> list[PublishedPort]:
    """Host-side ports published by one ``ports:`` entry.

    Entries without a host port (``"80"``) publish nothing fixed and
    yield an empty list, as do entries that cannot be parsed.
    """
    if isinstance(entry, dict):
        published = entry.get("published")
        if published in (None, ""):
            return []
        protocol = str(entry.get("protocol") or "tcp").lower()
        host_ip = str(entry.get("host_ip") or "")
        try:
            return [PublishedPort(host_ip, p, protocol) for p in _port_range(str(published))]
        except ValueError:
            return []

    if isinstance(entry, int):
        return []

    match = _SHORT_PORT_RE.match(str(entry).strip())
    if not match or not match.group("host"):
        return []
    protocol = (match.group("proto") or "tcp").lower()
    host_ip = match.group("ip") or ""
    return [PublishedPort(host_ip, p, protocol) for p in _port_range(match.group("host"))]


# ── Built-in rules ──────────────────────────────────────────────


@register_rule("no-build-directive", Severity.ERROR, "Services must not build images")
def _check_build(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for name, svc in ctx.document.services.items():
        if svc.has_build:
            yield rule.finding(
                f"services.{name}.build",
                f"service '{name}' declares 'build'; offline installers only ship prebuilt images",
            )


@register_rule("unresolved-variable", Severity.ERROR, "Every placeholder must resolve")
def _check_unresolved(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for item in ctx.unresolved:
        where = f"{item.module}:{item.location}" if item.module else item.location
        detail = f" ({item.message})" if item.message else ""
        yield rule.finding(
            where,
            f"variable '{item.variable}' has no value and no default in {item.text}{detail}",
        )


def _addresses_overlap(a: str, b: str) -> bool:
    return a == b or a in _WILDCARD_ADDRESSES or b in _WILDCARD_ADDRESSES


def _collect_ports(doc: ComposeDocument) -> dict[tuple[int, str], list[tuple[str, str]]]:
    """(port, protocol) → [(service, host_ip)] in document order."""
    published: dict[tuple[int, str], list[tuple[str, str]]] = {}
    for name, svc in doc.services.items():
        for entry in svc.ports:
            for port in parse_published_ports(entry):
                published.setdefault((port.port, port.protocol), []).append((name, port.host_ip))
    return published


@register_rule("port-collision", Severity.ERROR, "Host ports must be unique per address")
def _check_port_collision(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for (port, proto), users in _collect_ports(ctx.document).items():
        for i, (svc_a, ip_a) in enumerate(users):
            for svc_b, ip_b in users[i + 1:]:
                if svc_a != svc_b and _addresses_overlap(ip_a, ip_b):
                    yield rule.finding(
                        f"services.{svc_b}.ports",
                        f"host port {port}/{proto} on '{ip_b or '*'}' is already "
                        f"published by service '{svc_a}'",
                    )


@register_rule(
    "port-shared-across-addresses", Severity.WARNING,
    "Same host port bound on different addresses",
)
def _check_port_shared(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for (port, proto), users in _collect_ports(ctx.document).items():
        for i, (svc_a, ip_a) in enumerate(users):
            for svc_b, ip_b in users[i + 1:]:
                if svc_a != svc_b and not _addresses_overlap(ip_a, ip_b):
                    yield rule.finding(
                        f"services.{svc_b}.ports",
                        f"host port {port}/{proto} is also published by '{svc_a}' "
                        f"on a different address ({ip_a} vs {ip_b})",
                    )


@register_rule("dangling-reference", Severity.ERROR, "References must resolve")
def _check_dangling(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    doc = ctx.document
    for svc_name, ref in doc.iter_references():
        if ref.kind == "network" and ref.name == DEFAULT_NETWORK:
            continue
        if ref.name in doc.declared(ref.kind):
            continue
        yield rule.finding(
            f"services.{svc_name}.{ref.field}",
            f"{ref.kind} '{ref.name}' is not declared in the merged document",
        )


@register_rule(
    "missing-module-dependency", Severity.ERROR,
    "Declared module dependencies must be part of the build",
)
def _check_module_deps(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    present = {m.name for m in ctx.modules}
    for mod in ctx.modules:
        for dep in mod.dependencies:
            if dep.module in present:
                continue
            yield rule.finding(
                f"modules.{mod.name}",
                f"module '{mod.name}' depends on '{dep.module}'"
                + (f" ({dep.version})" if dep.version else "")
                + ", which is not part of this build"
                + (" (optional)" if dep.optional else ""),
                severity=Severity.WARNING if dep.optional else None,
            )


@register_rule("privileged-container", Severity.WARNING, "Privileged mode")
def _check_privileged(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for name, svc in ctx.document.services.items():
        if svc.privileged is True or str(svc.privileged).lower() == "true":
            yield rule.finding(
                f"services.{name}.privileged",
                f"service '{name}' runs privileged",
            )


@register_rule("capability-add", Severity.WARNING, "Added kernel capabilities")
def _check_cap_add(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for name, svc in ctx.document.services.items():
        if svc.cap_add:
            yield rule.finding(
                f"services.{name}.cap_add",
                f"service '{name}' adds capabilities: {', '.join(svc.cap_add)}",
            )


@register_rule("missing-image", Severity.ERROR, "Every service needs an image")
def _check_missing_image(ctx: LintContext, rule: LintRule) -> Iterator[LintFinding]:
    for name, svc in ctx.document.services.items():
        if not svc.image and not svc.has_build:
            yield rule.finding(
                f"services.{name}",
                f"service '{name}' has neither 'image' nor 'build'",
            )


# ── Linter ──────────────────────────────────────────────────────


class PolicyLinter:
    """Runs a rule table against a lint context.

    Args:
        rules: Explicit rule list; defaults to the registry at lint time.
    """

    def __init__(self, rules: list[LintRule] | None = None):
        self._rules = rules

    @property
    def rules(self) -> list[LintRule]:
        return list(self._rules) if self._rules is not None else registered_rules()

    def lint(self, ctx: LintContext) -> LintReport:
        report = LintReport()
        for rule in self.rules:
            report.findings.extend(rule.check(ctx, rule))
        logger.info(
            "Lint: %d error(s), %d warning(s)",
            len(report.errors), len(report.warnings),
        )
        return report


def lint_merge(merge: MergeResult, linter: PolicyLinter | None = None) -> LintReport:
    """Lint a merge result with the default (or given) linter."""
    return (linter or PolicyLinter()).lint(LintContext.from_merge(merge))
