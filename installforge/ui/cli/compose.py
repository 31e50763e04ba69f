"""
CLI commands for merging and linting compose manifests.

Thin wrappers over ``installforge.core.services.merger`` and ``linter``.
Each FILE is treated as one module, named after the file (or its
directory when the file is called docker-compose.y*ml / compose.y*ml).
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from installforge.core.errors import ConfigurationError, ForgeError
from installforge.core.services.linter import Severity, lint_merge
from installforge.core.services.merger import (
    MergeResult,
    ModuleInstance,
    derive_namespaces,
    merge_modules,
)
from installforge.ui.cli.helpers import fail, parse_vars

_GENERIC_NAMES = {"docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml"}


def _module_name(path: Path) -> str:
    if path.name in _GENERIC_NAMES and path.parent.name:
        return path.resolve().parent.name
    return path.stem


def _merge_files(
    files: tuple[str, ...],
    pairs: tuple[str, ...],
    vars_file: str | None,
    no_namespace: bool,
) -> MergeResult:
    variables = parse_vars(pairs, vars_file)
    paths = [Path(f) for f in files]
    names = [_module_name(p) for p in paths]
    if no_namespace and len(paths) > 1:
        raise ConfigurationError("--no-namespace only works with a single file")
    namespaces = [""] if no_namespace else derive_namespaces(names)

    instances = []
    for order, (path, name, namespace) in enumerate(zip(paths, names, namespaces, strict=True)):
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read {path}: {e}", entity=str(path)) from e
        instances.append(ModuleInstance(
            name=name, version="", namespace=namespace, compose=text,
            variables=dict(variables), order=order,
        ))
    return merge_modules(instances)


@click.group()
def compose() -> None:
    """Compose manifests — merge and lint."""


# ── Merge ───────────────────────────────────────────────────────


@compose.command("merge")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--var", "pairs", multiple=True, help="Variable KEY=VALUE (repeatable).")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="YAML/JSON variables.")
@click.option("--no-namespace", is_flag=True, help="Single file: do not prefix names.")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to a file instead of stdout.")
def merge(
    files: tuple[str, ...],
    pairs: tuple[str, ...],
    vars_file: str | None,
    no_namespace: bool,
    output: str | None,
) -> None:
    """Merge module manifests into one namespaced compose file."""
    try:
        result = _merge_files(files, pairs, vars_file, no_namespace)
    except ForgeError as e:
        fail(e)

    text = result.to_yaml()
    if output:
        Path(output).write_text(text, encoding="utf-8")
        click.secho(f"✅ Merged {len(files)} file(s) → {output}", fg="green")
    else:
        click.echo(text, nl=False)

    for item in result.unresolved:
        click.secho(
            f"⚠️  {item.module}: unresolved {item.text} at {item.location}", fg="yellow", err=True,
        )


# ── Lint ────────────────────────────────────────────────────────


@compose.command("lint")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--var", "pairs", multiple=True, help="Variable KEY=VALUE (repeatable).")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="YAML/JSON variables.")
@click.option("--no-namespace", is_flag=True, help="Single file: do not prefix names.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def lint(
    files: tuple[str, ...],
    pairs: tuple[str, ...],
    vars_file: str | None,
    no_namespace: bool,
    as_json: bool,
) -> None:
    """Merge, then check the result against the policy rules."""
    try:
        result = _merge_files(files, pairs, vars_file, no_namespace)
    except ForgeError as e:
        fail(e, as_json)

    report = lint_merge(result)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        sys.exit(1 if report.has_errors else 0)

    if not report.findings:
        click.secho("✅ No findings", fg="green")
        return

    for finding in report.findings:
        color = "red" if finding.severity == Severity.ERROR else "yellow"
        icon = "❌" if finding.severity == Severity.ERROR else "⚠️ "
        click.secho(f"{icon} {finding}", fg=color)

    click.echo()
    click.echo(f"   {len(report.errors)} error(s), {len(report.warnings)} warning(s)")
    if report.has_errors:
        sys.exit(1)
