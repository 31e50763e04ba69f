"""
CLI commands for installer builds.

``build project`` and ``build manifest`` run the build in this process
and wait for it; ``status``, ``list`` and ``history`` read the record
store and the build ledger.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from installforge.core.engine.orchestrator import BuildOrchestrator
from installforge.core.errors import ForgeError
from installforge.core.persistence.audit import BuildLedger
from installforge.core.services.catalog import resolve_project
from installforge.ui.cli.helpers import fail, open_store, parse_vars, settings_for

_STATUS_COLORS = {"queued": "white", "building": "cyan", "completed": "green", "failed": "red"}


def _orchestrator(ctx: click.Context, mock: bool) -> BuildOrchestrator:
    settings = settings_for(ctx)
    if mock:
        settings = settings.model_copy(update={"registry": "mock"})
    return BuildOrchestrator.from_settings(settings, store=open_store(ctx))


def _print_status(view: dict[str, Any]) -> None:
    status = view["status"]
    click.secho(f"📦 Build {view['build_id']}", fg="cyan", bold=True)
    if view.get("name"):
        click.echo(f"   Name:     {view['name']}")
    click.echo(f"   Type:     {view['type']}")
    click.echo("   Status:   ", nl=False)
    click.secho(status, fg=_STATUS_COLORS.get(status, "white"))
    click.echo(f"   Progress: {view['progress']}%")
    if view.get("error"):
        click.secho(f"   Error:    [{view['error_stage']}] {view['error']}", fg="red")
    if view.get("download_location"):
        click.echo(f"   Archive:  {view['download_location']}")
    for warning in view.get("warnings", []):
        click.secho(f"   ⚠️  [{warning['rule']}] {warning['location']}: {warning['message']}", fg="yellow")


def _run(ctx: click.Context, mock: bool, as_json: bool, **submit: Any) -> None:
    orchestrator = _orchestrator(ctx, mock)
    try:
        build_id = orchestrator.submit(**submit)
        if not as_json and not ctx.find_root().obj.get("quiet"):
            click.echo(f"⏳ Build {build_id} queued")
        view = orchestrator.wait(build_id)
    except ForgeError as e:
        fail(e, as_json)
    finally:
        orchestrator.shutdown()

    if as_json:
        click.echo(json.dumps(view, indent=2))
    else:
        _print_status(view)
    sys.exit(0 if view["status"] == "completed" else 1)


@click.group()
def build() -> None:
    """Installer builds — run, inspect, list."""


# ── Run ─────────────────────────────────────────────────────────


@build.command("project")
@click.argument("project")
@click.option("--var", "pairs", multiple=True, help="Variable KEY=VALUE (repeatable).")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="YAML/JSON variables.")
@click.option("--name", default="", help="Build name (default: project name).")
@click.option("--owner", default="", help="Build owner.")
@click.option("--mock", is_flag=True, help="Use the mock registry (no network).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def build_project(
    ctx: click.Context,
    project: str,
    pairs: tuple[str, ...],
    vars_file: str | None,
    name: str,
    owner: str,
    mock: bool,
    as_json: bool,
) -> None:
    """Build the installer for PROJECT (id or name)."""
    try:
        project_id = resolve_project(open_store(ctx), project).id
        variables = parse_vars(pairs, vars_file)
    except ForgeError as e:
        fail(e, as_json)
    _run(ctx, mock, as_json, project_id=project_id, variables=variables, name=name, owner=owner)


@build.command("manifest")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--var", "pairs", multiple=True, help="Variable KEY=VALUE (repeatable).")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="YAML/JSON variables.")
@click.option("--name", default="", help="Build name (default: file name).")
@click.option("--owner", default="", help="Build owner.")
@click.option("--mock", is_flag=True, help="Use the mock registry (no network).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def build_manifest(
    ctx: click.Context,
    file: str,
    pairs: tuple[str, ...],
    vars_file: str | None,
    name: str,
    owner: str,
    mock: bool,
    as_json: bool,
) -> None:
    """Build an installer from a single compose FILE (no namespacing)."""
    try:
        variables = parse_vars(pairs, vars_file)
    except ForgeError as e:
        fail(e, as_json)
    path = Path(file)
    _run(
        ctx, mock, as_json,
        manifest=path.read_text(encoding="utf-8"),
        variables=variables,
        name=name or path.stem,
        owner=owner,
    )


# ── Inspect ─────────────────────────────────────────────────────


@build.command("status")
@click.argument("build_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def build_status(ctx: click.Context, build_id: str, as_json: bool) -> None:
    """Show status and progress of BUILD_ID."""
    try:
        view = open_store(ctx).get_build(build_id).status_view()
    except ForgeError as e:
        fail(e, as_json)
    if as_json:
        click.echo(json.dumps(view, indent=2))
    else:
        _print_status(view)


@build.command("list")
@click.option("--owner", default=None, help="Only builds of this owner.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def build_list(ctx: click.Context, owner: str | None, as_json: bool) -> None:
    """List builds, newest first."""
    builds = open_store(ctx).list_builds(owner=owner)
    if as_json:
        click.echo(json.dumps([b.status_view() for b in builds], indent=2))
        return
    if not builds:
        click.echo("No builds yet.")
        return
    for b in builds:
        click.echo(f"{b.id}  ", nl=False)
        click.secho(f"{b.status.value:<10}", fg=_STATUS_COLORS.get(b.status.value, "white"), nl=False)
        click.echo(f" {b.progress:>3}%  {b.build_type:<8} {b.name}")


@build.command("history")
@click.option("-n", "count", default=20, type=int, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def build_history(ctx: click.Context, count: int, as_json: bool) -> None:
    """Show the most recent finished builds from the ledger."""
    entries = BuildLedger(settings_for(ctx).ledger_path).read_recent(count)
    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    if not entries:
        click.echo("No finished builds recorded.")
        return
    for e in entries:
        color = "green" if e.status == "completed" else "red"
        click.secho(f"{e.timestamp}  {e.status:<9}", fg=color, nl=False)
        detail = e.archive if e.status == "completed" else f"[{e.error_stage}] {e.error}"
        click.echo(f" {e.build_id}  {e.duration_ms}ms  {detail}")
