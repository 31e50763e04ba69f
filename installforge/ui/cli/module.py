"""
CLI commands for the module catalog.

Thin wrappers over ``installforge.core.services.catalog`` and the
catalog loader.
"""

from __future__ import annotations

import json
from pathlib import Path

import click

from installforge.core.config.catalog_loader import load_catalog
from installforge.core.errors import ForgeError
from installforge.core.services import catalog
from installforge.ui.cli.helpers import fail, open_store


@click.group()
def module() -> None:
    """Module catalog — list, load, publish."""


@module.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include inactive modules.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def module_list(ctx: click.Context, show_all: bool, as_json: bool) -> None:
    """List modules and their versions."""
    store = open_store(ctx)
    rows = []
    for mod in store.list_modules(active_only=not show_all):
        versions = store.list_versions(mod.id)
        rows.append({
            "id": mod.id,
            "name": mod.name,
            "active": mod.active,
            "versions": [
                {"version": v.version, "published": v.published} for v in versions
            ],
        })

    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No modules in the catalog.")
        return
    for row in rows:
        suffix = "" if row["active"] else " (inactive)"
        click.secho(f"🧩 {row['name']}{suffix}", fg="cyan", bold=True)
        for v in row["versions"]:
            marker = "✅ published" if v["published"] else "📝 draft"
            click.echo(f"     {v['version']:<12} {marker}")


@module.command("load")
@click.argument("catalog_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def module_load(ctx: click.Context, catalog_file: str, as_json: bool) -> None:
    """Import modules, versions and projects from CATALOG_FILE."""
    try:
        result = load_catalog(Path(catalog_file), open_store(ctx))
    except ForgeError as e:
        fail(e, as_json)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return
    click.secho(
        f"✅ Loaded {len(result.modules)} module(s), {len(result.versions)} version(s), "
        f"{len(result.projects)} project(s)",
        fg="green",
    )
    for name, project_id in result.projects.items():
        click.echo(f"   project {name}: {project_id}")


@module.command("publish")
@click.argument("module_ref")
@click.argument("version")
@click.pass_context
def module_publish(ctx: click.Context, module_ref: str, version: str) -> None:
    """Publish VERSION of MODULE_REF (name or id).  This cannot be undone."""
    try:
        published = catalog.publish_version(open_store(ctx), module_ref, version)
    except ForgeError as e:
        fail(e)
    click.secho(f"✅ Published {module_ref} {published.version} at {published.published_at}", fg="green")
