"""
Shared helpers for CLI command groups — settings, store and error output.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml

from installforge.core.config.loader import ForgeSettings, load_settings, read_yaml_mapping
from installforge.core.errors import ConfigurationError, ForgeError
from installforge.core.persistence.record_store import JsonFileRecordStore


def settings_for(ctx: click.Context) -> ForgeSettings:
    """Settings for this invocation, loaded once per process."""
    obj = ctx.find_root().obj
    if "settings" not in obj:
        obj["settings"] = load_settings(obj.get("config_path"))
    return obj["settings"]


def open_store(ctx: click.Context) -> JsonFileRecordStore:
    return JsonFileRecordStore(settings_for(ctx).store_path)


def _scalar(value: str) -> Any:
    try:
        parsed = yaml.safe_load(value)
    except yaml.YAMLError:
        return value
    return value if isinstance(parsed, (dict, list)) or parsed is None else parsed


def parse_vars(pairs: tuple[str, ...], vars_file: str | None = None) -> dict[str, Any]:
    """``--var KEY=VALUE`` pairs layered over an optional YAML/JSON file.

    Values are typed like YAML scalars (``8080`` → int, ``true`` → bool).
    """
    variables: dict[str, Any] = {}
    if vars_file:
        variables.update(read_yaml_mapping(Path(vars_file)))
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"--var expects KEY=VALUE, got '{pair}'", entity=pair)
        variables[key] = _scalar(value)
    return variables


def fail(err: ForgeError, as_json: bool = False) -> NoReturn:
    """Print a pipeline error and exit 1."""
    if as_json:
        click.echo(json.dumps({"ok": False, **err.to_dict()}, indent=2))
    else:
        click.secho(f"❌ [{err.stage}] {err.message}", fg="red", err=True)
    sys.exit(1)
