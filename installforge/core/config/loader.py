"""
Settings loader — reads installforge.yml into ForgeSettings.

Lookup order for each setting (highest first):
    IFG_* environment variable  >  installforge.yml  >  built-in default

Relative paths in the file are resolved against the file's directory;
relative paths from the environment against the current directory.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from installforge.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTINGS_FILE = "installforge.yml"

# Environment variable → settings field
ENV_OVERRIDES: dict[str, str] = {
    "IFG_DATA_DIR": "data_dir",
    "IFG_OUTPUT_DIR": "output_dir",
    "IFG_WORK_DIR": "work_dir",
    "IFG_STORE_FILE": "store_file",
    "IFG_CATALOG": "catalog_file",
    "IFG_MAX_CONCURRENT_BUILDS": "max_concurrent_builds",
    "IFG_IMAGE_WORKERS": "image_workers",
    "IFG_IMAGE_TIMEOUT": "image_timeout",
    "IFG_SIGNING_KEY": "signing_key",
    "IFG_SIGNING_KEY_PASSPHRASE": "signing_key_passphrase",
    "IFG_REGISTRY": "registry",
}

_PATH_FIELDS = ("data_dir", "output_dir", "work_dir", "store_file", "catalog_file", "signing_key")


class ForgeSettings(BaseModel):
    """Runtime settings for the pipeline, CLI and web server."""

    data_dir: str = ".installforge"
    output_dir: str = ""        # default: <data_dir>/output
    work_dir: str = ""          # default: <data_dir>/work
    store_file: str = ""        # default: <data_dir>/store.json
    catalog_file: str = ""      # optional module catalog loaded at startup

    max_concurrent_builds: int = Field(default=2, ge=1)
    image_workers: int = Field(default=4, ge=1)
    image_timeout: float = Field(default=600.0, gt=0)

    signing_key: str = ""
    signing_key_passphrase: str = ""
    registry: Literal["docker", "mock"] = "docker"

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir) if self.output_dir else self.data_path / "output"

    @property
    def work_path(self) -> Path:
        return Path(self.work_dir) if self.work_dir else self.data_path / "work"

    @property
    def store_path(self) -> Path:
        return Path(self.store_file) if self.store_file else self.data_path / "store.json"

    @property
    def ledger_path(self) -> Path:
        return self.data_path / "builds.ndjson"


def find_settings_file(start_dir: Path | None = None) -> Path | None:
    """Search for installforge.yml from *start_dir* (default: cwd) upward."""
    current = (start_dir or Path.cwd()).resolve()
    while True:
        candidate = current / SETTINGS_FILE
        if candidate.is_file():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def read_yaml_mapping(path: Path) -> dict[str, Any]:
    """Read a YAML file that must contain a mapping (empty file → {}).

    Raises:
        ConfigurationError: Unreadable file, invalid YAML or not a mapping.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}", entity=str(path)) from e
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", entity=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}", entity=str(path),
        )
    return data


def _anchor(data: dict[str, Any], base: Path) -> dict[str, Any]:
    for key in _PATH_FIELDS:
        value = data.get(key)
        if value and not Path(str(value)).expanduser().is_absolute():
            data[key] = str(base / str(value))
        elif value:
            data[key] = str(Path(str(value)).expanduser())
    return data


def load_settings(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    search: bool = True,
) -> ForgeSettings:
    """Load settings from *path* (or the discovered file) plus IFG_* overrides.

    Args:
        path: Explicit settings file; must exist.
        env: Environment to read overrides from (default: os.environ).
        search: Look for installforge.yml upward from cwd when *path* is None.

    Raises:
        ConfigurationError: Missing explicit file, invalid YAML or values.
    """
    env = os.environ if env is None else env
    data: dict[str, Any] = {}
    base = Path.cwd()

    if path is not None and not path.is_file():
        raise ConfigurationError(f"Settings file not found: {path}", entity=str(path))
    if path is None and search:
        path = find_settings_file()

    if path is not None:
        logger.debug("Loading settings from %s", path)
        data = read_yaml_mapping(path)
        # The file may nest everything under "installforge:"
        if isinstance(data.get("installforge"), dict):
            data = dict(data["installforge"])
        data = _anchor(data, path.parent.resolve())

    overrides = {field: env[var] for var, field in ENV_OVERRIDES.items() if env.get(var)}
    if overrides:
        logger.debug("Settings overridden from environment: %s", ", ".join(sorted(overrides)))
        data.update(_anchor(overrides, base))

    try:
        settings = ForgeSettings.model_validate(data)
    except ValidationError as e:
        err = e.errors()[0]
        where = ".".join(str(p) for p in err["loc"])
        raise ConfigurationError(f"Invalid setting '{where}': {err['msg']}", entity=where) from e

    logger.info(
        "Settings: data_dir=%s registry=%s max_concurrent_builds=%d",
        settings.data_dir, settings.registry, settings.max_concurrent_builds,
    )
    return settings
