"""
fleet-migrate — runtime config loader.

File: src/fleet_migrate/config/loader.py
Last updated: 2026-10-19

Purpose
- Build the effective runtime config from four layers: defaults, ``fleet-migrate.toml``,
  ``FLEET_*`` environment variables, and CLI flags (later layers win).

Functional requirements
- Path settings read from the file are resolved against the file's directory.
- Environment values are coerced to the setting's type; a bad value is a load error.
- A missing default config file is not an error; a missing explicit one is.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from fleet_migrate.config.schema import (
    SETTINGS,
    Setting,
    assert_valid_config,
    default_config,
    merge_config,
)
from fleet_migrate.constants import DEFAULT_CONFIG_FILE

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """The config file or an override could not be read or coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Merge the layers and validate; bad input raises a config load or validation error."""

    explicit = config_path is not None
    path = Path(config_path if explicit else Path.cwd() / DEFAULT_CONFIG_FILE)
    path = path.expanduser().resolve()

    config = assert_valid_config(merge_config(default_config(), read_config_file(path, explicit)))
    config = merge_config(config, env_overrides(os.environ if environ is None else environ))
    config = merge_config(config, _cli_layer(cli_overrides or {}))
    return assert_valid_config(config)


def read_config_file(path: Path, required: bool) -> dict[str, Any]:
    """Parse ``path`` as TOML with its path settings made absolute."""

    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        if required:
            raise ConfigLoadError(f"config file not found: {path}") from exc
        return {}
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc
    try:
        layer = tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc

    for setting in SETTINGS:
        table = layer.get(setting.table)
        if setting.kind != "path" or not isinstance(table, dict):
            continue
        value = table.get(setting.key)
        if isinstance(value, str) and value.strip():
            table[setting.key] = _anchor(value.strip(), path.parent)
    return layer


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """One override per ``FLEET_<TABLE>_<KEY>`` variable that is set."""

    layer: dict[str, dict[str, Any]] = {}
    for setting in SETTINGS:
        raw = environ.get(setting.env_name)
        if raw is not None:
            layer.setdefault(setting.table, {})[setting.key] = _from_env(setting, raw.strip())
    return layer


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _from_env(setting: Setting, raw: str) -> object:
    where = f"{setting.env_name} -> {setting.dotted}"
    if setting.kind == "int":
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{where} must be an integer") from exc
    if setting.kind == "bool":
        if raw.lower() in _TRUTHY:
            return True
        if raw.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{where} must be a boolean (true/false/1/0/yes/no/on/off)")
    return raw


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, dict[str, Any]]:
    """``{"run.max_concurrency": 2}`` becomes ``{"run": {"max_concurrency": 2}}``; None is unset."""

    layer: dict[str, dict[str, Any]] = {}
    for dotted, value in overrides.items():
        if value is None:
            continue
        table, _, key = dotted.partition(".")
        if not table or not key:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        layer.setdefault(table, {})[key] = value
    return layer


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "read_config_file",
]
