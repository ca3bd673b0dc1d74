"""
fleet-migrate — runtime configuration schema and validation.

File: src/fleet_migrate/config/schema.py
Last updated: 2026-10-19

Purpose
- Declare every runtime setting once: its table, type, default, and environment name.
- Validate a merged payload into the effective config or a list of structured issues.

Functional requirements
- Every problem is reported with its dotted path; validation never stops at the first one.
- Unknown keys are rejected; keys that look like credentials get a dedicated message.
- ``meta.schema_version`` mismatches explain which side needs upgrading.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from fleet_migrate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_LOG_DIRECTORY,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_WORK_DIRECTORY,
)

ENV_PREFIX: Final[str] = "FLEET_"
REVIEW_PROVIDERS: Final[tuple[str, ...]] = ("github", "none")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
LOG_FORMATS: Final[tuple[str, ...]] = ("json", "text")

SettingKind = Literal["text", "path", "int", "bool", "choice"]
SettingValue = str | int | bool


@dataclass(frozen=True, slots=True)
class Setting:
    """One key of one table in ``fleet-migrate.toml``."""

    table: str
    key: str
    kind: SettingKind
    default: SettingValue
    choices: tuple[str, ...] = ()
    minimum: int | None = None
    fold_upper: bool = False

    @property
    def dotted(self) -> str:
        return f"{self.table}.{self.key}"

    @property
    def env_name(self) -> str:
        return f"{ENV_PREFIX}{self.table.upper()}_{self.key.upper()}"


SETTINGS: Final[tuple[Setting, ...]] = (
    Setting("run", "work_directory", "path", DEFAULT_WORK_DIRECTORY),
    Setting("run", "max_concurrency", "int", DEFAULT_MAX_CONCURRENCY, minimum=1),
    Setting("git", "executable", "text", "git"),
    Setting("git", "remote", "text", "origin"),
    Setting("review", "provider", "choice", "github", choices=REVIEW_PROVIDERS),
    Setting("review", "gh_executable", "text", "gh"),
    Setting("observability", "log_level", "choice", "INFO", choices=LOG_LEVELS, fold_upper=True),
    Setting("observability", "log_format", "choice", "text", choices=LOG_FORMATS),
    Setting("observability", "log_dir", "path", DEFAULT_LOG_DIRECTORY),
    Setting("observability", "redact_secrets", "bool", True),
)

_META_TABLE: Final[str] = "meta"
_TABLES: Final[tuple[str, ...]] = tuple(dict.fromkeys(s.table for s in SETTINGS))

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "passphrase", "credential", "credentials", "auth"}
)
_SECRET_COMPOUNDS: Final[tuple[str, ...]] = ("apikey", "privatekey", "accesskey")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Either the normalized config, or every issue found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when the effective runtime config is invalid."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- <root>: unknown failure"))


def settings_for(table: str) -> tuple[Setting, ...]:
    return tuple(setting for setting in SETTINGS if setting.table == table)


def default_config() -> dict[str, dict[str, Any]]:
    """Fresh copy of the built-in defaults."""

    config: dict[str, dict[str, Any]] = {_META_TABLE: {"schema_version": CONFIG_SCHEMA_VERSION}}
    for setting in SETTINGS:
        config.setdefault(setting.table, {})[setting.key] = setting.default
    return config


def schema_guidance(found: int) -> str:
    if found < CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "rewrite fleet-migrate.toml for the current schema"
        )
    return (
        f"schema version {found} is newer than supported {CONFIG_SCHEMA_VERSION}; "
        "upgrade fleet-migrate"
    )


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay table by table; ``base`` and ``overlay`` are left untouched."""

    merged: dict[str, Any] = {
        name: dict(table) if isinstance(table, Mapping) else table for name, table in base.items()
    }
    for name, table in overlay.items():
        current = merged.get(name)
        if isinstance(table, Mapping) and isinstance(current, dict):
            current.update(table)
        else:
            merged[name] = dict(table) if isinstance(table, Mapping) else table
    return merged


def validate_config(config: object) -> ConfigValidationResult:
    """Check every table and key, collecting all issues in a stable order."""

    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(
            ConfigValidationIssue("<root>", f"expected table, got {type(config).__name__}")
        )
        return ConfigValidationResult(config=None, issues=tuple(issues))

    _check_keys(config, (_META_TABLE, *_TABLES), "", issues)
    normalized: dict[str, Any] = {}

    meta = _table(config, _META_TABLE, issues)
    if meta is not None:
        _check_keys(meta, ("schema_version",), _META_TABLE, issues)
        version = meta.get("schema_version", CONFIG_SCHEMA_VERSION)
        path = f"{_META_TABLE}.schema_version"
        if isinstance(version, bool) or not isinstance(version, int):
            issues.append(ConfigValidationIssue(path, "expected integer"))
        elif version != CONFIG_SCHEMA_VERSION:
            issues.append(ConfigValidationIssue(path, schema_guidance(version)))
        else:
            normalized[_META_TABLE] = {"schema_version": version}

    for name in _TABLES:
        table = _table(config, name, issues)
        if table is None:
            continue
        settings = settings_for(name)
        _check_keys(table, tuple(setting.key for setting in settings), name, issues)
        values: dict[str, Any] = {}
        for setting in settings:
            if setting.key in table:
                value = _coerce(setting, table[setting.key], issues)
                if value is not None:
                    values[setting.key] = value
        normalized[name] = values

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _table(
    config: Mapping[str, Any], name: str, issues: list[ConfigValidationIssue]
) -> Mapping[str, Any] | None:
    if name not in config:
        return None
    table = config[name]
    if not isinstance(table, Mapping):
        issues.append(ConfigValidationIssue(name, f"expected table, got {type(table).__name__}"))
        return None
    return table


def _check_keys(
    payload: Mapping[str, Any],
    known: Sequence[str],
    prefix: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(payload):
        if key in known:
            continue
        path = f"{prefix}.{key}" if prefix else key
        if _names_a_secret(key):
            issues.append(
                ConfigValidationIssue(
                    path,
                    "embedded secret values are forbidden; export them in the environment instead",
                )
            )
        else:
            issues.append(ConfigValidationIssue(path, "unknown field"))
    for key in sorted(set(known) - set(payload)):
        path = f"{prefix}.{key}" if prefix else key
        issues.append(ConfigValidationIssue(path, "missing required field"))


def _coerce(
    setting: Setting, value: object, issues: list[ConfigValidationIssue]
) -> SettingValue | None:
    def reject(message: str) -> None:
        issues.append(ConfigValidationIssue(setting.dotted, message))

    if setting.kind == "bool":
        if isinstance(value, bool):
            return value
        reject(f"expected boolean, got {type(value).__name__}")
        return None

    if setting.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            reject(f"expected integer, got {type(value).__name__}")
            return None
        if setting.minimum is not None and value < setting.minimum:
            reject(f"must be >= {setting.minimum}")
            return None
        return value

    if not isinstance(value, str):
        reject(f"expected string, got {type(value).__name__}")
        return None
    text = value.strip()
    if not text:
        reject("must not be empty")
        return None
    if setting.kind == "path" and "\x00" in text:
        reject("must not contain NUL bytes")
        return None
    if setting.kind == "choice":
        if setting.fold_upper:
            text = text.upper()
        if text not in setting.choices:
            reject(f"invalid value {text!r}; expected one of: {', '.join(sorted(setting.choices))}")
            return None
    return text


def _names_a_secret(key: str) -> bool:
    words = [word for word in _WORD_SPLIT.split(_WORD_BOUNDARY.sub(r"\1_\2", key).lower()) if word]
    joined = "".join(words)
    return any(word in _SECRET_WORDS for word in words) or any(
        compound in joined for compound in _SECRET_COMPOUNDS
    )


__all__ = [
    "ENV_PREFIX",
    "LOG_FORMATS",
    "LOG_LEVELS",
    "REVIEW_PROVIDERS",
    "SETTINGS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "Setting",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "schema_guidance",
    "settings_for",
    "validate_config",
]
