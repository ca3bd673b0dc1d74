"""
fleet-migrate — migration definition model and validation.

File: src/fleet_migrate/domain/definition.py
Last updated: 2026-10-19

Purpose
- Define the immutable in-memory migration definition: targets, checkout policy,
  review metadata, and the ordered step list.
- Validate a decoded document exactly once, reporting every problem as a
  structured ``DefinitionIssue`` (field path + message).

Functional requirements
- Target names are unique (case-sensitive) and non-empty; every required field is non-empty.
- Step order is preserved exactly as written.
- Raw command strings are kept verbatim so the document round-trips; relative
  script paths are resolved against the definition directory only when executed.

Non-functional requirements
- No IO: decoding and file access live in the persistence layer.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from fleet_migrate.constants import DEFINITION_SCHEMA_VERSION
from fleet_migrate.domain.errors import DefinitionError, DefinitionIssue

_ROOT_KEYS: Final[frozenset[str]] = frozenset(
    {"schema_version", "targets", "checkout", "pr", "steps", "results"}
)
_REQUIRED_ROOT_KEYS: Final[tuple[str, ...]] = ("targets", "checkout", "pr", "steps")
_TARGET_KEYS: Final[frozenset[str]] = frozenset({"repo", "env"})
_CHECKOUT_KEYS: Final[frozenset[str]] = frozenset({"branch_name", "preflight_command"})
_PR_KEYS: Final[frozenset[str]] = frozenset({"title", "description"})
_STEP_KEYS: Final[frozenset[str]] = frozenset({"name", "script_path"})


@dataclass(frozen=True, slots=True)
class Target:
    """One repository to migrate."""

    name: str
    repo: str
    env: tuple[tuple[str, str], ...] = ()

    @property
    def environment(self) -> dict[str, str]:
        return dict(self.env)


@dataclass(frozen=True, slots=True)
class Checkout:
    branch_name: str
    preflight_command: str


@dataclass(frozen=True, slots=True)
class ReviewTemplate:
    """Title and description used verbatim for every review request."""

    title: str
    description: str


@dataclass(frozen=True, slots=True)
class Step:
    name: str
    script_path: str


@dataclass(frozen=True, slots=True)
class Definition:
    """Validated, immutable migration definition."""

    targets: tuple[Target, ...]
    checkout: Checkout
    pr: ReviewTemplate
    steps: tuple[Step, ...]
    base_dir: Path
    schema_version: int = DEFINITION_SCHEMA_VERSION

    @property
    def target_names(self) -> tuple[str, ...]:
        return tuple(target.name for target in self.targets)

    def target(self, name: str) -> Target:
        for target in self.targets:
            if target.name == name:
                return target
        raise KeyError(name)

    def resolve_command(self, command: str) -> str:
        """Make a relative script path absolute against the definition directory."""

        stripped = command.strip()
        if os.path.isabs(stripped):
            return stripped
        return os.path.join(self.base_dir.as_posix(), stripped)


def parse_definition(payload: object, *, base_dir: Path) -> Definition:
    """Validate a decoded document and build a ``Definition`` or raise ``DefinitionError``."""

    issues: list[DefinitionIssue] = []
    if not isinstance(payload, Mapping):
        raise DefinitionError(
            (DefinitionIssue("<root>", f"expected mapping, got {type(payload).__name__}"),)
        )

    _reject_unknown_keys(payload, _ROOT_KEYS, "", issues)
    for key in _REQUIRED_ROOT_KEYS:
        if key not in payload:
            issues.append(DefinitionIssue(key, "missing required field"))

    schema_version = DEFINITION_SCHEMA_VERSION
    if "schema_version" in payload:
        raw_version = payload["schema_version"]
        if isinstance(raw_version, bool) or not isinstance(raw_version, int):
            issues.append(
                DefinitionIssue(
                    "schema_version", f"expected integer, got {type(raw_version).__name__}"
                )
            )
        elif raw_version != DEFINITION_SCHEMA_VERSION:
            issues.append(DefinitionIssue("schema_version", _version_guidance(raw_version)))
        else:
            schema_version = raw_version

    targets = _parse_targets(payload.get("targets"), issues) if "targets" in payload else ()
    checkout = _parse_checkout(payload.get("checkout"), issues) if "checkout" in payload else None
    pr = _parse_review(payload.get("pr"), issues) if "pr" in payload else None
    steps = _parse_steps(payload.get("steps"), issues) if "steps" in payload else ()

    if issues or checkout is None or pr is None:
        raise DefinitionError(issues)

    return Definition(
        targets=targets,
        checkout=checkout,
        pr=pr,
        steps=steps,
        base_dir=base_dir,
        schema_version=schema_version,
    )


def definition_to_payload(definition: Definition) -> dict[str, Any]:
    """Render a definition back into a plain mapping for the codec, in canonical key order."""

    targets: dict[str, Any] = {}
    for target in definition.targets:
        if target.env:
            targets[target.name] = {"repo": target.repo, "env": dict(target.env)}
        else:
            targets[target.name] = target.repo

    return {
        "schema_version": definition.schema_version,
        "targets": targets,
        "checkout": {
            "branch_name": definition.checkout.branch_name,
            "preflight_command": definition.checkout.preflight_command,
        },
        "pr": {
            "title": definition.pr.title,
            "description": definition.pr.description,
        },
        "steps": [
            {"name": step.name, "script_path": step.script_path} for step in definition.steps
        ],
    }


def _parse_targets(raw: object, issues: list[DefinitionIssue]) -> tuple[Target, ...]:
    if not isinstance(raw, Mapping):
        issues.append(DefinitionIssue("targets", f"expected mapping, got {type(raw).__name__}"))
        return ()
    if not raw:
        issues.append(DefinitionIssue("targets", "at least one target is required"))
        return ()

    targets: list[Target] = []
    for name, raw_target in raw.items():
        if not isinstance(name, str):
            issues.append(
                DefinitionIssue("targets", f"target name must be a string, got {name!r}")
            )
            continue
        path = f"targets.{name}"
        # Names are keys of the status document and compared verbatim.
        if not name.strip():
            issues.append(DefinitionIssue(path, "target name must not be empty"))
            continue
        if name != name.strip():
            issues.append(
                DefinitionIssue(path, "target name must not start or end with whitespace")
            )
            continue

        if isinstance(raw_target, str):
            repo = _require_text(raw_target, path, issues)
            if repo is not None:
                targets.append(Target(name=name, repo=repo))
            continue
        if not isinstance(raw_target, Mapping):
            issues.append(
                DefinitionIssue(
                    path,
                    f"expected repository address or mapping, got {type(raw_target).__name__}",
                )
            )
            continue

        _reject_unknown_keys(raw_target, _TARGET_KEYS, path, issues)
        repo = _required_field(raw_target, "repo", path, issues)
        env = _parse_env(raw_target.get("env"), f"{path}.env", issues)
        if repo is not None:
            targets.append(Target(name=name, repo=repo, env=env))
    return tuple(targets)


def _parse_env(
    raw: object, path: str, issues: list[DefinitionIssue]
) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, Mapping):
        issues.append(DefinitionIssue(path, f"expected mapping, got {type(raw).__name__}"))
        return ()
    pairs: list[tuple[str, str]] = []
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            issues.append(DefinitionIssue(path, f"invalid variable name {key!r}"))
            continue
        if isinstance(value, (Mapping, list)) or value is None:
            issues.append(DefinitionIssue(f"{path}.{key}", "expected a scalar value"))
            continue
        if isinstance(value, bool):
            pairs.append((key, "true" if value else "false"))
        else:
            pairs.append((key, str(value)))
    return tuple(pairs)


def _parse_checkout(raw: object, issues: list[DefinitionIssue]) -> Checkout | None:
    if not isinstance(raw, Mapping):
        issues.append(DefinitionIssue("checkout", f"expected mapping, got {type(raw).__name__}"))
        return None
    _reject_unknown_keys(raw, _CHECKOUT_KEYS, "checkout", issues)
    branch_name = _required_field(raw, "branch_name", "checkout", issues)
    preflight = _required_field(raw, "preflight_command", "checkout", issues)
    if branch_name is None or preflight is None:
        return None
    if any(char.isspace() for char in branch_name) or branch_name.startswith("-"):
        issues.append(DefinitionIssue("checkout.branch_name", "not a valid git branch name"))
        return None
    return Checkout(branch_name=branch_name, preflight_command=preflight)


def _parse_review(raw: object, issues: list[DefinitionIssue]) -> ReviewTemplate | None:
    if not isinstance(raw, Mapping):
        issues.append(DefinitionIssue("pr", f"expected mapping, got {type(raw).__name__}"))
        return None
    _reject_unknown_keys(raw, _PR_KEYS, "pr", issues)
    title = _required_field(raw, "title", "pr", issues)
    description = _required_field(raw, "description", "pr", issues, strip=False)
    if title is None or description is None:
        return None
    return ReviewTemplate(title=title, description=description)


def _parse_steps(raw: object, issues: list[DefinitionIssue]) -> tuple[Step, ...]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        issues.append(DefinitionIssue("steps", f"expected list, got {type(raw).__name__}"))
        return ()
    if not raw:
        issues.append(DefinitionIssue("steps", "at least one step is required"))
        return ()

    steps: list[Step] = []
    for index, raw_step in enumerate(raw):
        path = f"steps[{index}]"
        if not isinstance(raw_step, Mapping):
            issues.append(DefinitionIssue(path, f"expected mapping, got {type(raw_step).__name__}"))
            continue
        _reject_unknown_keys(raw_step, _STEP_KEYS, path, issues)
        name = _required_field(raw_step, "name", path, issues)
        script_path = _required_field(raw_step, "script_path", path, issues)
        if name is not None and script_path is not None:
            steps.append(Step(name=name, script_path=script_path))
    return tuple(steps)


def _required_field(
    payload: Mapping[Any, object],
    key: str,
    path: str,
    issues: list[DefinitionIssue],
    *,
    strip: bool = True,
) -> str | None:
    field_path = f"{path}.{key}"
    if key not in payload:
        issues.append(DefinitionIssue(field_path, "missing required field"))
        return None
    return _require_text(payload[key], field_path, issues, strip=strip)


def _require_text(
    value: object, path: str, issues: list[DefinitionIssue], *, strip: bool = True
) -> str | None:
    if not isinstance(value, str):
        issues.append(DefinitionIssue(path, f"expected string, got {type(value).__name__}"))
        return None
    if not value.strip():
        issues.append(DefinitionIssue(path, "must not be empty"))
        return None
    return value.strip() if strip else value


def _reject_unknown_keys(
    payload: Mapping[Any, object],
    allowed: frozenset[str],
    path: str,
    issues: list[DefinitionIssue],
) -> None:
    for key in payload:
        if key in allowed:
            continue
        key_path = f"{path}.{key}" if path else str(key)
        issues.append(DefinitionIssue(key_path, "unknown field"))


def _version_guidance(found_version: int) -> str:
    if found_version < DEFINITION_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is older than supported "
            f"{DEFINITION_SCHEMA_VERSION}; update the definition document"
        )
    return (
        f"schema version {found_version} is newer than supported "
        f"{DEFINITION_SCHEMA_VERSION}; upgrade fleet-migrate"
    )


__all__ = [
    "Checkout",
    "Definition",
    "ReviewTemplate",
    "Step",
    "Target",
    "definition_to_payload",
    "parse_definition",
]
