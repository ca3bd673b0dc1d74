"""Exception taxonomy for migration runs.

Per-target errors (``WorkspaceError``, ``StepFailure``,
``UncommittedChangesFailure``, ``PublishError``) are caught at the target
lifecycle boundary and turned into a terminal state. ``DefinitionError`` and
``LedgerError`` abort the whole run.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

PublishStage = Literal["push", "create_review"]


class FleetMigrateError(RuntimeError):
    """Base error for every failure raised by fleet-migrate."""


@dataclass(frozen=True, slots=True)
class DefinitionIssue:
    """Single structured definition validation failure."""

    path: str
    message: str


class DefinitionError(FleetMigrateError):
    """Raised when a migration definition is malformed; fatal before any target runs."""

    def __init__(self, issues: Sequence[DefinitionIssue] | str) -> None:
        if isinstance(issues, str):
            issues = (DefinitionIssue(path="<root>", message=issues),)
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid migration definition:\n{rendered}")


class WorkspaceError(FleetMigrateError):
    """Raised when a target workspace cannot be prepared (clone/branch/directory)."""


class StepFailure(FleetMigrateError):
    """Raised when a step script exits non-zero."""

    def __init__(self, *, step_index: int, step_name: str, exit_code: int) -> None:
        self.step_index = step_index
        self.step_name = step_name
        self.exit_code = exit_code
        super().__init__(f"step {step_index} ({step_name}) exited with code {exit_code}")


class UncommittedChangesFailure(FleetMigrateError):
    """Raised when a step exits 0 but leaves changes in the working tree."""

    def __init__(self, *, step_index: int, step_name: str, paths: Sequence[str]) -> None:
        self.step_index = step_index
        self.step_name = step_name
        self.paths = tuple(paths)
        shown = ", ".join(self.paths[:10])
        if len(self.paths) > 10:
            shown = f"{shown}, ... ({len(self.paths)} total)"
        super().__init__(
            f"step {step_index} ({step_name}) left uncommitted changes: {shown or '<unknown>'}"
        )


class PublishError(FleetMigrateError):
    """Raised when pushing the branch or creating the review request fails."""

    def __init__(self, *, stage: PublishStage, cause: str) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"publish failed during {stage}: {cause}")


class LedgerError(FleetMigrateError):
    """Raised when the status document cannot be parsed or persisted."""


class InvalidTransitionError(FleetMigrateError):
    """Raised on an illegal target state machine transition."""


__all__ = [
    "DefinitionError",
    "DefinitionIssue",
    "FleetMigrateError",
    "InvalidTransitionError",
    "LedgerError",
    "PublishError",
    "PublishStage",
    "StepFailure",
    "UncommittedChangesFailure",
    "WorkspaceError",
]
