"""
fleet-migrate — domain layer.

File: src/fleet_migrate/domain/__init__.py
Last updated: 2026-10-19

Purpose
- Domain types shared across layers: Definition, TargetResult, StatusDocument,
  the target lifecycle and the error taxonomy.

Non-functional requirements
- Keep domain layer free of IO side effects.
"""

from __future__ import annotations

from fleet_migrate.domain.definition import (
    Checkout,
    Definition,
    ReviewTemplate,
    Step,
    Target,
    definition_to_payload,
    parse_definition,
)
from fleet_migrate.domain.errors import (
    DefinitionError,
    DefinitionIssue,
    FleetMigrateError,
    InvalidTransitionError,
    LedgerError,
    PublishError,
    StepFailure,
    UncommittedChangesFailure,
    WorkspaceError,
)
from fleet_migrate.domain.lifecycle import TargetLifecycle
from fleet_migrate.domain.results import (
    FAILURE_STATES,
    NON_FAILURE_STATES,
    SATISFIED_STATES,
    TERMINAL_STATES,
    FailureDetail,
    FailureKind,
    StatusDocument,
    TargetResult,
    TargetState,
    parse_results,
)

__all__ = [
    "FAILURE_STATES",
    "NON_FAILURE_STATES",
    "SATISFIED_STATES",
    "TERMINAL_STATES",
    "Checkout",
    "Definition",
    "DefinitionError",
    "DefinitionIssue",
    "FailureDetail",
    "FailureKind",
    "FleetMigrateError",
    "InvalidTransitionError",
    "LedgerError",
    "PublishError",
    "ReviewTemplate",
    "StatusDocument",
    "Step",
    "StepFailure",
    "Target",
    "TargetLifecycle",
    "TargetResult",
    "TargetState",
    "UncommittedChangesFailure",
    "WorkspaceError",
    "definition_to_payload",
    "parse_definition",
    "parse_results",
]
