"""Per-target outcomes and the status document that carries them."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from fleet_migrate.domain.definition import Definition, definition_to_payload
from fleet_migrate.domain.errors import (
    FleetMigrateError,
    LedgerError,
    PublishError,
    StepFailure,
    UncommittedChangesFailure,
    WorkspaceError,
)


class TargetState(StrEnum):
    """States a single target moves through during one run."""

    PENDING = "pending"
    CLONED = "cloned"
    RUNNING = "running"
    STEPS_COMPLETE = "steps_complete"
    PUBLISHING = "publishing"
    PREFLIGHT_SKIPPED = "preflight_skipped"
    PUBLISHED = "published"
    PUSHED = "pushed"
    DRY_RUN_COMPLETE = "dry_run_complete"
    WORKSPACE_FAILED = "workspace_failed"
    STEP_FAILED = "step_failed"
    UNCOMMITTED_CHANGES = "uncommitted_changes"
    PUBLISH_FAILED = "publish_failed"


NON_FAILURE_STATES: frozenset[TargetState] = frozenset(
    {
        TargetState.PUBLISHED,
        TargetState.PUSHED,
        TargetState.PREFLIGHT_SKIPPED,
        TargetState.DRY_RUN_COMPLETE,
    }
)
FAILURE_STATES: frozenset[TargetState] = frozenset(
    {
        TargetState.WORKSPACE_FAILED,
        TargetState.STEP_FAILED,
        TargetState.UNCOMMITTED_CHANGES,
        TargetState.PUBLISH_FAILED,
    }
)
TERMINAL_STATES: frozenset[TargetState] = NON_FAILURE_STATES | FAILURE_STATES
# Prior outcomes that satisfy a target without reprocessing.
SATISFIED_STATES: frozenset[TargetState] = frozenset(
    {TargetState.PUBLISHED, TargetState.PREFLIGHT_SKIPPED}
)


class FailureKind(StrEnum):
    WORKSPACE = "workspace"
    STEP_EXIT = "step_exit"
    UNCOMMITTED_CHANGES = "uncommitted_changes"
    TREE_CHECK = "tree_check"
    PUBLISH = "publish"
    INTERNAL = "internal"


@dataclass(frozen=True, slots=True)
class FailureDetail:
    """Why a target ended in a failure state."""

    kind: FailureKind
    message: str
    exit_code: int | None = None
    step_index: int | None = None
    step_name: str | None = None
    stage: str | None = None
    paths: tuple[str, ...] = ()

    @classmethod
    def from_error(cls, error: FleetMigrateError) -> FailureDetail:
        if isinstance(error, StepFailure):
            return cls(
                kind=FailureKind.STEP_EXIT,
                message=str(error),
                exit_code=error.exit_code,
                step_index=error.step_index,
                step_name=error.step_name,
            )
        if isinstance(error, UncommittedChangesFailure):
            return cls(
                kind=FailureKind.UNCOMMITTED_CHANGES,
                message=str(error),
                step_index=error.step_index,
                step_name=error.step_name,
                paths=error.paths,
            )
        if isinstance(error, PublishError):
            return cls(kind=FailureKind.PUBLISH, message=str(error), stage=error.stage)
        if isinstance(error, WorkspaceError):
            return cls(kind=FailureKind.WORKSPACE, message=str(error))
        raise TypeError(f"no failure detail mapping for {type(error).__name__}")

    def summary(self) -> str:
        if self.kind is FailureKind.STEP_EXIT:
            return f"step {self.step_index} ({self.step_name}) exit {self.exit_code}"
        if self.kind is FailureKind.UNCOMMITTED_CHANGES:
            return f"step {self.step_index} ({self.step_name}) left {len(self.paths)} change(s)"
        if self.kind is FailureKind.PUBLISH:
            return f"publish failed at {self.stage}"
        return self.message.splitlines()[0] if self.message else self.kind.value

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        if self.step_index is not None:
            payload["step_index"] = self.step_index
        if self.step_name is not None:
            payload["step_name"] = self.step_name
        if self.stage is not None:
            payload["stage"] = self.stage
        if self.paths:
            payload["paths"] = list(self.paths)
        return payload

    @classmethod
    def from_payload(cls, payload: object, *, path: str) -> FailureDetail:
        if not isinstance(payload, Mapping):
            raise LedgerError(f"{path}: expected mapping")
        try:
            kind = FailureKind(payload["kind"])
        except (KeyError, ValueError) as exc:
            raise LedgerError(f"{path}.kind: missing or unknown failure kind") from exc
        message = payload.get("message", "")
        if not isinstance(message, str):
            raise LedgerError(f"{path}.message: expected string")
        raw_paths = payload.get("paths", ())
        if not isinstance(raw_paths, (list, tuple)):
            raise LedgerError(f"{path}.paths: expected list")
        return cls(
            kind=kind,
            message=message,
            exit_code=_optional_int(payload, "exit_code", path),
            step_index=_optional_int(payload, "step_index", path),
            step_name=_optional_str(payload, "step_name", path),
            stage=_optional_str(payload, "stage", path),
            paths=tuple(str(item) for item in raw_paths),
        )


@dataclass(frozen=True, slots=True)
class TargetResult:
    """Terminal outcome of one target in one run."""

    status: TargetState
    started_at: datetime
    finished_at: datetime
    review_reference: str | None = None
    failure_detail: FailureDetail | None = None
    # Left by an earlier run; a rerun that did not publish again keeps them.
    previous_review_reference: str | None = None
    branch_pushed: bool = False

    def __post_init__(self) -> None:
        if self.status not in TERMINAL_STATES:
            raise ValueError(f"result status must be terminal, got {self.status.value}")
        if self.review_reference is not None and self.status is not TargetState.PUBLISHED:
            raise ValueError("review_reference is only set on published targets")
        if self.status is TargetState.PUBLISHED and (
            self.previous_review_reference is not None or self.branch_pushed
        ):
            raise ValueError("published targets carry only their current review_reference")
        if self.status in FAILURE_STATES and self.failure_detail is None:
            raise ValueError(f"{self.status.value} requires a failure detail")
        if self.status in NON_FAILURE_STATES and self.failure_detail is not None:
            raise ValueError(f"{self.status.value} must not carry a failure detail")

    @property
    def is_failure(self) -> bool:
        return self.status in FAILURE_STATES

    @property
    def known_reference(self) -> str | None:
        """The live review reference, else one an earlier run opened."""

        return self.review_reference or self.previous_review_reference

    @property
    def remote_branch_exists(self) -> bool:
        """Whether some run already put the migration branch on the remote."""

        if self.branch_pushed or self.known_reference is not None:
            return True
        if self.status is TargetState.PUSHED:
            return True
        detail = self.failure_detail
        return (
            self.status is TargetState.PUBLISH_FAILED
            and detail is not None
            and detail.stage == "create_review"
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status.value}
        if self.review_reference is not None:
            payload["review_reference"] = self.review_reference
        if self.previous_review_reference is not None:
            payload["previous_review_reference"] = self.previous_review_reference
        if self.branch_pushed:
            payload["branch_pushed"] = True
        if self.failure_detail is not None:
            payload["failure_detail"] = self.failure_detail.to_payload()
        payload["started_at"] = _format_timestamp(self.started_at)
        payload["finished_at"] = _format_timestamp(self.finished_at)
        return payload

    @classmethod
    def from_payload(cls, payload: object, *, path: str) -> TargetResult:
        if not isinstance(payload, Mapping):
            raise LedgerError(f"{path}: expected mapping")
        try:
            status = TargetState(payload.get("status"))
        except ValueError as exc:
            raise LedgerError(f"{path}.status: unknown state {payload.get('status')!r}") from exc
        failure = None
        if payload.get("failure_detail") is not None:
            failure = FailureDetail.from_payload(
                payload["failure_detail"], path=f"{path}.failure_detail"
            )
        try:
            return cls(
                status=status,
                started_at=_parse_timestamp(payload.get("started_at"), f"{path}.started_at"),
                finished_at=_parse_timestamp(payload.get("finished_at"), f"{path}.finished_at"),
                review_reference=_optional_str(payload, "review_reference", path),
                failure_detail=failure,
                previous_review_reference=_optional_str(
                    payload, "previous_review_reference", path
                ),
                branch_pushed=_optional_bool(payload, "branch_pushed", path),
            )
        except ValueError as exc:
            raise LedgerError(f"{path}: {exc}") from exc


@dataclass(slots=True)
class StatusDocument:
    """The definition plus one result per processed target."""

    definition: Definition
    results: dict[str, TargetResult] = field(default_factory=dict)

    def merge(self, target_name: str, result: TargetResult) -> None:
        if target_name not in self.definition.target_names:
            raise LedgerError(f"result for unknown target {target_name!r}")
        self.results[target_name] = result

    def ordered_results(self) -> list[tuple[str, TargetResult]]:
        return [
            (name, self.results[name])
            for name in self.definition.target_names
            if name in self.results
        ]

    def to_payload(self) -> dict[str, Any]:
        payload = definition_to_payload(self.definition)
        if self.results:
            payload["results"] = {
                name: result.to_payload() for name, result in self.ordered_results()
            }
        return payload


def parse_results(raw: object, definition: Definition) -> dict[str, TargetResult]:
    """Decode the ``results`` section of a status document; unknown targets are rejected."""

    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise LedgerError(f"results: expected mapping, got {type(raw).__name__}")
    known = set(definition.target_names)
    results: dict[str, TargetResult] = {}
    for name, payload in raw.items():
        if name not in known:
            raise LedgerError(f"results.{name}: no such target in the definition")
        results[name] = TargetResult.from_payload(payload, path=f"results.{name}")
    return results


def utc_now() -> datetime:
    return datetime.now(UTC)


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _parse_timestamp(value: object, path: str) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        raise LedgerError(f"{path}: expected ISO-8601 timestamp")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise LedgerError(f"{path}: invalid timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _optional_int(payload: Mapping[str, Any], key: str, path: str) -> int | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise LedgerError(f"{path}.{key}: expected integer")
    return value


def _optional_str(payload: Mapping[str, Any], key: str, path: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise LedgerError(f"{path}.{key}: expected string")
    return value


def _optional_bool(payload: Mapping[str, Any], key: str, path: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise LedgerError(f"{path}.{key}: expected boolean")
    return value


__all__ = [
    "FAILURE_STATES",
    "NON_FAILURE_STATES",
    "SATISFIED_STATES",
    "TERMINAL_STATES",
    "FailureDetail",
    "FailureKind",
    "StatusDocument",
    "TargetResult",
    "TargetState",
    "parse_results",
    "utc_now",
]
