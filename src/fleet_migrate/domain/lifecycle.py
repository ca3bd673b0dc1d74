"""
fleet-migrate — target lifecycle state machine.

File: src/fleet_migrate/domain/lifecycle.py
Last updated: 2026-10-19

Purpose
- Own the authoritative set of states and transitions one target moves through.

Functional requirements
- Transitions are forward-only; an illegal move raises ``InvalidTransitionError``.
- ``running`` carries a step index that starts at 0 and increments by exactly one.
- Step failures are only legal at the step currently running.
- Terminal states produce exactly one ``TargetResult``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final

from fleet_migrate.domain.errors import InvalidTransitionError
from fleet_migrate.domain.results import (
    FAILURE_STATES,
    TERMINAL_STATES,
    FailureDetail,
    FailureKind,
    TargetResult,
    TargetState,
    utc_now,
)

_S = TargetState

_ALLOWED_TRANSITIONS: Final[dict[TargetState, frozenset[TargetState]]] = {
    _S.PENDING: frozenset({_S.CLONED, _S.WORKSPACE_FAILED}),
    _S.CLONED: frozenset({_S.PREFLIGHT_SKIPPED, _S.RUNNING}),
    _S.RUNNING: frozenset(
        {_S.RUNNING, _S.STEPS_COMPLETE, _S.STEP_FAILED, _S.UNCOMMITTED_CHANGES}
    ),
    _S.STEPS_COMPLETE: frozenset({_S.PUBLISHING, _S.DRY_RUN_COMPLETE}),
    _S.PUBLISHING: frozenset({_S.PUBLISHED, _S.PUSHED, _S.PUBLISH_FAILED}),
}
_STEP_SCOPED_FAILURES: Final[frozenset[TargetState]] = frozenset(
    {_S.STEP_FAILED, _S.UNCOMMITTED_CHANGES}
)
# Where an unexpected error ends a target, by the stage it was in.
_ABORT_STATES: Final[dict[TargetState, TargetState]] = {
    _S.PENDING: _S.WORKSPACE_FAILED,
    _S.CLONED: _S.WORKSPACE_FAILED,
    _S.RUNNING: _S.STEP_FAILED,
    _S.STEPS_COMPLETE: _S.PUBLISH_FAILED,
    _S.PUBLISHING: _S.PUBLISH_FAILED,
}


def can_transition(current: TargetState, new: TargetState) -> bool:
    return new in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(slots=True)
class TargetLifecycle:
    """Mutable per-target state owned by exactly one worker for the duration of a run."""

    target_name: str
    now_fn: Callable[[], datetime] = utc_now
    state: TargetState = TargetState.PENDING
    step_index: int | None = None
    review_reference: str | None = None
    failure: FailureDetail | None = None
    previous_review_reference: str | None = None
    branch_pushed: bool = False
    started_at: datetime = field(init=False)
    finished_at: datetime | None = field(default=None, init=False)
    history: list[tuple[TargetState, int | None]] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.started_at = self.now_fn()
        self.history.append((self.state, self.step_index))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self.state in FAILURE_STATES

    def mark_cloned(self) -> None:
        self._advance(_S.CLONED)

    def skip_preflight(self) -> None:
        self._advance(_S.PREFLIGHT_SKIPPED)

    def start_step(self, index: int) -> None:
        if self.state is _S.RUNNING and self.step_index is not None:
            expected = self.step_index + 1
        else:
            expected = 0
        if index != expected:
            raise InvalidTransitionError(
                f"{self.target_name}: expected step {expected}, got step {index}"
            )
        self._advance(_S.RUNNING, step_index=index)

    def complete_steps(self) -> None:
        self._advance(_S.STEPS_COMPLETE, step_index=self.step_index)

    def begin_publishing(self) -> None:
        self._advance(_S.PUBLISHING, step_index=self.step_index)

    def publish(self, review_reference: str) -> None:
        if not review_reference:
            raise InvalidTransitionError(f"{self.target_name}: published without a reference")
        self.review_reference = review_reference
        self._advance(_S.PUBLISHED, step_index=self.step_index)

    def finish_push_only(self) -> None:
        """The branch is on the remote and no review was requested."""

        self.branch_pushed = True
        self._advance(_S.PUSHED, step_index=self.step_index)

    def finish_dry_run(self) -> None:
        self._advance(_S.DRY_RUN_COMPLETE, step_index=self.step_index)

    def fail(self, state: TargetState, detail: FailureDetail) -> None:
        """Move to a failure state; step-scoped failures must name the running step."""

        if state not in FAILURE_STATES:
            raise InvalidTransitionError(f"{state.value} is not a failure state")
        if state in _STEP_SCOPED_FAILURES and detail.step_index != self.step_index:
            raise InvalidTransitionError(
                f"{self.target_name}: failure at step {detail.step_index} "
                f"while step {self.step_index} is running"
            )
        self.failure = detail
        self._advance(state, step_index=self.step_index)

    def abort(self, message: str) -> None:
        """
        End the target after an error no other path handles.

        Unlike ``fail`` this is legal from every non-terminal state: the stage the
        target reached picks the failure state, and the detail is ``internal``.
        """

        if self.is_terminal:
            raise InvalidTransitionError(
                f"{self.target_name}: cannot abort from terminal state {self.state.value}"
            )
        state = _ABORT_STATES[self.state]
        self.failure = FailureDetail(
            kind=FailureKind.INTERNAL,
            message=message,
            step_index=self.step_index if state is _S.STEP_FAILED else None,
            stage=self.state.value,
        )
        self._enter(state, self.step_index)

    def to_result(self) -> TargetResult:
        if not self.is_terminal or self.finished_at is None:
            raise InvalidTransitionError(
                f"{self.target_name}: no result while in state {self.state.value}"
            )
        published = self.state is _S.PUBLISHED
        return TargetResult(
            status=self.state,
            started_at=self.started_at,
            finished_at=self.finished_at,
            review_reference=self.review_reference,
            failure_detail=self.failure,
            previous_review_reference=None if published else self.previous_review_reference,
            branch_pushed=self.branch_pushed and not published,
        )

    def _advance(self, new_state: TargetState, *, step_index: int | None = None) -> None:
        if not can_transition(self.state, new_state):
            raise InvalidTransitionError(
                f"{self.target_name}: illegal transition {self.state.value} -> {new_state.value}"
            )
        self._enter(new_state, step_index)

    def _enter(self, new_state: TargetState, step_index: int | None) -> None:
        self.state = new_state
        self.step_index = step_index
        self.history.append((new_state, step_index))
        if new_state in TERMINAL_STATES:
            self.finished_at = self.now_fn()


__all__ = ["TargetLifecycle", "can_transition"]
