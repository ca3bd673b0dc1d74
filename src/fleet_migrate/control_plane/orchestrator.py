"""
fleet-migrate — migration orchestrator.

File: src/fleet_migrate/control_plane/orchestrator.py
Last updated: 2026-10-19

Purpose
- Drive every target's lifecycle (workspace, pre-flight, steps, publish) with
  bounded parallelism and record each terminal result in the status ledger.

Functional requirements
- A target's failure, expected or not, is converted to a terminal state and
  recorded; it never stops other targets.
- Results are recorded one at a time by a single consumer.
- Targets already satisfied by a previous run are carried over unless reprocessing.
- Cancellation stops new launches; in-flight targets finish and are recorded.
- ``LedgerError`` stops new launches, lets in-flight targets finish, then propagates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from fleet_migrate.constants import DEFAULT_MAX_CONCURRENCY
from fleet_migrate.domain.definition import Definition, Target
from fleet_migrate.domain.errors import (
    PublishError,
    StepFailure,
    UncommittedChangesFailure,
    WorkspaceError,
)
from fleet_migrate.domain.lifecycle import TargetLifecycle
from fleet_migrate.domain.results import (
    SATISFIED_STATES,
    FailureDetail,
    FailureKind,
    TargetResult,
    TargetState,
    utc_now,
)
from fleet_migrate.execution.git import GitCommandError
from fleet_migrate.execution.publisher import Publisher
from fleet_migrate.execution.step_executor import StepExecutor
from fleet_migrate.execution.workspace_manager import WorkspaceManager
from fleet_migrate.observability.logging import correlation_scope
from fleet_migrate.persistence.ledger import StatusLedger
from fleet_migrate.utils.concurrency import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RunOptions:
    concurrency: int | None = None
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    dry_run: bool = False
    skip_review: bool = False
    reprocess: bool = False

    def pool_size(self, target_count: int) -> int:
        if self.concurrency is not None:
            return max(1, self.concurrency)
        return max(1, min(target_count, self.max_concurrency))


@dataclass(frozen=True, slots=True)
class _Plan:
    target: Target
    existing_reference: str | None
    refresh: bool


@dataclass(frozen=True, slots=True)
class RunSummary:
    """What one ``run-migration`` invocation did."""

    results: tuple[tuple[str, TargetResult], ...]
    processed: tuple[str, ...]
    carried_over: tuple[str, ...]
    not_started: tuple[str, ...]
    interrupted: bool
    backup_path: Path | None

    @property
    def failed(self) -> tuple[str, ...]:
        processed = set(self.processed)
        return tuple(
            name for name, result in self.results if name in processed and result.is_failure
        )

    @property
    def succeeded(self) -> bool:
        return not self.interrupted and not self.failed


class MigrationOrchestrator:
    """Runs one migration definition end to end."""

    def __init__(
        self,
        definition: Definition,
        ledger: StatusLedger,
        workspaces: WorkspaceManager,
        executor: StepExecutor,
        publisher: Publisher,
        *,
        options: RunOptions | None = None,
        cancel_token: CancellationToken | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definition = definition
        self._ledger = ledger
        self._workspaces = workspaces
        self._executor = executor
        self._publisher = publisher
        self._options = options or RunOptions()
        self._token = cancel_token or CancellationToken()
        self._now_fn = now_fn

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    def plan(self) -> tuple[list[_Plan], list[str]]:
        """Split targets into those to run and those carried over from a previous run."""

        prior = self._ledger.document.results
        to_run: list[_Plan] = []
        carried: list[str] = []
        for target in self._definition.targets:
            previous = prior.get(target.name)
            if (
                previous is not None
                and previous.status in SATISFIED_STATES
                and not self._options.reprocess
            ):
                carried.append(target.name)
                continue
            to_run.append(
                _Plan(
                    target=target,
                    existing_reference=previous.known_reference if previous else None,
                    refresh=previous is not None and previous.remote_branch_exists,
                )
            )
        return to_run, carried

    async def run(self) -> RunSummary:
        backup = self._ledger.snapshot()
        plans, carried = self.plan()
        for name in carried:
            logger.info("already satisfied by a previous run", extra={"target": name})

        pool: WorkerPool[_Plan, TargetResult] = WorkerPool(
            self._options.pool_size(len(plans)), cancel_token=self._token
        )
        logger.info(
            "starting migration",
            extra={
                "targets": len(plans),
                "concurrency": pool.size,
                "dry_run": self._options.dry_run,
                "skip_review": self._options.skip_review,
            },
        )
        outcome = await pool.run(plans, self.run_target, self._record)

        not_started = tuple(plan.target.name for plan in outcome.not_started)
        if not_started:
            logger.warning("targets not started", extra={"not_started": list(not_started)})
        return RunSummary(
            results=tuple(self._ledger.document.ordered_results()),
            processed=tuple(plan.target.name for plan in outcome.delivered),
            carried_over=tuple(carried),
            not_started=not_started,
            interrupted=self._token.is_cancelled,
            backup_path=backup,
        )

    async def run_target(self, plan: _Plan) -> TargetResult:
        """Advance one target to a terminal state; nothing it raises reaches other targets."""

        lifecycle = TargetLifecycle(
            plan.target.name,
            now_fn=self._now_fn,
            previous_review_reference=plan.existing_reference,
            branch_pushed=plan.refresh,
        )
        with correlation_scope(target=plan.target.name):
            try:
                await self._advance(plan, lifecycle)
            except Exception as exc:  # noqa: BLE001 - the lifecycle boundary of one target.
                if lifecycle.is_terminal:
                    logger.warning("error after the target finished: %s", exc, exc_info=exc)
                else:
                    logger.error(
                        "unexpected error in state %s", lifecycle.state.value, exc_info=exc
                    )
                    lifecycle.abort(f"{type(exc).__name__}: {exc}")
            logger.info("target finished", extra={"status": lifecycle.state.value})
            return lifecycle.to_result()

    async def _advance(self, plan: _Plan, lifecycle: TargetLifecycle) -> None:
        target = plan.target
        try:
            workspace = await self._workspaces.prepare(
                target,
                self._definition.checkout.branch_name,
                allow_existing_branch=plan.refresh,
            )
        except WorkspaceError as exc:
            logger.warning("workspace failed: %s", exc)
            lifecycle.fail(TargetState.WORKSPACE_FAILED, FailureDetail.from_error(exc))
            return

        try:
            lifecycle.mark_cloned()
            if not await self._executor.run_preflight(workspace):
                lifecycle.skip_preflight()
                return

            try:
                await self._executor.run_steps(workspace, on_step_start=lifecycle.start_step)
            except (StepFailure, UncommittedChangesFailure) as exc:
                state = (
                    TargetState.STEP_FAILED
                    if isinstance(exc, StepFailure)
                    else TargetState.UNCOMMITTED_CHANGES
                )
                lifecycle.fail(state, FailureDetail.from_error(exc))
                return
            except GitCommandError as exc:
                index = lifecycle.step_index or 0
                lifecycle.fail(
                    TargetState.STEP_FAILED,
                    FailureDetail(
                        kind=FailureKind.TREE_CHECK,
                        message=str(exc),
                        step_index=index,
                        step_name=self._definition.steps[index].name,
                    ),
                )
                return

            lifecycle.complete_steps()
            if self._options.dry_run:
                lifecycle.finish_dry_run()
                return

            lifecycle.begin_publishing()
            try:
                if self._options.skip_review:
                    await self._publisher.push(
                        workspace, refresh=plan.refresh or plan.existing_reference is not None
                    )
                    lifecycle.finish_push_only()
                    return
                reference = await self._publisher.publish(
                    workspace,
                    existing_reference=plan.existing_reference,
                    refresh=plan.refresh,
                )
            except PublishError as exc:
                logger.warning("publish failed: %s", exc)
                if exc.stage == "create_review":
                    lifecycle.branch_pushed = True
                lifecycle.fail(TargetState.PUBLISH_FAILED, FailureDetail.from_error(exc))
                return
            lifecycle.publish(reference)
        finally:
            logger.debug("closing target logs", extra={"log_dir": str(workspace.paths.root)})
            workspace.close()

    async def _record(self, plan: _Plan, result: TargetResult) -> None:
        await self._ledger.record(plan.target.name, result)


__all__ = ["MigrationOrchestrator", "RunOptions", "RunSummary"]
