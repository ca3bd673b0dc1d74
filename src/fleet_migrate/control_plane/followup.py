"""Re-run one script on every target that already has an open review request."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from fleet_migrate.constants import ENV_REVIEW_URL
from fleet_migrate.domain.errors import StepFailure, UncommittedChangesFailure, WorkspaceError
from fleet_migrate.domain.results import StatusDocument
from fleet_migrate.execution.git import GitClient, GitCommandError
from fleet_migrate.execution.review import ReviewProvider, ReviewProviderError, ReviewStatus
from fleet_migrate.execution.step_executor import StepExecutor
from fleet_migrate.execution.workspace_manager import WorkspaceManager
from fleet_migrate.observability.logging import correlation_scope
from fleet_migrate.utils.concurrency import CancellationToken, WorkerPool

logger = logging.getLogger(__name__)

FOLLOWUP_STEP_NAME = "follow-up"


class FollowupStatus(StrEnum):
    SUCCEEDED = "succeeded"
    SKIPPED_MERGED = "skipped_merged"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FollowupOutcome:
    target: str
    status: FollowupStatus
    review_reference: str
    message: str = ""


class FollowupRunner:
    """Clone each reviewed target's branch, run the script, verify, push."""

    def __init__(
        self,
        document: StatusDocument,
        workspaces: WorkspaceManager,
        executor: StepExecutor,
        git: GitClient,
        review: ReviewProvider,
        *,
        script: str,
        concurrency: int,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._document = document
        self._workspaces = workspaces
        self._executor = executor
        self._git = git
        self._review = review
        self._script = script
        self._concurrency = max(1, concurrency)
        self._token = cancel_token or CancellationToken()

    def eligible_targets(self) -> list[tuple[str, str]]:
        """``(target name, review reference)`` pairs in definition order."""

        return [
            (name, result.review_reference)
            for name, result in self._document.ordered_results()
            if result.review_reference is not None
        ]

    async def run(self) -> list[FollowupOutcome]:
        outcomes: dict[str, FollowupOutcome] = {}

        async def _collect(item: tuple[str, str], outcome: FollowupOutcome) -> None:
            outcomes[item[0]] = outcome

        eligible = self.eligible_targets()
        pool: WorkerPool[tuple[str, str], FollowupOutcome] = WorkerPool(
            min(self._concurrency, max(len(eligible), 1)), cancel_token=self._token
        )
        await pool.run(eligible, self._run_one, _collect)
        return [outcomes[name] for name, _ in eligible if name in outcomes]

    async def _run_one(self, item: tuple[str, str]) -> FollowupOutcome:
        name, reference = item
        with correlation_scope(target=name):
            try:
                state = await self._review.fetch_state(reference)
            except ReviewProviderError as exc:
                return FollowupOutcome(name, FollowupStatus.FAILED, reference, str(exc))
            if state.status is ReviewStatus.MERGED:
                logger.info("review already merged; skipping")
                return FollowupOutcome(name, FollowupStatus.SKIPPED_MERGED, state.reference)

            target = self._document.definition.target(name)
            branch = self._document.definition.checkout.branch_name
            try:
                workspace = await self._workspaces.prepare_existing_branch(target, branch)
            except WorkspaceError as exc:
                return FollowupOutcome(name, FollowupStatus.FAILED, reference, str(exc))

            try:
                await self._executor.run_script(
                    workspace,
                    self._script,
                    step_index=0,
                    step_name=FOLLOWUP_STEP_NAME,
                    extra_env={ENV_REVIEW_URL: state.reference},
                )
                await self._git.push(workspace.paths.repo_dir, branch, sink=workspace.sink)
            except (StepFailure, UncommittedChangesFailure, GitCommandError) as exc:
                logger.warning("follow-up failed: %s", exc)
                return FollowupOutcome(name, FollowupStatus.FAILED, reference, str(exc))
            finally:
                workspace.close()

        logger.info("follow-up succeeded", extra={"target": name})
        return FollowupOutcome(name, FollowupStatus.SUCCEEDED, state.reference)


__all__ = ["FOLLOWUP_STEP_NAME", "FollowupOutcome", "FollowupRunner", "FollowupStatus"]
