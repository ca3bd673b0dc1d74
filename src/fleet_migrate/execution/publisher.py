"""Push a completed target branch and open (or update) its review request."""

from __future__ import annotations

import logging

from fleet_migrate.domain.definition import ReviewTemplate
from fleet_migrate.domain.errors import PublishError
from fleet_migrate.execution.git import GitClient, GitCommandError
from fleet_migrate.execution.review import ReviewProvider, ReviewProviderError
from fleet_migrate.execution.workspace_manager import Workspace

logger = logging.getLogger(__name__)


class Publisher:
    def __init__(self, git: GitClient, review: ReviewProvider, template: ReviewTemplate) -> None:
        self._git = git
        self._review = review
        self._template = template

    async def publish(
        self,
        workspace: Workspace,
        *,
        existing_reference: str | None = None,
        refresh: bool = False,
    ) -> str:
        """
        Push ``workspace.branch`` and return the review reference.

        A refresh replaces a branch an earlier run already pushed, so it pushes with
        ``--force-with-lease``. With ``existing_reference`` set the existing review is
        updated instead of opening a second one.
        """

        await self.push(workspace, refresh=refresh or existing_reference is not None)
        return await self.request_review(workspace, existing_reference=existing_reference)

    async def push(self, workspace: Workspace, *, refresh: bool = False) -> None:
        """The ``push`` stage on its own; a branch without new commits is refused."""

        repo_dir = workspace.paths.repo_dir
        try:
            if await self._git.unpublished_commit_count(repo_dir, sink=workspace.sink) == 0:
                raise PublishError(
                    stage="push", cause="the steps produced no commits to publish"
                )
            await self._git.push(
                repo_dir,
                workspace.branch,
                force_with_lease=refresh,
                sink=workspace.sink,
            )
        except GitCommandError as exc:
            raise PublishError(stage="push", cause=str(exc)) from exc
        logger.info("branch pushed", extra={"target": workspace.target.name})

    async def request_review(
        self, workspace: Workspace, *, existing_reference: str | None = None
    ) -> str:
        try:
            return await self._review.submit(
                workspace.paths.repo_dir,
                workspace.branch,
                self._template,
                existing_reference=existing_reference,
                sink=workspace.sink,
            )
        except ReviewProviderError as exc:
            raise PublishError(stage="create_review", cause=str(exc)) from exc


__all__ = ["Publisher"]
