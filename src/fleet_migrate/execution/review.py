"""
fleet-migrate — code-review providers.

File: src/fleet_migrate/execution/review.py
Last updated: 2026-10-19

Purpose
- Open or update one review request per target and report its live state.

Functional requirements
- ``GitHubCliReviewProvider`` drives the ``gh`` CLI through the command runner;
  the review reference is the pull-request URL printed by ``gh pr create``.
- An existing reference is updated in place while it is still open; a closed or
  merged one is replaced by a new request.
- ``NoopReviewProvider`` never talks to a service; it is used for offline runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final, Protocol, runtime_checkable

from fleet_migrate.domain.definition import ReviewTemplate
from fleet_migrate.domain.errors import FleetMigrateError
from fleet_migrate.execution.process import CommandRunner, CommandSpec, LogSink

logger = logging.getLogger(__name__)

_FAILED_CHECK_VALUES: Final[frozenset[str]] = frozenset(
    {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}
)
_UNAPPROVED_DECISIONS: Final[frozenset[str]] = frozenset({"REVIEW_REQUIRED", "CHANGES_REQUESTED"})
_VIEW_FIELDS: Final[str] = "url,state,mergeable,reviewDecision,statusCheckRollup"


class ReviewProviderError(FleetMigrateError):
    """Raised when the review service rejects or cannot answer a request."""


class ReviewStatus(StrEnum):
    CHECKS_FAILED = "checks_failed"
    NEEDS_APPROVAL = "needs_approval"
    MERGEABLE = "mergeable"
    MERGED = "merged"
    CLOSED = "closed"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class ReviewState:
    reference: str
    status: ReviewStatus
    detail: str = ""


@runtime_checkable
class ReviewProvider(Protocol):
    """Code-review capability: ``(branch, title, description)`` in, durable reference out."""

    async def submit(
        self,
        repo_dir: Path,
        branch: str,
        template: ReviewTemplate,
        *,
        existing_reference: str | None = None,
        sink: LogSink | None = None,
    ) -> str: ...

    async def fetch_state(self, reference: str) -> ReviewState: ...


class GitHubCliReviewProvider(ReviewProvider):
    """GitHub pull requests through the ``gh`` CLI."""

    def __init__(self, runner: CommandRunner, *, executable: str = "gh") -> None:
        self._runner = runner
        self.executable = executable

    async def submit(
        self,
        repo_dir: Path,
        branch: str,
        template: ReviewTemplate,
        *,
        existing_reference: str | None = None,
        sink: LogSink | None = None,
    ) -> str:
        if existing_reference is not None:
            state = await self.fetch_state(existing_reference, cwd=repo_dir)
            if state.status not in (ReviewStatus.MERGED, ReviewStatus.CLOSED):
                await self._gh(
                    [
                        "pr", "edit", existing_reference,
                        "--title", template.title,
                        "--body", template.description,
                    ],
                    cwd=repo_dir,
                    sink=sink,
                )
                logger.info("updated pull request", extra={"url": existing_reference})
                return existing_reference
            logger.info(
                "previous pull request is no longer open; creating a new one",
                extra={"url": existing_reference, "review_status": state.status.value},
            )

        stdout = await self._gh(
            [
                "pr", "create",
                "--head", branch,
                "--title", template.title,
                "--body", template.description,
            ],
            cwd=repo_dir,
            sink=sink,
        )
        reference = _last_line(stdout)
        if not reference:
            raise ReviewProviderError("gh pr create printed no pull request URL")
        logger.info("created pull request", extra={"url": reference})
        return reference

    async def fetch_state(self, reference: str, *, cwd: Path | None = None) -> ReviewState:
        stdout = await self._gh(["pr", "view", reference, "--json", _VIEW_FIELDS], cwd=cwd)
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ReviewProviderError(f"unreadable gh output for {reference}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ReviewProviderError(f"unexpected gh output for {reference}")
        return classify_pull_request(reference, payload)

    async def _gh(
        self, args: list[str], *, cwd: Path | None, sink: LogSink | None = None
    ) -> str:
        result = await self._runner.run(
            CommandSpec(argv=(self.executable, *args), cwd=cwd, env={"GH_PROMPT_DISABLED": "1"}),
            sink=sink,
        )
        if not result.ok:
            message = (result.error or result.stderr).strip() or f"exit code {result.exit_code}"
            raise ReviewProviderError(f"{self.executable} {args[0]} {args[1]} failed: {message}")
        return result.stdout


class NoopReviewProvider(ReviewProvider):
    """Records the pushed branch as the reference; never contacts a review service."""

    def __init__(self, *, remote_label: str = "origin") -> None:
        self._remote_label = remote_label

    async def submit(
        self,
        repo_dir: Path,
        branch: str,
        template: ReviewTemplate,
        *,
        existing_reference: str | None = None,
        sink: LogSink | None = None,
    ) -> str:
        if existing_reference is not None:
            return existing_reference
        return f"{self._remote_label}/{branch}"

    async def fetch_state(self, reference: str) -> ReviewState:
        return ReviewState(reference=reference, status=ReviewStatus.UNKNOWN)


def classify_pull_request(reference: str, payload: dict[str, object]) -> ReviewState:
    """Fold ``gh pr view --json`` output into one of the report groups."""

    url = payload.get("url")
    resolved = url if isinstance(url, str) and url else reference
    state = str(payload.get("state") or "").upper()
    if state == "MERGED":
        return ReviewState(resolved, ReviewStatus.MERGED)
    if state == "CLOSED":
        return ReviewState(resolved, ReviewStatus.CLOSED)

    if str(payload.get("mergeable") or "").upper() == "CONFLICTING":
        return ReviewState(resolved, ReviewStatus.CHECKS_FAILED, "merge conflicts")

    checks = payload.get("statusCheckRollup") or []
    if isinstance(checks, list):
        failing = [
            str(check.get("name") or check.get("context") or "?")
            for check in checks
            if isinstance(check, dict)
            and (
                str(check.get("conclusion") or "").upper() in _FAILED_CHECK_VALUES
                or str(check.get("state") or "").upper() in _FAILED_CHECK_VALUES
            )
        ]
        if failing:
            return ReviewState(resolved, ReviewStatus.CHECKS_FAILED, ", ".join(sorted(failing)))

    if str(payload.get("reviewDecision") or "").upper() in _UNAPPROVED_DECISIONS:
        return ReviewState(resolved, ReviewStatus.NEEDS_APPROVAL)
    return ReviewState(resolved, ReviewStatus.MERGEABLE)


def _last_line(text: str) -> str:
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""


__all__ = [
    "GitHubCliReviewProvider",
    "NoopReviewProvider",
    "ReviewProvider",
    "ReviewProviderError",
    "ReviewState",
    "ReviewStatus",
    "classify_pull_request",
]
