"""
fleet-migrate — pre-flight and step execution policy.

File: src/fleet_migrate/execution/step_executor.py
Last updated: 2026-10-19

Purpose
- Run the pre-flight command, then each step script in order, inside a prepared
  workspace with the clone root as working directory.

Functional requirements
- Pre-flight exit 0 means "migrate"; any other exit means the target is skipped.
- A step exiting non-zero raises ``StepFailure``; later steps never run.
- After every step exiting 0 the working tree must be clean; otherwise
  ``UncommittedChangesFailure`` is raised and later steps never run.
- No retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from fleet_migrate.constants import (
    ENV_BRANCH,
    ENV_REPO,
    ENV_STEP_INDEX,
    ENV_STEP_NAME,
    ENV_TARGET_NAME,
)
from fleet_migrate.domain.definition import Definition
from fleet_migrate.domain.errors import StepFailure, UncommittedChangesFailure
from fleet_migrate.execution.git import GitClient
from fleet_migrate.execution.process import CommandRunner, CommandSpec
from fleet_migrate.execution.workspace_manager import Workspace
from fleet_migrate.observability.logging import correlation_scope

logger = logging.getLogger(__name__)


def script_environment(workspace: Workspace) -> dict[str, str]:
    """Variables every script of a target receives on top of the process environment."""

    env = workspace.target.environment
    env[ENV_TARGET_NAME] = workspace.target.name
    env[ENV_REPO] = workspace.target.repo
    env[ENV_BRANCH] = workspace.branch
    return env


class StepExecutor:
    """Applies the pre-flight and step policy for one definition."""

    def __init__(self, definition: Definition, runner: CommandRunner, git: GitClient) -> None:
        self._definition = definition
        self._runner = runner
        self._git = git

    async def run_preflight(self, workspace: Workspace) -> bool:
        """Return ``True`` when the target still needs the migration."""

        command = self._definition.resolve_command(self._definition.checkout.preflight_command)
        result = await self._runner.run(
            CommandSpec.shell(
                command, cwd=workspace.paths.repo_dir, env=script_environment(workspace)
            ),
            sink=workspace.sink,
        )
        if result.exit_code == 0:
            logger.info("pre-flight says migrate", extra={"target": workspace.target.name})
            return True
        logger.info(
            "pre-flight says skip",
            extra={"target": workspace.target.name, "exit_code": result.exit_code},
        )
        return False

    async def run_steps(
        self,
        workspace: Workspace,
        *,
        on_step_start: Callable[[int], None] | None = None,
    ) -> None:
        """Run every step in order; raise on the first failing one."""

        for index, step in enumerate(self._definition.steps):
            if on_step_start is not None:
                on_step_start(index)
            with correlation_scope(step=step.name):
                await self.run_script(
                    workspace,
                    self._definition.resolve_command(step.script_path),
                    step_index=index,
                    step_name=step.name,
                    extra_env={ENV_STEP_NAME: step.name, ENV_STEP_INDEX: str(index)},
                )

    async def run_script(
        self,
        workspace: Workspace,
        command: str,
        *,
        step_index: int,
        step_name: str,
        extra_env: Mapping[str, str] | None = None,
    ) -> None:
        """Run one script and enforce the clean-tree rule after a zero exit."""

        env = script_environment(workspace)
        env.update(extra_env or {})
        logger.info(
            "running step",
            extra={"target": workspace.target.name, "step_index": step_index},
        )
        result = await self._runner.run(
            CommandSpec.shell(command, cwd=workspace.paths.repo_dir, env=env),
            sink=workspace.sink,
        )
        if result.exit_code != 0:
            logger.warning(
                "step exited non-zero",
                extra={
                    "target": workspace.target.name,
                    "step_index": step_index,
                    "exit_code": result.exit_code,
                },
            )
            raise StepFailure(
                step_index=step_index, step_name=step_name, exit_code=result.exit_code
            )

        dirty = await self._git.uncommitted_paths(workspace.paths.repo_dir, sink=workspace.sink)
        if dirty:
            raise UncommittedChangesFailure(
                step_index=step_index, step_name=step_name, paths=dirty
            )


__all__ = ["StepExecutor", "script_environment"]
