"""
fleet-migrate — per-target workspace lifecycle.

File: src/fleet_migrate/execution/workspace_manager.py
Last updated: 2026-10-19

Purpose
- Produce ``<work-root>/<sanitized-target-name>/repo``: a fresh clone with the
  migration branch checked out, plus append-only ``stdout.log``/``stderr.log``.

Functional requirements
- Sanitized names only use ``[A-Za-z0-9._-]``; a short digest of the original name
  is appended whenever anything was replaced so distinct names never collide.
- A stale workspace from a previous run is removed first, and only inside the work root.
- The migration branch must not already exist on the remote unless the caller
  allows it (refresh and follow-up runs).
- Any failure is reported as ``WorkspaceError`` and leaves no open log handles.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from fleet_migrate.constants import WORKSPACE_REPO_DIR, WORKSPACE_STDERR_LOG, WORKSPACE_STDOUT_LOG
from fleet_migrate.domain.definition import Target
from fleet_migrate.domain.errors import WorkspaceError
from fleet_migrate.execution.git import GitClient, GitCommandError
from fleet_migrate.execution.process import LogSink
from fleet_migrate.utils.fs import safe_delete

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_DIGEST_LENGTH = 8


def sanitize_target_name(name: str) -> str:
    sanitized = _UNSAFE_CHARS.sub("_", name)
    if sanitized == name and sanitized.strip("."):
        return sanitized
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    return f"{sanitized}-{digest}"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved workspace path bundle."""

    root: Path
    repo_dir: Path
    stdout_log: Path
    stderr_log: Path


@dataclass(slots=True)
class Workspace:
    """A prepared target workspace; owned by exactly one worker."""

    target: Target
    branch: str
    paths: WorkspacePaths
    sink: LogSink

    def close(self) -> None:
        self.sink.close()


class WorkspaceManager:
    """Create isolated clone workspaces under one work root."""

    def __init__(self, work_root: Path, git: GitClient) -> None:
        self._work_root = work_root.expanduser().resolve(strict=False)
        self._git = git

    @property
    def work_root(self) -> Path:
        return self._work_root

    def paths_for(self, target_name: str) -> WorkspacePaths:
        root = self._work_root / sanitize_target_name(target_name)
        return WorkspacePaths(
            root=root,
            repo_dir=root / WORKSPACE_REPO_DIR,
            stdout_log=root / WORKSPACE_STDOUT_LOG,
            stderr_log=root / WORKSPACE_STDERR_LOG,
        )

    async def prepare(
        self,
        target: Target,
        branch: str,
        *,
        allow_existing_branch: bool = False,
    ) -> Workspace:
        """Clone ``target`` and check out a new local ``branch``."""

        workspace = await asyncio.to_thread(self._create_directories, target, branch)
        repo_dir = workspace.paths.repo_dir
        try:
            await self._git.clone(target.repo, repo_dir, sink=workspace.sink)
            if await self._git.remote_branch_exists(repo_dir, branch, sink=workspace.sink):
                if not allow_existing_branch:
                    raise WorkspaceError(
                        f"branch {branch!r} already exists on the remote of {target.repo}"
                    )
                logger.info(
                    "remote branch already exists; refreshing",
                    extra={"target": target.name, "branch": branch},
                )
            await self._git.create_branch(repo_dir, branch, sink=workspace.sink)
        except GitCommandError as exc:
            workspace.close()
            raise WorkspaceError(f"{target.name}: {exc}") from exc
        except BaseException:
            workspace.close()
            raise
        return workspace

    async def prepare_existing_branch(self, target: Target, branch: str) -> Workspace:
        """Clone ``target`` and check out the already-published ``branch``."""

        workspace = await asyncio.to_thread(self._create_directories, target, branch)
        try:
            await self._git.clone(target.repo, workspace.paths.repo_dir, sink=workspace.sink)
            await self._git.checkout_remote_branch(
                workspace.paths.repo_dir, branch, sink=workspace.sink
            )
        except GitCommandError as exc:
            workspace.close()
            raise WorkspaceError(f"{target.name}: {exc}") from exc
        except BaseException:
            workspace.close()
            raise
        return workspace

    def _create_directories(self, target: Target, branch: str) -> Workspace:
        paths = self.paths_for(target.name)
        try:
            self._work_root.mkdir(parents=True, exist_ok=True)
            if paths.root.exists() or paths.root.is_symlink():
                logger.debug("removing stale workspace", extra={"target": target.name})
                safe_delete(paths.root, self._work_root)
            paths.root.mkdir(parents=True)
            sink = LogSink(paths.stdout_log, paths.stderr_log)
        except (OSError, ValueError) as exc:
            raise WorkspaceError(
                f"{target.name}: cannot create workspace {paths.root}: {exc}"
            ) from exc
        return Workspace(target=target, branch=branch, paths=paths, sink=sink)


__all__ = [
    "Workspace",
    "WorkspaceManager",
    "WorkspacePaths",
    "sanitize_target_name",
]
