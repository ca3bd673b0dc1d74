"""Thin git CLI adapter running through the command runner."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from fleet_migrate.domain.errors import FleetMigrateError
from fleet_migrate.execution.process import CommandResult, CommandRunner, CommandSpec, LogSink

# ``git ls-remote --exit-code`` returns 2 when no matching ref exists.
_LS_REMOTE_NO_MATCH = 2
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class GitCommandError(FleetMigrateError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class GitClient:
    """The version-control operations a migration needs, nothing more."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        executable: str = "git",
        remote: str = "origin",
    ) -> None:
        self._runner = runner
        self.executable = executable
        self.remote = remote

    async def clone(self, repo: str, destination: Path, *, sink: LogSink | None = None) -> None:
        await self._run_git(
            ["clone", "--", repo, destination.as_posix()],
            cwd=destination.parent,
            sink=sink,
        )

    async def remote_branch_exists(
        self, repo_dir: Path, branch: str, *, sink: LogSink | None = None
    ) -> bool:
        result = await self._run_git(
            ["ls-remote", "--exit-code", "--heads", self.remote, branch],
            cwd=repo_dir,
            sink=sink,
            check=False,
        )
        if result.exit_code == 0:
            return True
        if result.exit_code == _LS_REMOTE_NO_MATCH:
            return False
        raise _command_error(result)

    async def create_branch(
        self, repo_dir: Path, branch: str, *, sink: LogSink | None = None
    ) -> None:
        await self._run_git(["checkout", "-b", branch], cwd=repo_dir, sink=sink)
        await self._run_git(["config", "push.default", "current"], cwd=repo_dir, sink=sink)

    async def checkout_remote_branch(
        self, repo_dir: Path, branch: str, *, sink: LogSink | None = None
    ) -> None:
        """Check out ``branch`` tracking the remote copy of it."""

        await self._run_git(["fetch", self.remote, branch], cwd=repo_dir, sink=sink)
        await self._run_git(
            ["checkout", "-B", branch, f"{self.remote}/{branch}"], cwd=repo_dir, sink=sink
        )
        await self._run_git(["config", "push.default", "current"], cwd=repo_dir, sink=sink)

    async def uncommitted_paths(
        self, repo_dir: Path, *, sink: LogSink | None = None
    ) -> tuple[str, ...]:
        """Modified, added, deleted and untracked paths in the working tree."""

        result = await self._run_git(
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"],
            cwd=repo_dir,
            sink=sink,
        )
        return parse_porcelain_z(result.stdout)

    async def unpublished_commit_count(
        self, repo_dir: Path, *, sink: LogSink | None = None
    ) -> int:
        """Commits on HEAD that no ref of the remote contains yet."""

        result = await self._run_git(
            ["rev-list", "--count", "HEAD", "--not", f"--remotes={self.remote}"],
            cwd=repo_dir,
            sink=sink,
        )
        return int(result.stdout.strip() or "0")

    async def push(
        self,
        repo_dir: Path,
        branch: str,
        *,
        force_with_lease: bool = False,
        sink: LogSink | None = None,
    ) -> None:
        args = ["push"]
        if force_with_lease:
            args.append("--force-with-lease")
        args.extend(["--set-upstream", self.remote, branch])
        await self._run_git(args, cwd=repo_dir, sink=sink)

    async def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path,
        sink: LogSink | None = None,
        check: bool = True,
    ) -> CommandResult:
        spec = CommandSpec(argv=(self.executable, *args), cwd=cwd, env=_GIT_ENV)
        result = await self._runner.run(spec, sink=sink)
        if check and not result.ok:
            raise _command_error(result)
        return result


def parse_porcelain_z(output: str) -> tuple[str, ...]:
    """Paths from ``git status --porcelain=v1 -z`` output, in reported order."""

    paths: list[str] = []
    entries = output.split("\0")
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1
        if len(entry) < 4:
            continue
        status, path = entry[:2], entry[3:]
        paths.append(path)
        # Renames and copies carry the original path as the next entry.
        if status[0] in "RC" or status[1] in "RC":
            index += 1
    return tuple(paths)


def _command_error(result: CommandResult) -> GitCommandError:
    return GitCommandError(
        command=result.argv,
        returncode=result.exit_code,
        stdout=result.stdout,
        stderr=result.error or result.stderr,
    )


__all__ = ["GitClient", "GitCommandError", "parse_porcelain_z"]
