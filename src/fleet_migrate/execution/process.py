"""
fleet-migrate — command runner capability.

File: src/fleet_migrate/execution/process.py
Last updated: 2026-10-19

Purpose
- Single seam through which every external process (git, gh, pre-flight and step
  scripts) is launched, so tests can substitute a scripted runner.

Functional requirements
- Processes are awaited asynchronously; a slow target never blocks the event loop.
- When a ``LogSink`` is given, a ``>> Running <cmd>`` marker is written to both
  logs, then stdout/stderr bytes are appended as they arrive.
- A process that cannot be launched yields exit code 127, matching the shell.
- Cancelling the awaiting task kills the child process.
"""

from __future__ import annotations

import asyncio
import os
import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

_READ_CHUNK = 64 * 1024
_LAUNCH_FAILURE_EXIT_CODE = 127
SHELL = "/bin/sh"


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """What to run, where, and with which extra environment."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    label: str | None = None

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("CommandSpec.argv must not be empty")

    @classmethod
    def shell(
        cls, command: str, *, cwd: Path | None = None, env: Mapping[str, str] | None = None
    ) -> CommandSpec:
        return cls(argv=(SHELL, "-c", command), cwd=cwd, env=dict(env or {}), label=command)

    def build_env(self) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def display(self) -> str:
        return self.label if self.label is not None else shlex.join(self.argv)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured process outcome."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and self.error is None


class LogSink:
    """Append-only stdout/stderr log pair scoped to one target."""

    def __init__(self, stdout_path: Path, stderr_path: Path) -> None:
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self._stdout: IO[bytes] = stdout_path.open("ab")
        self._stderr: IO[bytes] = stderr_path.open("ab")

    def marker(self, command: str) -> None:
        line = f">> Running {command}\n".encode()
        self.write_stdout(line)
        self.write_stderr(line)

    def write_stdout(self, data: bytes) -> None:
        self._stdout.write(data)
        self._stdout.flush()

    def write_stderr(self, data: bytes) -> None:
        self._stderr.write(data)
        self._stderr.flush()

    def close(self) -> None:
        self._stdout.close()
        self._stderr.close()

    def __enter__(self) -> LogSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@runtime_checkable
class CommandRunner(Protocol):
    """Pluggable async process execution interface."""

    async def run(self, spec: CommandSpec, *, sink: LogSink | None = None) -> CommandResult: ...


class SubprocessRunner(CommandRunner):
    """Runs commands with ``asyncio.create_subprocess_exec``."""

    async def run(self, spec: CommandSpec, *, sink: LogSink | None = None) -> CommandResult:
        if sink is not None:
            sink.marker(spec.display())
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            message = f"failed to start {spec.argv[0]}: {exc}"
            if sink is not None:
                sink.write_stderr(f"{message}\n".encode())
            return CommandResult(
                argv=spec.argv,
                exit_code=_LAUNCH_FAILURE_EXIT_CODE,
                stderr=message,
                error=message,
            )

        assert process.stdout is not None  # noqa: S101
        assert process.stderr is not None  # noqa: S101
        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []

        async def _pump(
            stream: asyncio.StreamReader,
            chunks: list[bytes],
            write: Callable[[bytes], None] | None,
        ) -> None:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                chunks.append(chunk)
                if write is not None:
                    write(chunk)

        try:
            await asyncio.gather(
                _pump(process.stdout, stdout_chunks, sink.write_stdout if sink else None),
                _pump(process.stderr, stderr_chunks, sink.write_stderr if sink else None),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return CommandResult(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
        )


__all__ = [
    "SHELL",
    "CommandResult",
    "CommandRunner",
    "CommandSpec",
    "LogSink",
    "SubprocessRunner",
]
