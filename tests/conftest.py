"""Shared fixtures: a scripted command runner and migration definition builders."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from fleet_migrate.control_plane.orchestrator import MigrationOrchestrator, RunOptions
from fleet_migrate.domain.definition import ReviewTemplate
from fleet_migrate.execution.git import GitClient
from fleet_migrate.execution.process import SHELL, CommandResult, CommandSpec, LogSink
from fleet_migrate.execution.publisher import Publisher
from fleet_migrate.execution.review import (
    NoopReviewProvider,
    ReviewProvider,
    ReviewProviderError,
    ReviewState,
    ReviewStatus,
)
from fleet_migrate.execution.step_executor import StepExecutor
from fleet_migrate.execution.workspace_manager import WorkspaceManager
from fleet_migrate.observability.logging import shutdown_logging
from fleet_migrate.persistence.codec import encode_document
from fleet_migrate.persistence.ledger import StatusLedger

FIXED_NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC)

Predicate = Callable[[CommandSpec], bool]


def fixed_now() -> datetime:
    return FIXED_NOW


def target_of(spec: CommandSpec) -> str | None:
    """Workspace directory name a command runs for (``<work>/<target>/repo``)."""

    if spec.argv[1:2] == ("clone",):
        return Path(spec.argv[-1]).parent.name
    if spec.cwd is None:
        return None
    return spec.cwd.parent.name


def is_git(spec: CommandSpec, subcommand: str) -> bool:
    return spec.argv[0] == "git" and spec.argv[1:2] == (subcommand,)


def is_script(spec: CommandSpec, name: str) -> bool:
    return spec.argv[0] == SHELL and spec.argv[2].endswith(name)


def _for_target(spec: CommandSpec, target: str | None) -> bool:
    return target is None or target_of(spec) == target


@dataclass
class _Rule:
    predicate: Predicate
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class ScriptedRunner:
    """
    In-memory ``CommandRunner``.

    Every command succeeds unless a rule matches; the defaults model a remote
    without the migration branch, clean trees and one new commit per target.
    The most recently added matching rule wins.
    """

    calls: list[CommandSpec] = field(default_factory=list)
    last_script: dict[str, str] = field(default_factory=dict)
    _rules: list[_Rule] = field(default_factory=list)

    def on(
        self, predicate: Predicate, *, exit_code: int = 0, stdout: str = "", stderr: str = ""
    ) -> None:
        self._rules.append(_Rule(predicate, exit_code, stdout, stderr))

    def on_git(self, subcommand: str, *, target: str | None = None, **outcome: Any) -> None:
        self.on(
            lambda spec: is_git(spec, subcommand) and _for_target(spec, target), **outcome
        )

    def on_script(self, name: str, *, target: str | None = None, **outcome: Any) -> None:
        self.on(
            lambda spec: is_script(spec, name) and _for_target(spec, target), **outcome
        )

    async def run(self, spec: CommandSpec, *, sink: LogSink | None = None) -> CommandResult:
        self.calls.append(spec)
        target = target_of(spec)
        if spec.argv[0] == SHELL and target is not None:
            self.last_script[target] = spec.argv[2]
        if sink is not None:
            sink.marker(spec.display())
        for rule in reversed(self._rules):
            if rule.predicate(spec):
                if sink is not None and rule.stdout:
                    sink.write_stdout(rule.stdout.encode())
                return CommandResult(spec.argv, rule.exit_code, rule.stdout, rule.stderr)
        return self._default(spec)

    def _default(self, spec: CommandSpec) -> CommandResult:
        if is_git(spec, "ls-remote"):
            return CommandResult(spec.argv, 2)
        if is_git(spec, "rev-list"):
            return CommandResult(spec.argv, 0, "1\n")
        return CommandResult(spec.argv, 0)

    def commands_for(self, target: str) -> list[CommandSpec]:
        return [spec for spec in self.calls if target_of(spec) == target]

    def scripts_for(self, target: str) -> list[str]:
        return [spec.argv[2] for spec in self.commands_for(target) if spec.argv[0] == SHELL]


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@dataclass
class FakeReviewProvider:
    """Review service double: one URL per workspace, scripted live states and failures."""

    states: dict[str, ReviewStatus] = field(default_factory=dict)
    fail_submit_for: set[str] = field(default_factory=set)
    submissions: list[tuple[str, str | None]] = field(default_factory=list)

    async def submit(
        self,
        repo_dir: Path,
        branch: str,
        template: ReviewTemplate,
        *,
        existing_reference: str | None = None,
        sink: LogSink | None = None,
    ) -> str:
        target = repo_dir.parent.name
        self.submissions.append((target, existing_reference))
        if target in self.fail_submit_for:
            raise ReviewProviderError(f"review service rejected {target}")
        return existing_reference or f"https://reviews.example/{target}/1"

    async def fetch_state(self, reference: str) -> ReviewState:
        return ReviewState(reference, self.states.get(reference, ReviewStatus.MERGEABLE))


@pytest.fixture
def review() -> FakeReviewProvider:
    return FakeReviewProvider()


@pytest.fixture
def definition_payload() -> Callable[..., dict[str, Any]]:
    def _payload(
        targets: Sequence[str] = ("alpha", "beta"),
        steps: Sequence[str] = ("step1.sh",),
        preflight: str = "/usr/bin/true",
        results: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "schema_version": 1,
            "targets": {name: f"git@example.com:org/{name}.git" for name in targets},
            "checkout": {"branch_name": "fleet/upgrade", "preflight_command": preflight},
            "pr": {"title": "Upgrade the thing", "description": "Line one.\n\nLine two.\n"},
            "steps": [
                {"name": f"step {index}", "script_path": path}
                for index, path in enumerate(steps)
            ],
        }
        if results:
            payload["results"] = dict(results)
        return payload

    return _payload


@pytest.fixture
def definition_file(
    tmp_path: Path, definition_payload: Callable[..., dict[str, Any]]
) -> Callable[..., Path]:
    def _write(**kwargs: Any) -> Path:
        path = tmp_path / "migration.yaml"
        path.write_text(encode_document(definition_payload(**kwargs)), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def build_orchestrator(
    tmp_path: Path,
) -> Callable[..., tuple[MigrationOrchestrator, StatusLedger]]:
    def _build(
        path: Path,
        runner: ScriptedRunner,
        *,
        options: RunOptions | None = None,
        review: ReviewProvider | None = None,
        work_root: Path | None = None,
    ) -> tuple[MigrationOrchestrator, StatusLedger]:
        ledger = StatusLedger.open(path, now_fn=fixed_now)
        definition = ledger.document.definition
        git = GitClient(runner)
        orchestrator = MigrationOrchestrator(
            definition,
            ledger,
            WorkspaceManager(work_root or tmp_path / "work", git),
            StepExecutor(definition, runner, git),
            Publisher(git, review or NoopReviewProvider(), definition.pr),
            options=options,
            now_fn=fixed_now,
        )
        return orchestrator, ledger

    return _build


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    shutdown_logging()
