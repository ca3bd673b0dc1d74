"""
fleet-migrate — unit tests for the migration orchestrator

File: tests/unit/control_plane/test_migration_orchestrator.py
Last updated: 2026-10-19

Purpose
- Drive whole runs over a scripted command runner and assert on terminal states,
  the persisted status document and what was (not) executed.

What this test file should cover
- Publish, pre-flight skip, uncommitted changes, workspace and publish failures.
- Dry runs, carry-over of satisfied targets, reprocessing and refreshes.
- Identical documents regardless of the concurrency bound.
- Cancellation and ledger failures stop new launches.
- Failed reruns keep an earlier review, unexpected errors stay per target, push-only runs.

Functional requirements
- Offline only; no real git or review service.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from fleet_migrate.control_plane.orchestrator import MigrationOrchestrator, RunOptions
from fleet_migrate.domain.errors import LedgerError
from fleet_migrate.domain.results import FailureKind, TargetState
from fleet_migrate.execution.process import CommandSpec
from fleet_migrate.persistence.codec import decode_document, encode_document
from fleet_migrate.persistence.ledger import StatusLedger

if TYPE_CHECKING:
    from conftest import FakeReviewProvider, ScriptedRunner

Build = Callable[..., tuple[MigrationOrchestrator, StatusLedger]]

PRIOR_TIMES = {"started_at": "2026-10-18T08:00:00Z", "finished_at": "2026-10-18T08:01:00Z"}


def _statuses(ledger: StatusLedger) -> dict[str, TargetState]:
    return {name: result.status for name, result in ledger.document.ordered_results()}


def _pushes(runner: ScriptedRunner, target: str) -> list[tuple[str, ...]]:
    return [
        spec.argv[1:] for spec in runner.commands_for(target) if spec.argv[1:2] == ("push",)
    ]


async def test_all_targets_publish_with_distinct_references(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta"))
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    assert summary.succeeded
    assert set(summary.processed) == {"alpha", "beta"}
    assert _statuses(ledger) == {"alpha": TargetState.PUBLISHED, "beta": TargetState.PUBLISHED}
    persisted = decode_document(path.read_text(encoding="utf-8"))["results"]
    assert persisted["alpha"]["review_reference"] == "https://reviews.example/alpha/1"
    assert persisted["beta"]["review_reference"] == "https://reviews.example/beta/1"
    assert persisted["alpha"]["started_at"] == "2026-10-19T12:00:00Z"
    assert summary.backup_path is not None and summary.backup_path.exists()


async def test_preflight_skip_runs_no_steps(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta"))
    runner.on_script("/usr/bin/true", target="alpha", exit_code=1)
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    assert _statuses(ledger) == {
        "alpha": TargetState.PREFLIGHT_SKIPPED,
        "beta": TargetState.PUBLISHED,
    }
    assert runner.scripts_for("alpha") == ["/usr/bin/true"]
    assert runner.scripts_for("beta") == ["/usr/bin/true", str(path.resolve().parent / "step1.sh")]
    assert _pushes(runner, "alpha") == []
    assert summary.failed == ()


async def test_uncommitted_changes_fail_the_step(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
    tmp_path: Path,
) -> None:
    path = definition_file(targets=("alpha",), steps=("step1.sh", "step2.sh"))
    runner.on_script("step1.sh", stdout="edited README.md\n")
    runner.on_git("status", stdout=" M README.md\0")
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.UNCOMMITTED_CHANGES
    assert result.failure_detail is not None
    assert result.failure_detail.step_index == 0
    assert result.failure_detail.paths == ("README.md",)
    assert summary.failed == ("alpha",)
    assert not any(script.endswith("step2.sh") for script in runner.scripts_for("alpha"))
    log = (tmp_path / "work" / "alpha" / "stdout.log").read_text(encoding="utf-8")
    assert "step1.sh\nedited README.md\n" in log


@pytest.mark.parametrize("dirty_after", [0, 1, 2])
async def test_dirty_tree_stops_at_the_step_that_left_it(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
    dirty_after: int,
) -> None:
    scripts = ("step1.sh", "step2.sh", "step3.sh")
    path = definition_file(targets=("alpha",), steps=scripts)
    culprit = scripts[dirty_after]
    runner.on(
        lambda spec: spec.argv[1:2] == ("status",)
        and runner.last_script.get("alpha", "").endswith(culprit),
        stdout="?? generated.txt\0",
    )
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.UNCOMMITTED_CHANGES
    assert result.failure_detail is not None
    assert result.failure_detail.step_index == dirty_after
    assert result.failure_detail.step_name == f"step {dirty_after}"
    base = path.resolve().parent
    assert runner.scripts_for("alpha") == [
        "/usr/bin/true",
        *(str(base / name) for name in scripts[: dirty_after + 1]),
    ]


async def test_step_exit_code_is_recorded(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta"), steps=("step1.sh", "step2.sh"))
    runner.on_script("step2.sh", target="beta", exit_code=9)
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    detail = ledger.document.results["beta"].failure_detail
    assert detail is not None
    assert (detail.kind, detail.step_index, detail.step_name, detail.exit_code) == (
        FailureKind.STEP_EXIT, 1, "step 1", 9,
    )
    assert ledger.document.results["alpha"].status is TargetState.PUBLISHED
    assert summary.failed == ("beta",)


async def test_tree_check_error_is_a_step_failure(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha",))
    runner.on_git("status", exit_code=128, stderr="fatal: not a git repository")
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.STEP_FAILED
    assert result.failure_detail is not None
    assert result.failure_detail.kind is FailureKind.TREE_CHECK


async def test_workspace_failure_does_not_stop_other_targets(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta"))
    runner.on_git("clone", target="alpha", exit_code=128, stderr="repository not found")
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    assert _statuses(ledger) == {
        "alpha": TargetState.WORKSPACE_FAILED,
        "beta": TargetState.PUBLISHED,
    }
    assert runner.scripts_for("alpha") == []
    assert summary.failed == ("alpha",)


async def test_existing_remote_branch_fails_a_fresh_target(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha",))
    runner.on_git("ls-remote", exit_code=0)
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.WORKSPACE_FAILED
    assert result.failure_detail is not None
    assert "already exists" in result.failure_detail.message


async def test_review_failure_is_publish_failed_at_create_review(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha",))
    review.fail_submit_for.add("alpha")
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.PUBLISH_FAILED
    assert result.review_reference is None
    assert result.failure_detail is not None
    assert result.failure_detail.stage == "create_review"


async def test_dry_run_never_publishes(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta"))
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(dry_run=True)
    )

    summary = await orchestrator.run()

    assert set(_statuses(ledger).values()) == {TargetState.DRY_RUN_COMPLETE}
    assert _pushes(runner, "alpha") == [] and _pushes(runner, "beta") == []
    assert review.submissions == []
    assert summary.succeeded


async def test_satisfied_targets_are_carried_over(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    prior = {
        "alpha": {"status": "published", "review_reference": "https://r/alpha", **PRIOR_TIMES},
        "beta": {"status": "preflight_skipped", **PRIOR_TIMES},
        "gamma": {
            "status": "step_failed",
            "failure_detail": {"kind": "step_exit", "message": "m", "step_index": 0},
            **PRIOR_TIMES,
        },
    }
    path = definition_file(targets=("alpha", "beta", "gamma"), results=prior)
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    summary = await orchestrator.run()

    assert summary.carried_over == ("alpha", "beta")
    assert summary.processed == ("gamma",)
    assert runner.commands_for("alpha") == [] and runner.commands_for("beta") == []
    persisted = decode_document(path.read_text(encoding="utf-8"))["results"]
    assert persisted["alpha"]["finished_at"] == "2026-10-18T08:01:00Z"
    assert persisted["gamma"]["status"] == "published"
    assert _pushes(runner, "gamma") == [("push", "--set-upstream", "origin", "fleet/upgrade")]


async def test_reprocess_refreshes_published_targets(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    previous = "https://reviews.example/alpha/1"
    prior = {"alpha": {"status": "published", "review_reference": previous, **PRIOR_TIMES}}
    path = definition_file(targets=("alpha", "beta"), results=prior)
    runner.on_git("ls-remote", target="alpha", exit_code=0)
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(reprocess=True)
    )

    summary = await orchestrator.run()

    assert summary.carried_over == ()
    assert ledger.document.results["alpha"].review_reference == previous
    assert _pushes(runner, "alpha") == [
        ("push", "--force-with-lease", "--set-upstream", "origin", "fleet/upgrade")
    ]
    assert _pushes(runner, "beta") == [("push", "--set-upstream", "origin", "fleet/upgrade")]
    assert ("alpha", previous) in review.submissions


async def test_failed_review_creation_is_retried_as_refresh(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    prior = {
        "alpha": {
            "status": "publish_failed",
            "failure_detail": {"kind": "publish", "message": "m", "stage": "create_review"},
            **PRIOR_TIMES,
        }
    }
    path = definition_file(targets=("alpha",), results=prior)
    runner.on_git("ls-remote", exit_code=0)
    orchestrator, ledger = build_orchestrator(path, runner, review=review)

    await orchestrator.run()

    assert ledger.document.results["alpha"].status is TargetState.PUBLISHED
    assert _pushes(runner, "alpha")[0][1] == "--force-with-lease"
    assert review.submissions == [("alpha", None)]


async def test_concurrency_bound_does_not_change_the_document(
    tmp_path: Path,
    definition_payload: Callable[..., dict[str, Any]],
    review: FakeReviewProvider,
    build_orchestrator: Build,
    runner: ScriptedRunner,
) -> None:
    names = tuple(f"svc-{index}" for index in range(8))
    runner.on_script("step1.sh", target="svc-3", exit_code=2)
    runner.on_script("/usr/bin/true", target="svc-5", exit_code=1)

    documents: list[str] = []
    for bound in (1, 8):
        root = tmp_path / f"bound-{bound}"
        root.mkdir()
        path = root / "migration.yaml"
        path.write_text(encode_document(definition_payload(targets=names)), encoding="utf-8")
        orchestrator, _ = build_orchestrator(
            path,
            runner,
            review=review,
            options=RunOptions(concurrency=bound),
            work_root=root / "work",
        )
        await orchestrator.run()
        documents.append(path.read_text(encoding="utf-8"))

    assert documents[0] == documents[1]
    results = decode_document(documents[0])["results"]
    assert list(results) == list(names)
    assert results["svc-3"]["status"] == "step_failed"
    assert results["svc-5"]["status"] == "preflight_skipped"


async def test_cancellation_stops_new_launches(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta", "gamma"))
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(concurrency=1)
    )

    def _cancel_during_alpha(spec: CommandSpec) -> bool:
        if spec.argv[0] == "/bin/sh" and spec.argv[2].endswith("step1.sh"):
            orchestrator.cancel_token.cancel("test interrupt")
        return False

    runner.on(_cancel_during_alpha)

    summary = await orchestrator.run()

    assert summary.interrupted
    assert not summary.succeeded
    assert summary.processed == ("alpha",)
    assert summary.not_started == ("beta", "gamma")
    assert _statuses(ledger) == {"alpha": TargetState.PUBLISHED}


async def test_ledger_failure_propagates_after_in_flight_work(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    path = definition_file(targets=("alpha", "beta", "gamma"))
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(concurrency=1)
    )

    async def _broken_record(name: str, result: object) -> None:
        raise LedgerError("disk full")

    monkeypatch.setattr(ledger, "record", _broken_record)

    with pytest.raises(LedgerError, match="disk full"):
        await orchestrator.run()

    assert runner.commands_for("gamma") == []


def test_pool_size_defaults_to_target_count_capped_by_maximum() -> None:
    assert RunOptions().pool_size(3) == 3
    assert RunOptions().pool_size(50) == 8
    assert RunOptions(max_concurrency=2).pool_size(50) == 2
    assert RunOptions(concurrency=20).pool_size(3) == 20
    assert RunOptions().pool_size(0) == 1


async def test_failed_rerun_keeps_the_review_and_next_run_refreshes_it(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    previous = "https://reviews.example/alpha/1"
    prior = {"alpha": {"status": "published", "review_reference": previous, **PRIOR_TIMES}}
    path = definition_file(targets=("alpha",), results=prior)

    runner.on_git("ls-remote", exit_code=0)
    runner.on_script("step1.sh", exit_code=1)
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(reprocess=True)
    )
    await orchestrator.run()

    failed = ledger.document.results["alpha"]
    assert failed.status is TargetState.STEP_FAILED
    assert failed.previous_review_reference == previous
    persisted = decode_document(path.read_text(encoding="utf-8"))["results"]["alpha"]
    assert persisted["previous_review_reference"] == previous
    assert persisted["branch_pushed"] is True

    resume = type(runner)()
    resume.on_git("ls-remote", exit_code=0)
    orchestrator, ledger = build_orchestrator(path, resume, review=review)
    summary = await orchestrator.run()

    assert summary.processed == ("alpha",)
    result = ledger.document.results["alpha"]
    assert result.status is TargetState.PUBLISHED
    assert result.review_reference == previous
    assert _pushes(resume, "alpha") == [
        ("push", "--force-with-lease", "--set-upstream", "origin", "fleet/upgrade")
    ]
    assert review.submissions == [("alpha", previous)]


async def test_unexpected_error_fails_only_that_target(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha", "beta", "gamma"))

    def _explode_in_alpha(spec: CommandSpec) -> bool:
        if spec.argv[0] == "/bin/sh" and spec.argv[2].endswith("step1.sh"):
            if spec.cwd is not None and spec.cwd.parent.name == "alpha":
                raise RuntimeError("boom in alpha")
        return False

    runner.on(_explode_in_alpha)
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(concurrency=2)
    )

    summary = await orchestrator.run()

    assert _statuses(ledger) == {
        "alpha": TargetState.STEP_FAILED,
        "beta": TargetState.PUBLISHED,
        "gamma": TargetState.PUBLISHED,
    }
    detail = ledger.document.results["alpha"].failure_detail
    assert detail is not None
    assert (detail.kind, detail.step_index, detail.stage) == (FailureKind.INTERNAL, 0, "running")
    assert detail.message == "RuntimeError: boom in alpha"
    assert summary.failed == ("alpha",)
    assert summary.not_started == ()
    persisted = decode_document(path.read_text(encoding="utf-8"))["results"]
    assert set(persisted) == {"alpha", "beta", "gamma"}


async def test_skip_review_pushes_without_requesting_a_review(
    definition_file: Callable[..., Path],
    runner: ScriptedRunner,
    review: FakeReviewProvider,
    build_orchestrator: Build,
) -> None:
    path = definition_file(targets=("alpha",))
    orchestrator, ledger = build_orchestrator(
        path, runner, review=review, options=RunOptions(skip_review=True)
    )

    summary = await orchestrator.run()

    result = ledger.document.results["alpha"]
    assert result.status is TargetState.PUSHED
    assert result.branch_pushed
    assert summary.succeeded
    assert _pushes(runner, "alpha") == [("push", "--set-upstream", "origin", "fleet/upgrade")]
    assert review.submissions == []

    later = type(runner)()
    later.on_git("ls-remote", exit_code=0)
    orchestrator, ledger = build_orchestrator(path, later, review=review)
    await orchestrator.run()

    assert ledger.document.results["alpha"].status is TargetState.PUBLISHED
    assert _pushes(later, "alpha")[0][1] == "--force-with-lease"
    assert review.submissions == [("alpha", None)]
