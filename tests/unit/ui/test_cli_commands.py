"""
fleet-migrate — CLI command tests

File: tests/unit/ui/test_cli_commands.py
Last updated: 2026-10-19

Purpose
- Exercise the argparse router and command handlers through the process entrypoint.

What this test file should cover
- init template writing and overwrite refusal.
- check-status table, JSON payload, and the grouped review report.
- Exit-code routing for definition, ledger, and config problems.

Functional requirements
- No network access; check-status --refresh runs with the offline review provider.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from fleet_migrate.execution.review import ReviewState, ReviewStatus
from fleet_migrate.main import ExitCode, cli_entrypoint
from fleet_migrate.persistence.codec import decode_document
from fleet_migrate.persistence.ledger import StatusLedger
from fleet_migrate.ui.render import render_review_report

TIMES = {"started_at": "2026-10-18T08:00:00Z", "finished_at": "2026-10-18T08:01:00Z"}

DUPLICATE_TARGETS = """\
schema_version: 1
targets:
  alpha: git@example.com:org/alpha.git
  alpha: git@example.com:org/alpha-again.git
checkout:
  branch_name: fleet/upgrade
  preflight_command: /usr/bin/true
pr:
  title: Upgrade
  description: Body
steps:
- name: step 0
  script_path: step1.sh
"""


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NO_COLOR", "1")
    for name in ("FLEET_RUN_WORK_DIRECTORY", "FLEET_OBSERVABILITY_LOG_DIR"):
        monkeypatch.delenv(name, raising=False)


def test_init_writes_a_loadable_template(tmp_path: Path) -> None:
    output = tmp_path / "defs" / "migration.yaml"
    output.parent.mkdir()

    assert cli_entrypoint(["init", "--output", str(output)]) == ExitCode.SUCCESS

    document = StatusLedger.load(output)
    assert document.definition.target_names == ("dummy-repo",)
    assert document.definition.checkout.preflight_command == "/usr/bin/true"
    assert document.results == {}


def test_init_refuses_to_overwrite_without_force(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    output = tmp_path / "migration.yaml"
    output.write_text("keep me\n", encoding="utf-8")

    assert cli_entrypoint(["init", "--output", str(output)]) == ExitCode.CONFIG_ERROR
    assert output.read_text(encoding="utf-8") == "keep me\n"
    assert "pass --force to overwrite" in capsys.readouterr().err

    assert cli_entrypoint(["init", "--output", str(output), "--force"]) == ExitCode.SUCCESS
    assert StatusLedger.load(output).definition.target_names == ("dummy-repo",)


def test_check_status_table_lists_every_target(
    definition_file: Callable[..., Path], capsys: pytest.CaptureFixture[str]
) -> None:
    path = definition_file(
        targets=("alpha", "beta", "gamma"),
        results={
            "alpha": {
                "status": "published",
                "review_reference": "https://reviews.example/alpha/1",
                **TIMES,
            },
            "beta": {
                "status": "step_failed",
                "failure_detail": {
                    "kind": "step_exit",
                    "step_index": 0,
                    "exit_code": 2,
                    "message": "step 'step 0' exited with code 2",
                },
                **TIMES,
            },
        },
    )

    assert cli_entrypoint(["check-status", "--results", str(path)]) == ExitCode.SUCCESS

    lines = capsys.readouterr().out.splitlines()
    names = [line.split()[0] for line in lines[2:]]
    assert names == ["alpha", "beta", "gamma"]
    assert "https://reviews.example/alpha/1" in lines[2]
    assert "step_failed" in lines[3]
    assert lines[4].split()[1] == "not_run"


def test_check_status_json(
    definition_file: Callable[..., Path], capsys: pytest.CaptureFixture[str]
) -> None:
    path = definition_file(
        targets=("alpha", "beta"),
        results={"beta": {"status": "preflight_skipped", **TIMES}},
    )

    assert cli_entrypoint(["check-status", "--results", str(path), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["command"] == "check-status"
    assert [entry["target"] for entry in payload["targets"]] == ["alpha", "beta"]
    assert payload["targets"][0]["status"] == "not_run"
    assert payload["targets"][1]["status"] == "preflight_skipped"


def test_check_status_refresh_groups_reviews(
    definition_file: Callable[..., Path],
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    (tmp_path / "fleet-migrate.toml").write_text(
        '[review]\nprovider = "none"\n', encoding="utf-8"
    )
    path = definition_file(
        targets=("alpha",),
        results={"alpha": {"status": "published", "review_reference": "origin/x", **TIMES}},
    )

    assert cli_entrypoint(["check-status", "--results", str(path), "--refresh"]) == 0

    out = capsys.readouterr().out
    assert out.startswith("# Migration Results\n")
    assert "## Unknown\n\n- origin/x" in out


def test_review_report_grouping() -> None:
    report = render_review_report(
        [
            ReviewState("https://r/2", ReviewStatus.MERGEABLE),
            ReviewState("https://r/1", ReviewStatus.CHECKS_FAILED, "failing: lint"),
            ReviewState("https://r/3", ReviewStatus.MERGED),
            ReviewState("https://r/0", ReviewStatus.MERGEABLE),
        ]
    )

    assert report == "\n".join(
        [
            "# Migration Results",
            "",
            "## Checks Failed",
            "",
            "- https://r/1 (failing: lint)",
            "",
            "## Not Approved",
            "",
            "",
            "## Mergeable",
            "",
            "- https://r/0",
            "- https://r/2",
            "",
            "## Merged",
            "",
            "- https://r/3",
        ]
    )


def test_duplicate_targets_abort_before_any_work(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "migration.yaml"
    path.write_text(DUPLICATE_TARGETS, encoding="utf-8")

    exit_code = cli_entrypoint(["run-migration", "--migration-definition", str(path)])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "duplicate" in capsys.readouterr().err
    assert not (tmp_path / "work-dir").exists()
    assert path.read_text(encoding="utf-8") == DUPLICATE_TARGETS
    assert list(tmp_path.glob("migration.yaml.*.bak")) == []


def test_unreadable_results_are_ledger_errors(
    definition_file: Callable[..., Path], capsys: pytest.CaptureFixture[str]
) -> None:
    path = definition_file(targets=("alpha",), results={"alpha": {"status": "exploded"}})

    exit_code = cli_entrypoint(["check-status", "--results", str(path)])

    assert exit_code == ExitCode.LEDGER_ERROR
    assert capsys.readouterr().err.startswith("error: ")


def test_invalid_runtime_config_is_a_config_error(
    definition_file: Callable[..., Path], tmp_path: Path
) -> None:
    (tmp_path / "fleet-migrate.toml").write_text("[run]\nmax_concurrency = 0\n", "utf-8")
    path = definition_file(targets=("alpha",))

    exit_code = cli_entrypoint(["check-status", "--results", str(path)])

    assert exit_code == ExitCode.CONFIG_ERROR


def test_missing_followup_script_is_a_config_error(
    definition_file: Callable[..., Path], tmp_path: Path
) -> None:
    path = definition_file(targets=("alpha",))

    exit_code = cli_entrypoint(
        ["run-followup", "--migration-definition", str(path), str(tmp_path / "absent.sh")]
    )

    assert exit_code == ExitCode.CONFIG_ERROR


def test_bad_concurrency_flag_is_rejected_by_the_parser(
    definition_file: Callable[..., Path],
) -> None:
    path = definition_file(targets=("alpha",))

    exit_code = cli_entrypoint(
        ["run-migration", "--migration-definition", str(path), "--concurrency", "0"]
    )

    assert exit_code == ExitCode.CONFIG_ERROR


def test_dry_run_and_skip_pull_request_are_exclusive(
    definition_file: Callable[..., Path], capsys: pytest.CaptureFixture[str]
) -> None:
    path = definition_file(targets=("alpha",))

    exit_code = cli_entrypoint(
        [
            "run-migration", "--migration-definition", str(path),
            "--dry-run", "--skip-pull-request",
        ]
    )

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "not allowed with argument" in capsys.readouterr().err
    assert decode_document(path.read_text(encoding="utf-8")).get("results") is None
