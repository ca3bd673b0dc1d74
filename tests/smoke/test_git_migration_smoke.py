"""
fleet-migrate — end-to-end smoke test against real git repositories

File: tests/smoke/test_git_migration_smoke.py
Last updated: 2026-10-19

Purpose
- Run the CLI over local bare repositories: clone, pre-flight, step, push, and results write-back.

What this test file should cover
- A migrated target gets a pushed branch and a published result.
- A target whose pre-flight says skip is recorded and left untouched.
- A second run carries satisfied targets over without pushing again.
"""

from __future__ import annotations

import shutil
import subprocess
import textwrap
from pathlib import Path

import pytest

from fleet_migrate.domain.results import TargetState
from fleet_migrate.main import ExitCode, cli_entrypoint
from fleet_migrate.persistence.ledger import StatusLedger

pytestmark = [
    pytest.mark.smoke,
    pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available"),
]

_IDENTITY = ("-c", "user.name=Fleet Smoke", "-c", "user.email=smoke@example.com")


def _git(*args: str, cwd: Path | None = None) -> str:
    completed = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return completed.stdout


def _bare_origin(root: Path, name: str) -> Path:
    bare = root / f"{name}.git"
    _git("init", "-q", "--bare", "--initial-branch=main", str(bare))
    seed = root / f"{name}-seed"
    _git("init", "-q", "--initial-branch=main", str(seed))
    (seed / "README.md").write_text(f"# {name}\n", encoding="utf-8")
    _git("add", "README.md", cwd=seed)
    _git(*_IDENTITY, "commit", "-q", "-m", "Initial commit", cwd=seed)
    _git("push", "-q", str(bare), "main", cwd=seed)
    return bare


def _script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body).lstrip(), encoding="utf-8")
    path.chmod(0o755)
    return path


def _remote_branches(bare: Path) -> list[str]:
    output = _git("--git-dir", str(bare), "for-each-ref", "--format=%(refname:short)")
    return sorted(output.split())


def test_run_migration_against_local_repositories(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    origins = tmp_path / "origins"
    origins.mkdir()
    alpha = _bare_origin(origins, "alpha")
    beta = _bare_origin(origins, "beta")

    _script(tmp_path / "preflight.sh", '[ -z "$SKIP_ME" ]\n')
    _script(
        tmp_path / "step1.sh",
        """
        set -e
        echo "migrated by $FLEET_STEP_NAME" > MIGRATED.txt
        git add MIGRATED.txt
        git -c user.name=Fleet -c user.email=fleet@example.com \\
            commit -q -m "Migrate $FLEET_TARGET_NAME"
        """,
    )
    (tmp_path / "fleet-migrate.toml").write_text(
        '[review]\nprovider = "none"\n', encoding="utf-8"
    )
    definition = tmp_path / "migration.yaml"
    definition.write_text(
        textwrap.dedent(
            f"""\
            schema_version: 1
            targets:
              alpha: {alpha.as_posix()}
              beta:
                repo: {beta.as_posix()}
                env:
                  SKIP_ME: "1"
            checkout:
              branch_name: fleet/smoke
              preflight_command: preflight.sh
            pr:
              title: Smoke migration
              description: Adds MIGRATED.txt
            steps:
            - name: add marker
              script_path: step1.sh
            """
        ),
        encoding="utf-8",
    )
    original = definition.read_bytes()

    exit_code = cli_entrypoint(["run-migration", "--migration-definition", str(definition)])

    assert exit_code == ExitCode.SUCCESS
    results = StatusLedger.load(definition).results
    assert results["alpha"].status is TargetState.PUBLISHED
    assert results["alpha"].review_reference == "origin/fleet/smoke"
    assert results["beta"].status is TargetState.PREFLIGHT_SKIPPED

    assert _remote_branches(alpha) == ["fleet/smoke", "main"]
    assert _remote_branches(beta) == ["main"]
    subject = _git("--git-dir", str(alpha), "log", "-1", "--format=%s", "fleet/smoke")
    assert subject.strip() == "Migrate alpha"
    marker = _git("--git-dir", str(alpha), "show", "fleet/smoke:MIGRATED.txt")
    assert marker == "migrated by add marker\n"

    (backup,) = tmp_path.glob("migration.yaml.*.bak")
    assert backup.read_bytes() == original
    log_text = (tmp_path / "work-dir" / "alpha" / "stdout.log").read_text(encoding="utf-8")
    assert ">> Running " in log_text

    tip = _git("--git-dir", str(alpha), "rev-parse", "fleet/smoke")
    assert cli_entrypoint(["run-migration", "--migration-definition", str(definition)]) == 0
    assert _git("--git-dir", str(alpha), "rev-parse", "fleet/smoke") == tip
    assert StatusLedger.load(definition).results == results
