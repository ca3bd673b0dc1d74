"""
fleet-migrate — terminal and JSON output for the CLI commands

File: src/fleet_migrate/ui/render.py
Last updated: 2026-10-19

Purpose
- Status tables, the grouped markdown review report, follow-up outcomes, and
  single-line JSON payloads for ``--json``.
- Colored state labels only on a TTY, and never under ``NO_COLOR`` or ``--no-color``.

Functional requirements
- Rows follow the order targets appear in the migration definition.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Final, TextIO

from fleet_migrate.domain.results import FAILURE_STATES, TargetResult, TargetState
from fleet_migrate.execution.review import ReviewState, ReviewStatus

if TYPE_CHECKING:
    from fleet_migrate.control_plane.followup import FollowupOutcome
    from fleet_migrate.control_plane.orchestrator import RunSummary
    from fleet_migrate.domain.results import StatusDocument

_GREEN: Final[str] = "\x1b[32m"
_RED: Final[str] = "\x1b[31m"
_YELLOW: Final[str] = "\x1b[33m"
_RESET: Final[str] = "\x1b[0m"

# Report sections, in print order.
REPORT_GROUPS: Final[tuple[tuple[ReviewStatus, str], ...]] = (
    (ReviewStatus.CHECKS_FAILED, "Checks Failed"),
    (ReviewStatus.NEEDS_APPROVAL, "Not Approved"),
    (ReviewStatus.MERGEABLE, "Mergeable"),
    (ReviewStatus.MERGED, "Merged"),
    (ReviewStatus.CLOSED, "Closed"),
    (ReviewStatus.UNKNOWN, "Unknown"),
)


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    """Writes plain lines to one stream; only state labels are ever colored."""

    def __init__(self, *, no_color: bool = False, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._color = _color_allowed(no_color, self._stream)

    def _print(self, line: str = "") -> None:
        print(line, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def blank(self) -> None:
        self._print()

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def state(self, state: TargetState | str) -> str:
        """Colorize a state label when the terminal allows it."""

        label = str(state)
        if not self._color:
            return label
        if state in FAILURE_STATES:
            return f"{_RED}{label}{_RESET}"
        if state in (TargetState.PUBLISHED, TargetState.PUSHED, TargetState.DRY_RUN_COMPLETE):
            return f"{_GREEN}{label}{_RESET}"
        return f"{_YELLOW}{label}{_RESET}"

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns sized to the widest visible cell; nothing for no rows."""

        if not rows:
            return

        grid = [[str(cell) for cell in row[: len(headers)]] for row in rows]
        widths = [
            max([len(header), *(_visible_len(row[column]) for row in grid if column < len(row))])
            for column, header in enumerate(headers)
        ]

        def _pad(cells: Sequence[str]) -> str:
            padded = [
                cell + " " * (width - _visible_len(cell))
                for cell, width in zip(list(cells) + [""] * len(widths), widths, strict=False)
            ]
            return "  ".join(padded).rstrip()

        if title:
            self.section(title)
        self._print(f"  {_pad(list(headers))}")
        self._print(f"  {'  '.join('-' * w for w in widths)}")
        for row in grid:
            self._print(f"  {_pad(row)}")


def create_renderer(*, no_color: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, stream=stream)


def emit_json(payload: Mapping[str, object], *, stream: TextIO | None = None) -> None:
    """One compact, key-sorted JSON object per command."""

    print(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False),
        file=stream if stream is not None else sys.stdout,
    )


def status_rows(document: StatusDocument) -> list[list[str]]:
    """One row per target: name, state, review reference, failure detail."""

    rows: list[list[str]] = []
    for name in document.definition.target_names:
        result = document.results.get(name)
        if result is None:
            rows.append([name, "not_run", "", ""])
            continue
        rows.append([name, result.status.value, result.review_reference or "", _detail(result)])
    return rows


def status_payload(document: StatusDocument) -> dict[str, object]:
    targets: list[dict[str, object]] = []
    for name in document.definition.target_names:
        result = document.results.get(name)
        entry: dict[str, object] = {"target": name}
        if result is None:
            entry["status"] = "not_run"
        else:
            entry.update(result.to_payload())
        targets.append(entry)
    return {"command": "check-status", "targets": targets}


def render_status(renderer: CLIRenderer, document: StatusDocument) -> None:
    rows = status_rows(document)
    styled = [[row[0], renderer.state(row[1]), *row[2:]] for row in rows]
    renderer.table(("TARGET", "STATE", "REVIEW", "DETAIL"), styled)


def render_review_report(states: Sequence[ReviewState]) -> str:
    """
    Markdown report of live review states, grouped by status and sorted within a group.

    The Closed and Unknown groups appear only when they have entries.
    """

    grouped: dict[ReviewStatus, list[str]] = {status: [] for status, _ in REPORT_GROUPS}
    for state in states:
        line = f"- {state.reference}"
        if state.detail:
            line += f" ({state.detail})"
        grouped[state.status].append(line)

    lines = ["# Migration Results"]
    for status, title in REPORT_GROUPS:
        entries = sorted(grouped[status])
        if not entries and status in (ReviewStatus.CLOSED, ReviewStatus.UNKNOWN):
            continue
        lines.extend(("", f"## {title}", ""))
        lines.extend(entries)
    return "\n".join(lines)


def review_report_payload(states: Sequence[ReviewState]) -> dict[str, object]:
    return {
        "command": "check-status",
        "reviews": [
            {"reference": state.reference, "status": state.status.value, "detail": state.detail}
            for state in states
        ],
    }


def render_run_summary(renderer: CLIRenderer, summary: RunSummary) -> None:
    processed = set(summary.processed)
    rows = [
        [name, renderer.state(result.status), result.review_reference or "", _detail(result)]
        for name, result in summary.results
        if name in processed
    ]
    renderer.table(("TARGET", "STATE", "REVIEW", "DETAIL"), rows)
    if summary.carried_over:
        renderer.section("Already satisfied by a previous run:")
        renderer.items(list(summary.carried_over))
    if summary.not_started:
        renderer.section("Not started:")
        renderer.items(list(summary.not_started))
    if summary.backup_path is not None:
        renderer.blank()
        renderer.kv("Backup", summary.backup_path)


def run_summary_payload(summary: RunSummary) -> dict[str, object]:
    return {
        "command": "run-migration",
        "processed": list(summary.processed),
        "carried_over": list(summary.carried_over),
        "not_started": list(summary.not_started),
        "failed": list(summary.failed),
        "interrupted": summary.interrupted,
        "backup_path": str(summary.backup_path) if summary.backup_path else None,
    }


def render_followup(renderer: CLIRenderer, outcomes: Sequence[FollowupOutcome]) -> None:
    if not outcomes:
        renderer.text("No targets with a review request.")
        return
    renderer.table(
        ("TARGET", "RESULT", "REVIEW", "DETAIL"),
        [
            [outcome.target, outcome.status.value, outcome.review_reference, outcome.message]
            for outcome in outcomes
        ],
    )


def _detail(result: TargetResult) -> str:
    if result.failure_detail is None:
        return ""
    return result.failure_detail.summary()


def _visible_len(text: str) -> int:
    for code in (_GREEN, _RED, _YELLOW, _RESET):
        text = text.replace(code, "")
    return len(text)


__all__ = [
    "CLIRenderer",
    "REPORT_GROUPS",
    "create_renderer",
    "emit_json",
    "render_followup",
    "render_review_report",
    "render_run_summary",
    "render_status",
    "review_report_payload",
    "run_summary_payload",
    "status_payload",
    "status_rows",
]
