"""Command-line interface router for fleet-migrate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

from fleet_migrate.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
)
from fleet_migrate.constants import (
    DEFAULT_DEFINITION_FILE,
    DEFAULT_FOLLOWUP_DIRECTORY,
)
from fleet_migrate.control_plane import (
    FollowupOutcome,
    FollowupRunner,
    FollowupStatus,
    MigrationOrchestrator,
    RunOptions,
    RunSummary,
)
from fleet_migrate.domain.definition import (
    Checkout,
    Definition,
    ReviewTemplate,
    Step,
    Target,
    definition_to_payload,
)
from fleet_migrate.domain.results import StatusDocument
from fleet_migrate.execution.git import GitClient
from fleet_migrate.execution.process import CommandRunner, SubprocessRunner
from fleet_migrate.execution.publisher import Publisher
from fleet_migrate.execution.review import (
    GitHubCliReviewProvider,
    NoopReviewProvider,
    ReviewProvider,
    ReviewProviderError,
    ReviewState,
    ReviewStatus,
)
from fleet_migrate.execution.step_executor import StepExecutor
from fleet_migrate.execution.workspace_manager import WorkspaceManager
from fleet_migrate.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    setup_logging,
    shutdown_logging,
    verbosity_to_level,
)
from fleet_migrate.persistence.codec import encode_document
from fleet_migrate.persistence.ledger import StatusLedger
from fleet_migrate.ui.render import (
    CLIRenderer,
    create_renderer,
    emit_json,
    render_followup,
    render_review_report,
    render_run_summary,
    render_status,
    review_report_payload,
    run_summary_payload,
    status_payload,
)
from fleet_migrate.utils.concurrency import CancellationToken, cancel_on_signals
from fleet_migrate.utils.fs import atomic_write

logger = logging.getLogger(__name__)

EXIT_TARGET_FAILED: Final[int] = 1
EXIT_INTERRUPTED: Final[int] = 5

_TEMPLATE_DESCRIPTION: Final[str] = (
    "This description is sent verbatim with every pull request.\n\n"
    "Multi-line text is kept as written."
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """A user-facing failure that carries the exit code to return."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """One subcommand per workflow; shared flags come from a parent parser."""

    parser = argparse.ArgumentParser(
        prog="fleet-migrate",
        description=(
            "fleet-migrate — apply a scripted change to many repositories, one review each.\n\n"
            "Common workflows:\n"
            "  fleet-migrate init                                       Write a template\n"
            "  fleet-migrate run-migration --migration-definition migration.yaml\n"
            "  fleet-migrate check-status --results migration.yaml --refresh\n"
            "  fleet-migrate run-followup --migration-definition migration.yaml fix.sh\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    verbosity = common.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-d",
        "--debug",
        action="count",
        default=0,
        help="Enable debug logging.",
    )
    verbosity.add_argument(
        "-w", "--warn", action="store_true", default=False, help="Only log warnings and errors."
    )
    verbosity.add_argument(
        "-e", "--error", action="store_true", default=False, help="Only log errors."
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the runtime TOML config (default: ./fleet-migrate.toml if present).",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # init ----------------------------------------------------------------
    init_parser = subparsers.add_parser(
        "init",
        parents=[common],
        help="Write a template migration definition",
    )
    init_parser.add_argument(
        "--output",
        default=DEFAULT_DEFINITION_FILE,
        help=f"Where to write the template (default: {DEFAULT_DEFINITION_FILE})",
    )
    init_parser.add_argument(
        "--force", action="store_true", help="Overwrite the output file if it exists"
    )
    init_parser.set_defaults(handler=_cmd_init)

    # run-migration -------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run-migration",
        parents=[common],
        help="Run a migration and write the results back into the definition file",
        description=(
            "Clone every target, run the pre-flight check and steps, push, and open one\n"
            "review request per target. Results are written back into the definition\n"
            "file after each target; a timestamped backup is taken first.\n\n"
            "Examples:\n"
            "  fleet-migrate run-migration --migration-definition migration.yaml\n"
            "  fleet-migrate run-migration --migration-definition migration.yaml --dry-run\n"
            "  fleet-migrate run-migration --migration-definition m.yaml --skip-pull-request\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--migration-definition", required=True, dest="definition_path")
    run_parser.add_argument(
        "--work-directory",
        default=None,
        help="Folder where the work takes place (default: run.work_directory, 'work-dir')",
    )
    run_parser.add_argument(
        "--concurrency", type=_positive_int, default=None, help="Targets processed at once"
    )
    publish_mode = run_parser.add_mutually_exclusive_group()
    publish_mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the pre-flight check and steps locally; never push or open reviews",
    )
    publish_mode.add_argument(
        "--skip-pull-request",
        action="store_true",
        dest="skip_review",
        help="Push the branch but do not open or update review requests",
    )
    run_parser.add_argument(
        "--reprocess",
        action="store_true",
        help="Also rerun targets a previous run already published or skipped",
    )
    run_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    run_parser.set_defaults(handler=_cmd_run_migration)

    # check-status --------------------------------------------------------
    status_parser = subparsers.add_parser(
        "check-status",
        parents=[common],
        help="Report the recorded result of every target",
    )
    status_parser.add_argument("--results", required=True, dest="results_path")
    status_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Ask the review service for each review's live state and group the report",
    )
    status_parser.add_argument(
        "--json", action="store_true", help="Emit deterministic JSON output"
    )
    status_parser.set_defaults(handler=_cmd_check_status)

    # run-followup --------------------------------------------------------
    followup_parser = subparsers.add_parser(
        "run-followup",
        parents=[common],
        help="Run a script against every target that has an open review request",
    )
    followup_parser.add_argument("--migration-definition", required=True, dest="definition_path")
    followup_parser.add_argument("script", help="Script to run inside each checked-out branch")
    followup_parser.add_argument(
        "--work-directory",
        default=DEFAULT_FOLLOWUP_DIRECTORY,
        help=f"Folder where the work takes place (default: {DEFAULT_FOLLOWUP_DIRECTORY})",
    )
    followup_parser.add_argument(
        "--concurrency", type=_positive_int, default=None, help="Targets processed at once"
    )
    followup_parser.set_defaults(handler=_cmd_run_followup)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Dispatch to the chosen subcommand; ``CLIError`` and config failures become exit codes."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_init(args: argparse.Namespace) -> int:
    output = Path(args.output).expanduser()
    if output.exists() and not args.force:
        raise CLIError(f"{output} already exists; pass --force to overwrite", exit_code=2)

    template = Definition(
        targets=(Target(name="dummy-repo", repo="git@github.com:example/dummy-repo.git"),),
        checkout=Checkout(branch_name="fleet-migrate/example", preflight_command="/usr/bin/true"),
        pr=ReviewTemplate(title="Example Title", description=_TEMPLATE_DESCRIPTION),
        steps=(Step(name="Example", script_path="examples/example-migration.sh"),),
        base_dir=output.parent,
    )
    try:
        atomic_write(output, encode_document(definition_to_payload(template)).encode("utf-8"))
    except OSError as exc:
        raise CLIError(f"cannot write {output}: {exc}", exit_code=2) from exc

    create_renderer(no_color=args.no_color).kv("Wrote", output)
    return 0


def _cmd_run_migration(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {"run.work_directory": args.work_directory})
    _start_logging(args, config, log_to_file=True)

    definition_path = Path(args.definition_path).expanduser().resolve()
    ledger = StatusLedger.open(definition_path)
    definition = ledger.document.definition
    logger.debug("effective config %s", dump_effective_config(config))

    runner = SubprocessRunner()
    git = _git_client(runner, config)
    options = RunOptions(
        concurrency=args.concurrency,
        max_concurrency=config["run"]["max_concurrency"],
        dry_run=args.dry_run,
        skip_review=args.skip_review,
        reprocess=args.reprocess,
    )
    orchestrator = MigrationOrchestrator(
        definition,
        ledger,
        WorkspaceManager(Path(config["run"]["work_directory"]).expanduser().resolve(), git),
        StepExecutor(definition, runner, git),
        Publisher(git, _review_provider(runner, config), definition.pr),
        options=options,
    )

    async def _run() -> RunSummary:
        with cancel_on_signals(orchestrator.cancel_token):
            return await orchestrator.run()

    summary = asyncio.run(_run())

    if args.json:
        emit_json(run_summary_payload(summary))
    else:
        render_run_summary(_get_renderer(args), summary)

    if summary.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_TARGET_FAILED if summary.failed else 0


def _cmd_check_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _start_logging(args, config, log_to_file=False)

    document = StatusLedger.load(Path(args.results_path).expanduser())
    if not args.refresh:
        if args.json:
            emit_json(status_payload(document))
        else:
            render_status(_get_renderer(args), document)
        return 0

    provider = _review_provider(SubprocessRunner(), config)
    states = asyncio.run(_fetch_review_states(provider, document))
    if args.json:
        emit_json(review_report_payload(states))
    else:
        _get_renderer(args).text(render_review_report(states))
    return 0


def _cmd_run_followup(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    _start_logging(args, config, log_to_file=True)

    document = StatusLedger.load(Path(args.definition_path).expanduser())
    script = Path(args.script).expanduser().resolve()
    if not script.is_file():
        raise CLIError(f"script not found: {script}", exit_code=2)

    runner = SubprocessRunner()
    git = _git_client(runner, config)
    token = CancellationToken()
    followup = FollowupRunner(
        document,
        WorkspaceManager(Path(args.work_directory).expanduser().resolve(), git),
        StepExecutor(document.definition, runner, git),
        git,
        _review_provider(runner, config),
        script=script.as_posix(),
        concurrency=args.concurrency or config["run"]["max_concurrency"],
        cancel_token=token,
    )

    async def _run() -> list[FollowupOutcome]:
        with cancel_on_signals(token):
            return await followup.run()

    outcomes = asyncio.run(_run())
    render_followup(_get_renderer(args), outcomes)

    if token.is_cancelled:
        return EXIT_INTERRUPTED
    if any(outcome.status is FollowupStatus.FAILED for outcome in outcomes):
        return EXIT_TARGET_FAILED
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _fetch_review_states(
    provider: ReviewProvider, document: StatusDocument
) -> list[ReviewState]:
    states: list[ReviewState] = []
    for name, result in document.ordered_results():
        reference = result.known_reference
        if reference is None:
            continue
        try:
            states.append(await provider.fetch_state(reference))
        except ReviewProviderError as exc:
            logger.warning("cannot fetch review state: %s", exc, extra={"target": name})
            states.append(ReviewState(reference, ReviewStatus.UNKNOWN, "state unavailable"))
    return states


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> dict[str, Any]:
    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _start_logging(
    args: argparse.Namespace, config: Mapping[str, Any], *, log_to_file: bool
) -> LoggingHandle:
    observability = config["observability"]
    level = verbosity_to_level(debug=args.debug, warn=args.warn, error=args.error)
    return setup_logging(
        LoggingConfig(
            run_id=_new_run_id(),
            base_log_dir=observability["log_dir"],
            level=level if level is not None else observability["log_level"],
            log_format=observability["log_format"],
            redact_secrets=observability["redact_secrets"],
            color=not args.no_color,
            log_to_file=log_to_file,
        )
    )


def _git_client(runner: CommandRunner, config: Mapping[str, Any]) -> GitClient:
    return GitClient(
        runner, executable=config["git"]["executable"], remote=config["git"]["remote"]
    )


def _review_provider(runner: CommandRunner, config: Mapping[str, Any]) -> ReviewProvider:
    if config["review"]["provider"] == "github":
        return GitHubCliReviewProvider(runner, executable=config["review"]["gh_executable"])
    return NoopReviewProvider(remote_label=config["git"]["remote"])


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(getattr(args, "no_color", False)))


def _new_run_id() -> str:
    return f"{datetime.now(UTC):%Y%m%dT%H%M%SZ}-{uuid.uuid4().hex[:8]}"


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return value


__all__ = [
    "CLIError",
    "build_parser",
    "main",
    "run_cli",
]
