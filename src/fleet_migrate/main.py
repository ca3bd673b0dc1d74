"""Process entrypoint: run the CLI and map every outcome onto a fixed exit code."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Exit codes shared by every subcommand."""

    SUCCESS = 0
    TARGET_FAILED = 1
    CONFIG_ERROR = 2
    LEDGER_ERROR = 3
    INTERNAL_ERROR = 4
    INTERRUPTED = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Console-script and ``python -m fleet_migrate`` target."""

    try:
        from fleet_migrate.ui.cli import run_cli

        return _as_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - last line before the process exits.
        code = _classify(exc)
        _report(exc, code)
        return int(code)


def _as_exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {code.value for code in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        _stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _classify(exc: BaseException) -> ExitCode:
    """First recognised exception in the cause/context chain decides the code."""

    from fleet_migrate.config import ConfigLoadError, ConfigValidationError
    from fleet_migrate.domain.errors import DefinitionError, LedgerError

    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((KeyboardInterrupt,), ExitCode.INTERRUPTED),
        ((LedgerError,), ExitCode.LEDGER_ERROR),
        ((DefinitionError, ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
    )
    for link in _chain(exc):
        for kinds, code in routes:
            if isinstance(link, kinds):
                return code
    return ExitCode.INTERNAL_ERROR


def _chain(exc: BaseException) -> Iterator[BaseException]:
    visited: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in visited:
        visited.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif link.__suppress_context__:
            link = None
        else:
            link = link.__context__


def _report(exc: BaseException, code: ExitCode) -> None:
    if code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
    elif code is ExitCode.INTERRUPTED:
        _stderr("interrupted")
    else:
        _stderr(f"error: {str(exc).strip() or type(exc).__name__}")


def _stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
