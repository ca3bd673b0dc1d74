"""
fleet-migrate — status ledger.

File: src/fleet_migrate/persistence/ledger.py
Last updated: 2026-10-19

Purpose
- Own the single mutable status document (the definition file plus ``results``).
- Take a one-time backup of the on-disk bytes before a run touches anything.
- Record target results one at a time, persisting the whole document atomically.

Functional requirements
- ``snapshot`` writes ``<file>.<UTC timestamp>.bak`` byte-for-byte equal to the
  document read at open time, exactly once per ledger.
- ``record`` merges and persists inside one ``asyncio.Lock`` critical section.
- Every read or write failure surfaces as ``LedgerError``.

Non-functional requirements
- Writes use temp file + ``os.replace`` so a crash never leaves a torn document.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from fleet_migrate.domain.definition import Definition, parse_definition
from fleet_migrate.domain.errors import DefinitionError, DefinitionIssue, LedgerError
from fleet_migrate.domain.results import StatusDocument, TargetResult, parse_results, utc_now
from fleet_migrate.persistence.codec import CodecError, decode_document, encode_document
from fleet_migrate.utils.fs import atomic_write

logger = logging.getLogger(__name__)

_BACKUP_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"


def load_definition(path: Path) -> Definition:
    """Read and validate only the definition part of a document."""

    definition, _ = _read(path)
    return definition


def read_status_document(path: Path) -> StatusDocument:
    """Read a document with its prior results; definition problems raise ``DefinitionError``."""

    definition, raw_results = _read(path)
    return StatusDocument(definition=definition, results=parse_results(raw_results, definition))


class StatusLedger:
    """Serialized writer for one status document."""

    def __init__(
        self,
        path: Path,
        document: StatusDocument,
        *,
        original_bytes: bytes | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = path
        self._document = document
        self._original_bytes = original_bytes
        self._now_fn = now_fn
        self._lock = asyncio.Lock()
        self._backup_path: Path | None = None
        self._snapshot_taken = False

    @classmethod
    def open(cls, path: Path, *, now_fn: Callable[[], datetime] = utc_now) -> StatusLedger:
        try:
            original = path.read_bytes()
        except OSError as exc:
            raise DefinitionError(
                (DefinitionIssue(str(path), f"cannot read document ({exc.strerror or exc})"),)
            ) from exc
        document = read_status_document(path)
        return cls(path, document, original_bytes=original, now_fn=now_fn)

    @classmethod
    def load(cls, path: Path) -> StatusDocument:
        """Read an existing status document for reporting; any failure is a ``LedgerError``."""

        try:
            return read_status_document(path)
        except DefinitionError as exc:
            raise LedgerError(f"{path}: {exc}") from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def document(self) -> StatusDocument:
        return self._document

    @property
    def backup_path(self) -> Path | None:
        return self._backup_path

    def snapshot(self) -> Path | None:
        """Copy the pre-run document bytes to a timestamped sibling, once."""

        if self._snapshot_taken:
            return self._backup_path
        self._snapshot_taken = True
        if self._original_bytes is None:
            return None

        stamp = self._now_fn().astimezone(UTC).strftime(_BACKUP_TIMESTAMP_FORMAT)
        candidate = self._path.with_name(f"{self._path.name}.{stamp}.bak")
        suffix = 1
        while candidate.exists():
            candidate = self._path.with_name(f"{self._path.name}.{stamp}-{suffix}.bak")
            suffix += 1
        try:
            atomic_write(candidate, self._original_bytes)
        except OSError as exc:
            raise LedgerError(f"cannot write backup {candidate}: {exc}") from exc
        self._backup_path = candidate
        logger.info("status document backed up", extra={"backup": str(candidate)})
        return candidate

    async def record(self, target_name: str, result: TargetResult) -> None:
        """Merge one result and persist the whole document as one critical section."""

        async with self._lock:
            self._document.merge(target_name, result)
            rendered = encode_document(self._document.to_payload())
            try:
                await asyncio.to_thread(atomic_write, self._path, rendered)
            except OSError as exc:
                raise LedgerError(f"cannot persist {self._path}: {exc}") from exc
        logger.debug(
            "result recorded",
            extra={"target": target_name, "status": result.status.value},
        )


def _read(path: Path) -> tuple[Definition, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise DefinitionError(
            (DefinitionIssue(str(path), f"cannot read document ({exc})"),)
        ) from exc
    try:
        payload = decode_document(text, source=path.name)
    except CodecError as exc:
        raise DefinitionError((DefinitionIssue("<document>", str(exc)),)) from exc
    definition = parse_definition(payload, base_dir=path.resolve().parent)
    return definition, payload.get("results")


__all__ = ["StatusLedger", "load_definition", "read_status_document"]
