"""
fleet-migrate — filesystem helpers for the results ledger and target workspaces

File: src/fleet_migrate/utils/fs.py
Last updated: 2026-10-19

Purpose
- Replace the migration definition (or a backup of it) without ever leaving a torn file.
- Remove a target workspace only when it sits strictly below the run's work directory.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` beside ``path`` under a hidden name, fsync it, then rename over ``path``."""

    destination = Path(path)
    folder = destination.parent.resolve(strict=True)
    if not folder.is_dir():
        raise NotADirectoryError(f"{folder!s} is not a directory")

    payload = data.encode(encoding) if isinstance(data, str) else data
    handle = tempfile.NamedTemporaryFile(  # noqa: SIM115
        mode="wb", dir=folder, prefix=f".{destination.name}.", suffix=".partial", delete=False
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        staged.replace(destination)
    except BaseException:
        with contextlib.suppress(OSError):
            staged.unlink(missing_ok=True)
        raise
    _sync_folder(folder)


def safe_delete(path: PathLike, work_root: PathLike) -> None:
    """
    Remove a workspace file, directory, or symlink contained in ``work_root``.

    ``work_root`` itself is never removed. A symlink is unlinked, its target is left alone.
    """

    root = Path(work_root).resolve(strict=True)
    if not root.is_dir():
        raise NotADirectoryError(f"{root!s} is not a directory")

    entry = Path(path)
    located = entry.parent.resolve(strict=True) / entry.name
    if not _strictly_below(located, root):
        raise ValueError(f"refusing to delete path outside work root: {entry!s}")

    if entry.is_symlink():
        entry.unlink()
    elif not _strictly_below(entry.resolve(strict=True), root):
        raise ValueError(f"refusing to delete path outside work root: {entry!s}")
    elif entry.is_dir():
        shutil.rmtree(entry)
    else:
        entry.unlink()


def _strictly_below(candidate: Path, root: Path) -> bool:
    return candidate != root and root in candidate.parents


def _sync_folder(folder: Path) -> None:
    # Directory fsync is unsupported on Windows and on some filesystems.
    if os.name == "nt":
        return
    try:
        fd = os.open(folder, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)
