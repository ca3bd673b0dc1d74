"""Module entrypoint for ``python -m fleet_migrate``."""

from __future__ import annotations

from fleet_migrate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
