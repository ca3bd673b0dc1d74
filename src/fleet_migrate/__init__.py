"""
fleet-migrate — package root.

File: src/fleet_migrate/__init__.py
Last updated: 2026-10-19

Purpose
- Apply a scripted, multi-step change to a fleet of git repositories, open one
  review request per repository, and record every outcome back into the
  migration definition so runs can be audited and resumed.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
