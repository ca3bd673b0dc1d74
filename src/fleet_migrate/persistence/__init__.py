"""
fleet-migrate — persistence layer.

File: src/fleet_migrate/persistence/__init__.py
Last updated: 2026-10-19

Purpose
- YAML codec for definitions and status documents, and the status ledger that
  persists results back into the definition file.

Functional requirements
- Must support safe resume after crash: every write is atomic.
"""
