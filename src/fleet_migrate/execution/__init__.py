"""
fleet-migrate — execution layer.

File: src/fleet_migrate/execution/__init__.py
Last updated: 2026-10-19

Purpose
- Everything that touches external processes: the command runner, the git and
  review adapters, workspaces, step execution and publishing.
"""
