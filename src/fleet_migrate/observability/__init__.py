"""
fleet-migrate — observability.

File: src/fleet_migrate/observability/__init__.py
Last updated: 2026-10-19

Purpose
- Queue-backed structured logging with correlation fields and secret redaction.
"""
