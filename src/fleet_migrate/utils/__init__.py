"""Shared utilities: filesystem helpers and async concurrency primitives."""
