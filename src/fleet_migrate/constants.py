"""Stable constants shared across fleet-migrate components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
DEFINITION_SCHEMA_VERSION: Final[int] = 1
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Default file and directory names.
DEFAULT_DEFINITION_FILE: Final[str] = "migration.yaml"
DEFAULT_CONFIG_FILE: Final[str] = "fleet-migrate.toml"
DEFAULT_WORK_DIRECTORY: Final[str] = "work-dir"
DEFAULT_FOLLOWUP_DIRECTORY: Final[str] = "follow-up-dir"
DEFAULT_LOG_DIRECTORY: Final[str] = "logs"

# Per-target workspace layout.
WORKSPACE_REPO_DIR: Final[str] = "repo"
WORKSPACE_STDOUT_LOG: Final[str] = "stdout.log"
WORKSPACE_STDERR_LOG: Final[str] = "stderr.log"

# Concurrency defaults.
DEFAULT_MAX_CONCURRENCY: Final[int] = 8

# Environment variables exported to pre-flight and step scripts.
ENV_TARGET_NAME: Final[str] = "FLEET_TARGET_NAME"
ENV_REPO: Final[str] = "FLEET_REPO"
ENV_BRANCH: Final[str] = "FLEET_BRANCH"
ENV_STEP_NAME: Final[str] = "FLEET_STEP_NAME"
ENV_STEP_INDEX: Final[str] = "FLEET_STEP_INDEX"
ENV_REVIEW_URL: Final[str] = "FLEET_REVIEW_URL"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_DEFINITION_FILE",
    "DEFAULT_FOLLOWUP_DIRECTORY",
    "DEFAULT_LOG_DIRECTORY",
    "DEFAULT_MAX_CONCURRENCY",
    "DEFAULT_WORK_DIRECTORY",
    "DEFINITION_SCHEMA_VERSION",
    "ENV_BRANCH",
    "ENV_REPO",
    "ENV_REVIEW_URL",
    "ENV_STEP_INDEX",
    "ENV_STEP_NAME",
    "ENV_TARGET_NAME",
    "WORKSPACE_REPO_DIR",
    "WORKSPACE_STDERR_LOG",
    "WORKSPACE_STDOUT_LOG",
]
