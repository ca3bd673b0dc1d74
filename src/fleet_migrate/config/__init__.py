"""Runtime settings: ``fleet-migrate.toml`` plus ``FLEET_*`` environment and CLI overrides."""

from fleet_migrate.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_overrides,
    load_config,
    read_config_file,
)
from fleet_migrate.config.schema import (
    ENV_PREFIX,
    SETTINGS,
    ConfigValidationError,
    ConfigValidationIssue,
    Setting,
    assert_valid_config,
    default_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ENV_PREFIX",
    "SETTINGS",
    "Setting",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "env_overrides",
    "load_config",
    "read_config_file",
    "validate_config",
]
