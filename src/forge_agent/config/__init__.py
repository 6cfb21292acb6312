"""Configuration: TOML + env + CLI loading into immutable ``ForgeSettings``."""

from forge_agent.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_settings,
)
from forge_agent.config.schema import (
    BUILTIN_PROFILE_NAMES,
    ConfigValidationError,
    ConfigValidationIssue,
    ForgeSettings,
    ProviderSettings,
    default_config,
    default_settings,
    dump_redacted,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ForgeSettings",
    "ProviderSettings",
    "default_config",
    "default_settings",
    "dump_effective_config",
    "dump_redacted",
    "load_config",
    "load_settings",
    "validate_config",
]
