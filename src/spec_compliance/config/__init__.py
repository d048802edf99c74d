"""Config loading (``compliance.toml`` + ``COMPLIANCE_`` env overrides) and validation."""

from spec_compliance.config.loader import (
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    effective_config,
    env_var_name,
    load_config,
)
from spec_compliance.config.schema import (
    DEFAULT_CONFIG,
    SCHEMA,
    ConfigField,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "DEFAULT_CONFIG",
    "ENV_PREFIX",
    "SCHEMA",
    "ConfigField",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_var_name",
    "load_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
