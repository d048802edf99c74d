"""Unit tests for config schema validation, merging and redaction."""

from __future__ import annotations

import pytest

from spec_compliance.config.schema import (
    DEFAULT_CONFIG,
    ConfigValidationError,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def test_defaults_are_valid_and_copied() -> None:
    config = default_config()
    config["engine"]["max_workers"] = 99

    assert DEFAULT_CONFIG["engine"]["max_workers"] == 4
    assert validate_config(default_config()).is_valid


def test_validation_collects_every_issue_with_paths() -> None:
    config = merge_config(
        default_config(),
        {
            "engine": {"max_workers": 0, "provider_timeout_seconds": -1},
            "scheduler": {"poll_interval_ms": 5},
            "sinks": {"default": "email"},
            "trend": {"sprint_epoch": "next monday"},
            "surprise": {},
        },
    )

    result = validate_config(config)

    assert not result.is_valid
    assert [(issue.path, issue.message) for issue in result.issues] == [
        ("surprise", "unknown field"),
        ("engine.max_workers", "must be >= 1"),
        ("engine.provider_timeout_seconds", "must be > 0"),
        ("scheduler.poll_interval_ms", "must be >= 10"),
        ("sinks.default", "invalid value 'email'; expected one of: file, stdout, webhook"),
        ("trend.sprint_epoch", "must be an ISO date (YYYY-MM-DD)"),
    ]


def test_missing_section_is_reported() -> None:
    config = default_config()
    del config["trend"]

    with pytest.raises(ConfigValidationError, match="trend: missing required field"):
        assert_valid_config(config)


def test_required_modules_are_deduplicated_and_checked() -> None:
    config = merge_config(
        default_config(), {"engine": {"required_modules": ["Billing", "Billing", "bad name"]}}
    )

    result = validate_config(config)

    assert [issue.path for issue in result.issues] == ["engine.required_modules[2]"]


def test_log_level_is_case_insensitive() -> None:
    config = merge_config(default_config(), {"observability": {"log_level": "debug"}})

    assert assert_valid_config(config)["observability"]["log_level"] == "DEBUG"


def test_profile_overlay_only_touches_named_fields() -> None:
    fast = apply_profile_overlay(default_config(), "fast")

    assert fast["engine"]["max_workers"] == 16
    assert fast["engine"]["required_modules"] == []
    assert fast["scheduler"] == {"debounce_ms": 100, "poll_interval_ms": 200}
    assert apply_profile_overlay(default_config(), None) == assert_valid_config(default_config())


def test_profile_overlay_rejects_meta_and_bad_names() -> None:
    config = merge_config(
        default_config(),
        {"profiles": {"Loud": {}, "quiet": {"meta": {"schema_version": 1}}}},
    )

    paths = [issue.path for issue in validate_config(config).issues]

    assert "profiles.Loud" in paths
    assert "profiles.quiet.meta" in paths


def test_migration_guidance_direction() -> None:
    assert "older than supported" in migration_guidance(0)
    assert "newer than supported" in migration_guidance(2)
    assert migration_guidance(1) == "schema version is current"


def test_redaction_hides_env_names_and_secret_like_keys() -> None:
    redacted = redact_config(
        {"sinks": {"webhook_url_env": "HOOK", "default": "webhook"}, "auth_token": "abc"}
    )

    assert redacted == {
        "auth_token": "<redacted>",
        "sinks": {"default": "webhook", "webhook_url_env": "<redacted>"},
    }
