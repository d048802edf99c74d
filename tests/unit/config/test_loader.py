"""
spec-compliance: unit tests for config loader

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var names derived from the schema table and type coercion by field kind.
- Path normalization relative to the config file.
- Profile selection and redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from spec_compliance.config import ConfigValidationError
from spec_compliance.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_var_name,
    load_config,
)


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "compliance.toml"
    _write_config(config_path, "[engine]\nmax_workers = 6\n")
    env = {"COMPLIANCE_ENGINE_MAX_WORKERS": "7"}

    defaults = load_config(repo_root=tmp_path / "empty", environ={})
    from_file = load_config(config_path, environ={})
    from_env = load_config(config_path, environ=env)
    from_cli = load_config(config_path, environ=env, cli_overrides={"engine.max_workers": 9})

    assert defaults["engine"]["max_workers"] == 4
    assert from_file["engine"]["max_workers"] == 6
    assert from_env["engine"]["max_workers"] == 7
    assert from_cli["engine"]["max_workers"] == 9


def test_env_values_are_coerced_by_default_type(tmp_path: Path) -> None:
    loaded = load_config(
        repo_root=tmp_path,
        environ={
            "COMPLIANCE_ENGINE_PROVIDER_TIMEOUT_SECONDS": "2.5",
            "COMPLIANCE_ENGINE_REQUIRED_MODULES": "Billing, Accounts,,",
            "COMPLIANCE_OBSERVABILITY_LOG_TO_CONSOLE": "yes",
            "COMPLIANCE_SINKS_DEFAULT": "file",
        },
    )

    assert loaded["engine"]["provider_timeout_seconds"] == 2.5
    assert loaded["engine"]["required_modules"] == ["Accounts", "Billing"]
    assert loaded["observability"]["log_to_console"] is True
    assert loaded["sinks"]["default"] == "file"


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("COMPLIANCE_ENGINE_MAX_WORKERS", "many", "must be an integer"),
        ("COMPLIANCE_ENGINE_PROVIDER_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("COMPLIANCE_OBSERVABILITY_REDACT_SECRETS", "maybe", "must be a boolean"),
    ],
)
def test_env_coercion_errors_name_the_field(
    tmp_path: Path, env_name: str, raw: str, message: str
) -> None:
    with pytest.raises(ConfigLoadError, match=message):
        load_config(repo_root=tmp_path, environ={env_name: raw})


def test_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    config_path = tmp_path / "repo" / "compliance.toml"
    _write_config(config_path, '[paths]\nspec_corpus = "product/spec"\n')

    loaded = load_config(config_path, environ={})
    base = config_path.resolve().parent

    assert loaded["paths"]["spec_corpus"] == (base / "product" / "spec").as_posix()
    assert loaded["paths"]["trend_store"] == (base / ".compliance" / "trend.sqlite").as_posix()
    assert loaded["sinks"]["file_path"] == (base / ".compliance" / "reports.jsonl").as_posix()


def test_profiles_overlay_defaults(tmp_path: Path) -> None:
    fast = load_config(repo_root=tmp_path, profile="fast", environ={})
    strict = load_config(repo_root=tmp_path, environ={"COMPLIANCE_PROFILE": "strict"})

    assert fast["engine"]["max_workers"] == 16
    assert fast["scheduler"]["debounce_ms"] == 100
    assert strict["observability"]["log_level"] == "DEBUG"
    assert strict["engine"]["provider_timeout_seconds"] == 60.0


def test_unknown_profile_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigValidationError, match="profile 'nightly' is not defined"):
        load_config(repo_root=tmp_path, profile="nightly", environ={})


def test_embedded_secret_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "compliance.toml"
    _write_config(config_path, '[sinks]\nwebhook_url = "https://hooks.example.test/x"\n')

    with pytest.raises(ConfigValidationError, match="embedded secret values are forbidden"):
        load_config(config_path, environ={})


def test_missing_explicit_file_and_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})

    broken = tmp_path / "broken.toml"
    _write_config(broken, "[engine\nmax_workers = 2\n")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(broken, environ={})


def test_toml_dates_are_accepted_for_sprint_epoch(tmp_path: Path) -> None:
    config_path = tmp_path / "compliance.toml"
    _write_config(config_path, "[trend]\nsprint_epoch = 2025-01-06\nsprint_length_days = 7\n")

    loaded = load_config(config_path, environ={})

    assert loaded["trend"] == {"sprint_epoch": "2025-01-06", "sprint_length_days": 7}


def test_cli_override_must_name_a_field(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="must name a field inside a section"):
        load_config(repo_root=tmp_path, environ={}, cli_overrides={"engine": 3})


def test_webhook_env_requirement(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="COMPLIANCE_WEBHOOK_URL"):
        load_config(repo_root=tmp_path, environ={}, require_webhook_env=True)

    loaded = load_config(
        repo_root=tmp_path,
        environ={"COMPLIANCE_WEBHOOK_URL": "https://hooks.example.test/x"},
        require_webhook_env=True,
    )
    assert loaded["sinks"]["webhook_url_env"] == "COMPLIANCE_WEBHOOK_URL"


def test_effective_dump_is_redacted_and_deterministic(tmp_path: Path) -> None:
    first = dump_effective_config(load_config(repo_root=tmp_path, environ={}))
    second = dump_effective_config(load_config(repo_root=tmp_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert payload["sinks"]["webhook_url_env"] == "<redacted>"
    assert payload["meta"]["schema_version"] == 1


def test_env_bindings_follow_schema_sections(tmp_path: Path) -> None:
    assert env_var_name("scheduler", "poll_interval_ms") == "COMPLIANCE_SCHEDULER_POLL_INTERVAL_MS"

    loaded = load_config(
        repo_root=tmp_path,
        environ={
            "COMPLIANCE_SCHEDULER_POLL_INTERVAL_MS": "50",
            "COMPLIANCE_TREND_SPRINT_EPOCH": "2025-03-03",
            "COMPLIANCE_META_SCHEMA_VERSION": "7",
        },
    )

    assert loaded["scheduler"]["poll_interval_ms"] == 50
    assert loaded["trend"]["sprint_epoch"] == "2025-03-03"
    assert loaded["meta"]["schema_version"] == 1
