"""
spec-compliance: configuration schema and validation.

Purpose
- Describe every ``compliance.toml`` key once, as a typed field with its parser.

What should be included in this file
- Built-in defaults and the ``strict``/``fast`` profile overlays.
- The ``SCHEMA`` field table used for validation and for env-var coercion.
- Deep merge, profile overlay and redaction helpers.

Functional requirements
- Validation collects every issue as (dotted path, message) before failing.
- Secrets are never embedded; sinks reference env var names through ``*_env`` keys.
"""

from __future__ import annotations

import copy
import datetime as dt
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from spec_compliance.constants import (
    CODE_FACTS_PATH,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_POLL_INTERVAL_MS,
    JUDGMENT_QUEUE_PATH,
    LOG_DIR,
    RULE_REGISTRY_DIR,
    SPEC_CORPUS_DIR,
    TREND_STORE_PATH,
)

SINK_KINDS: Final[tuple[str, ...]] = ("stdout", "file", "webhook")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")
_MODULE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_ENV_NAME = re.compile(r"^[A-Z_][A-Z0-9_]*$")

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "auth"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "webhook_url",
)
_EMBEDDED_SECRET = "embedded secret values are forbidden; use an *_env key with an env var name"
_REDACTED = "<redacted>"

EnvKind = Literal["str", "int", "float", "bool", "list"]

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "paths": {
        "spec_corpus": f"{SPEC_CORPUS_DIR}/",
        "rule_registry": f"{RULE_REGISTRY_DIR}/",
        "code_facts": f"{CODE_FACTS_PATH}/",
        "trend_store": str(TREND_STORE_PATH),
        "judgment_queue": str(JUDGMENT_QUEUE_PATH),
    },
    "engine": {
        "max_workers": 4,
        "provider_timeout_seconds": 30.0,
        "required_modules": [],
    },
    "scheduler": {
        "debounce_ms": DEFAULT_DEBOUNCE_MS,
        "poll_interval_ms": DEFAULT_POLL_INTERVAL_MS,
    },
    "sinks": {
        "default": "stdout",
        "file_path": ".compliance/reports.jsonl",
        "webhook_url_env": "COMPLIANCE_WEBHOOK_URL",
        "webhook_timeout_seconds": 10.0,
    },
    "trend": {
        "sprint_length_days": 14,
        "sprint_epoch": "2024-01-01",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": f"{LOG_DIR}/",
        "log_to_console": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "engine": {"provider_timeout_seconds": 60.0},
            "observability": {"log_level": "DEBUG"},
        },
        "fast": {
            "engine": {"max_workers": 16, "provider_timeout_seconds": 5.0},
            "scheduler": {"debounce_ms": 100},
        },
    },
}


class _Invalid(Exception):
    def __init__(self, message: str, *, suffix: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.suffix = suffix


@dataclass(frozen=True, slots=True)
class ConfigField:
    """One typed config key: its parser and how env overrides coerce into it."""

    env_kind: EnvKind
    parse: Callable[[object], object]
    is_path: bool = False


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered or '- <root>: unknown failure'}")


def migration_guidance(found_version: int) -> str:
    """Explain how to resolve a ``meta.schema_version`` mismatch."""

    if found_version < CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade compliance.toml to the current schema"
        )
    if found_version > CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is newer than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade the spec-compliance runtime"
        )
    return "schema version is current"


def _type_name(value: object) -> str:
    return type(value).__name__


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    if not stripped:
        raise _Invalid("must not be empty")
    return stripped


def _path_text(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Invalid("must not contain NUL bytes")
    return text


def _env_name(value: object) -> str:
    text = _text(value)
    if not _ENV_NAME.fullmatch(text):
        raise _Invalid("must be an env var name (example: COMPLIANCE_WEBHOOK_URL)")
    return text


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {_type_name(value)}")
    return value


def _integer(minimum: int) -> Callable[[object], object]:
    def parse(value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {_type_name(value)}")
        if value < minimum:
            raise _Invalid(f"must be >= {minimum}")
        return value

    return parse


def _number(
    *, above: float | None = None, minimum: float | None = None
) -> Callable[[object], object]:
    def parse(value: object) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _Invalid(f"expected number, got {_type_name(value)}")
        number = float(value)
        if not math.isfinite(number):
            raise _Invalid("must be finite")
        if above is not None and number <= above:
            raise _Invalid(f"must be > {above:g}")
        if minimum is not None and number < minimum:
            raise _Invalid(f"must be >= {minimum:g}")
        return number

    return parse


def _choice(values: tuple[str, ...], *, fold_case: bool = False) -> Callable[[object], object]:
    def parse(value: object) -> str:
        text = _text(value)
        if fold_case:
            text = text.upper()
        if text not in values:
            expected = ", ".join(sorted(values))
            raise _Invalid(f"invalid value {text!r}; expected one of: {expected}")
        return text

    return parse


def _iso_date(value: object) -> str:
    # TOML parses bare dates natively.
    if isinstance(value, dt.datetime):
        return value.date().isoformat()
    if isinstance(value, dt.date):
        return value.isoformat()
    text = _text(value)
    try:
        return dt.date.fromisoformat(text).isoformat()
    except ValueError:
        raise _Invalid("must be an ISO date (YYYY-MM-DD)") from None


def _module_names(value: object) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise _Invalid(f"expected array, got {_type_name(value)}")
    names: set[str] = set()
    for index, item in enumerate(value):
        try:
            name = _text(item)
        except _Invalid as exc:
            raise _Invalid(exc.message, suffix=f"[{index}]") from None
        if not _MODULE_NAME.fullmatch(name):
            raise _Invalid(f"invalid module name {name!r}", suffix=f"[{index}]")
        names.add(name)
    return sorted(names)


def _schema_version(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _Invalid(f"expected integer, got {_type_name(value)}")
    if value != CONFIG_SCHEMA_VERSION:
        raise _Invalid(migration_guidance(value))
    return value


_PATH = ConfigField("str", _path_text, is_path=True)

SCHEMA: Final[dict[str, dict[str, ConfigField]]] = {
    "meta": {"schema_version": ConfigField("int", _schema_version)},
    "paths": {
        "spec_corpus": _PATH,
        "rule_registry": _PATH,
        "code_facts": _PATH,
        "trend_store": _PATH,
        "judgment_queue": _PATH,
    },
    "engine": {
        "max_workers": ConfigField("int", _integer(1)),
        "provider_timeout_seconds": ConfigField("float", _number(above=0.0)),
        "required_modules": ConfigField("list", _module_names),
    },
    "scheduler": {
        "debounce_ms": ConfigField("int", _integer(0)),
        "poll_interval_ms": ConfigField("int", _integer(10)),
    },
    "sinks": {
        "default": ConfigField("str", _choice(SINK_KINDS)),
        "file_path": _PATH,
        "webhook_url_env": ConfigField("str", _env_name),
        "webhook_timeout_seconds": ConfigField("float", _number(minimum=0.1)),
    },
    "trend": {
        "sprint_length_days": ConfigField("int", _integer(1)),
        "sprint_epoch": ConfigField("str", _iso_date),
    },
    "observability": {
        "log_level": ConfigField("str", _choice(LOG_LEVELS, fold_case=True)),
        "log_dir": _PATH,
        "log_to_console": ConfigField("bool", _flag),
        "redact_secrets": ConfigField("bool", _flag),
    },
}

PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = tuple(
    (section, key)
    for section, fields in SCHEMA.items()
    for key, spec in fields.items()
    if spec.is_path
)

# Profiles may overlay every section except meta.
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in SCHEMA if name != "meta")


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested mappings merge key by key."""

    merged = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in overlay.items():
        if isinstance(value, Mapping):
            current = merged.get(key)
            merged[key] = merge_config(current if isinstance(current, Mapping) else {}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, Any], profile: str | None) -> dict[str, Any]:
    """Overlay the named profile onto ``config`` and validate the result."""

    materialized = merge_config({}, config)
    selected = (profile or "").strip()
    if not selected:
        return materialized
    overlays = materialized.get("profiles")
    overlay = overlays.get(selected) if isinstance(overlays, Mapping) else None
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    return assert_valid_config(merge_config(materialized, overlay), active_profile=selected)


def validate_config(
    config: object, *, active_profile: str | None = None
) -> ConfigValidationResult:
    """Validate ``config`` against ``SCHEMA`` and return every issue found."""

    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(ConfigValidationIssue("<root>", f"expected object, got {_type_name(config)}"))
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _check_sections(config, "", issues, sections=tuple(SCHEMA), partial=False)

    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected:
        overlays = normalized.get("profiles", {})
        if selected not in overlays:
            issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))
        else:
            effective = merge_config(normalized, overlays[selected])
            _check_sections(effective, "", issues, sections=tuple(SCHEMA), partial=False)

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: object, *, active_profile: str | None = None
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: object) -> dict[str, Any]:
    """Copy ``config`` with env var names and secret-looking values hidden."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: _REDACTED if _hides_value(key) else _redact(config[key]) for key in sorted(config)
    }


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def _check_sections(
    payload: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    sections: tuple[str, ...],
    partial: bool,
) -> dict[str, Any]:
    allowed = sections if partial else (*sections, "profiles")
    _check_keys(payload, path, allowed, issues, required=() if partial else sections)

    out: dict[str, Any] = {}
    for section in sections:
        if section not in payload:
            continue
        section_path = _join(path, section)
        raw = payload[section]
        if not isinstance(raw, Mapping):
            issues.append(
                ConfigValidationIssue(section_path, f"expected object, got {_type_name(raw)}")
            )
            continue
        fields = SCHEMA[section]
        _check_keys(raw, section_path, tuple(fields), issues, required=() if partial else fields)
        parsed: dict[str, Any] = {}
        for key, spec in fields.items():
            if key not in raw:
                continue
            try:
                parsed[key] = spec.parse(raw[key])
            except _Invalid as exc:
                field_path = _join(section_path, key) + exc.suffix
                issues.append(ConfigValidationIssue(field_path, exc.message))
        out[section] = parsed

    if not partial and "profiles" in payload:
        out["profiles"] = _check_profiles(payload["profiles"], _join(path, "profiles"), issues)
    return out


def _check_profiles(
    raw: object, path: str, issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {_type_name(raw)}"))
        return {}
    overlays: dict[str, Any] = {}
    for name in sorted(raw):
        name_path = _join(path, name)
        overlay = raw[name]
        if not _PROFILE_NAME.fullmatch(name):
            issues.append(
                ConfigValidationIssue(name_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            )
        elif not isinstance(overlay, Mapping):
            issues.append(
                ConfigValidationIssue(name_path, f"expected object, got {_type_name(overlay)}")
            )
        else:
            overlays[name] = _check_sections(
                overlay, name_path, issues, sections=_OVERLAY_SECTIONS, partial=True
            )
    return overlays


def _check_keys(
    payload: Mapping[str, object],
    path: str,
    allowed: Sequence[str],
    issues: list[ConfigValidationIssue],
    *,
    required: Sequence[str] | Mapping[str, object],
) -> None:
    for key in sorted(str(name) for name in payload):
        if key not in allowed:
            message = _EMBEDDED_SECRET if _looks_secret(key) else "unknown field"
            issues.append(ConfigValidationIssue(_join(path, key), message))
    for key in required:
        if key not in payload:
            issues.append(ConfigValidationIssue(_join(path, key), "missing required field"))


def _snake(key: str) -> str:
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    return re.sub(r"[^a-z0-9]+", "_", spaced).strip("_")


def _looks_secret(key: str) -> bool:
    normalized = _snake(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SECRET_PHRASES):
        return True
    return not _SECRET_WORDS.isdisjoint(normalized.split("_"))


def _hides_value(key: str) -> bool:
    return _snake(key).endswith("_env") or _looks_secret(key)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SCHEMA",
    "SINK_KINDS",
    "ConfigField",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "EnvKind",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
