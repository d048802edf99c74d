"""
spec-compliance: runtime config loader.

Purpose
- Build the effective config: defaults < ``compliance.toml`` < ``COMPLIANCE_*`` env < CLI.

Functional requirements
- Env names derive from the schema table as ``COMPLIANCE_<SECTION>_<KEY>`` and are
  coerced by each field's declared kind.
- Path fields resolve against the directory holding the config file.
- A profile (``--profile`` or ``COMPLIANCE_PROFILE``) overlays the file values.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from spec_compliance.config.schema import (
    PATH_FIELDS,
    SCHEMA,
    EnvKind,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from spec_compliance.constants import DEFAULT_CONFIG_FILENAME

ENV_PREFIX: Final[str] = "COMPLIANCE_"
_PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    repo_root: str | Path | None = None,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    require_webhook_env: bool = False,
) -> dict[str, Any]:
    """Load the effective config.

    An explicit ``config_path`` must exist. Without one, ``compliance.toml`` under
    ``repo_root`` (default: the working directory) is read when present.
    """

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    if config_path is None:
        root = Path.cwd() if repo_root is None else Path(repo_root).expanduser()
        source = (root / DEFAULT_CONFIG_FILENAME).resolve()
    else:
        source = Path(config_path).expanduser().resolve()
    selected = _selected_profile(profile, overrides, env)

    from_file = _read_toml(source, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), from_file))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_overrides(env))
    config = merge_config(config, _cli_overrides(overrides))
    config = _resolve_paths(assert_valid_config(config, active_profile=selected), source.parent)

    if require_webhook_env:
        env_name = config["sinks"]["webhook_url_env"]
        if not env.get(env_name, "").strip():
            raise ConfigLoadError(
                "missing required secret environment variable value: "
                f"sinks.webhook_url_env -> {env_name}"
            )
    return config


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted view of ``config`` for logs and the ``config`` command."""

    return redact_config(config)


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    if indent is not None:
        return json.dumps(effective_config(config), sort_keys=True, indent=indent)
    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def env_var_name(section: str, key: str) -> str:
    return f"{ENV_PREFIX}{section.upper()}_{key.upper()}"


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _selected_profile(
    profile: str | None, overrides: Mapping[str, object], environ: Mapping[str, str]
) -> str | None:
    candidate: object = profile
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = environ.get(_PROFILE_ENV)
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("profile override must be a string")
    return candidate.strip() or None


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for section, fields in SCHEMA.items():
        if section == "meta":
            continue
        for key, spec in fields.items():
            name = env_var_name(section, key)
            raw = environ.get(name)
            if raw is not None:
                value = _coerce(raw, spec.env_kind, f"{name} -> {section}.{key}")
                overrides.setdefault(section, {})[key] = value
    return overrides


def _coerce(raw: str, kind: EnvKind, label: str) -> object:
    value = raw.strip()
    if kind == "str":
        return value
    if kind == "list":
        # Comma separated; an empty value clears the list.
        return [item.strip() for item in value.split(",") if item.strip()]
    if kind == "bool":
        if value.lower() in _TRUTHY:
            return True
        if value.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")
    convert, noun = (int, "an integer") if kind == "int" else (float, "a number")
    try:
        return convert(value)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} must be {noun}") from exc


def _cli_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Expand dotted ``section.key`` overrides into a nested payload."""

    payload: dict[str, Any] = {}
    for dotted in sorted(overrides):
        if dotted == "profile":
            continue
        value = overrides[dotted]
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        if len(parts) == 1 and not isinstance(value, Mapping):
            raise ConfigLoadError(f"CLI override {dotted!r} must name a field inside a section")
        cursor = payload
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[parts[-1]] = value
    return payload


def _resolve_paths(config: Mapping[str, Any], base_dir: Path) -> dict[str, Any]:
    resolved = merge_config({}, config)
    for target in (resolved, *resolved.get("profiles", {}).values()):
        for section, key in PATH_FIELDS:
            values = target.get(section)
            if isinstance(values, dict) and isinstance(values.get(key), str):
                values[key] = _absolute(values[key], base_dir)
    return resolved


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ENV_PREFIX",
    "ConfigLoadError",
    "dump_effective_config",
    "effective_config",
    "env_var_name",
    "load_config",
]
