"""Stable constants shared across the compliance engine."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
REPORT_SCHEMA_VERSION: Final[int] = 1
TREND_STORE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the repository root unless overridden by config).
DEFAULT_CONFIG_FILENAME: Final[str] = "compliance.toml"
SPEC_CORPUS_DIR: Final[PurePosixPath] = PurePosixPath("docs/spec")
RULE_REGISTRY_DIR: Final[PurePosixPath] = PurePosixPath("rules")
CODE_FACTS_PATH: Final[PurePosixPath] = PurePosixPath(".compliance/code_facts")
TREND_STORE_PATH: Final[PurePosixPath] = PurePosixPath(".compliance/trend.sqlite")
JUDGMENT_QUEUE_PATH: Final[PurePosixPath] = PurePosixPath(".compliance/judgments.jsonl")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".compliance/logs")

# Priority weights used by module scoring.
PRIORITY_WEIGHT: Final[dict[str, int]] = {
    "P1": 4,
    "P2": 3,
    "P3": 2,
    "P4": 1,
}

# Scheduler defaults.
DEFAULT_DEBOUNCE_MS: Final[int] = 250
DEFAULT_POLL_INTERVAL_MS: Final[int] = 200
SCHEDULER_TRANSITION_HISTORY: Final[int] = 1024

__all__ = [
    "CODE_FACTS_PATH",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILENAME",
    "DEFAULT_DEBOUNCE_MS",
    "DEFAULT_POLL_INTERVAL_MS",
    "JUDGMENT_QUEUE_PATH",
    "LOG_DIR",
    "PRIORITY_WEIGHT",
    "REPORT_SCHEMA_VERSION",
    "RULE_REGISTRY_DIR",
    "SCHEDULER_TRANSITION_HISTORY",
    "SPEC_CORPUS_DIR",
    "TREND_STORE_PATH",
    "TREND_STORE_SCHEMA_VERSION",
]
