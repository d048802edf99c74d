"""Persistence layer: SQLite migrations and the append-only trend store."""

from spec_compliance.persistence.trend_db import (
    TrendDB,
    TrendDBBusyError,
    TrendDBCorruptionError,
    TrendDBError,
    TrendDBMigrationError,
    migration_checksum,
)
from spec_compliance.persistence.trend_store import (
    DuplicateRunError,
    SprintCalendar,
    SprintScore,
    TrendStore,
)

__all__ = [
    "DuplicateRunError",
    "SprintCalendar",
    "SprintScore",
    "TrendDB",
    "TrendDBBusyError",
    "TrendDBCorruptionError",
    "TrendDBError",
    "TrendDBMigrationError",
    "TrendStore",
    "migration_checksum",
]
