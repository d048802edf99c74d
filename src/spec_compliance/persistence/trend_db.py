"""
SQLite schema management, migrations and connection lifecycle for the trend store.

Purpose
- Own the on-disk layout of the append-only report history.

Functional requirements
- Migrations are idempotent and checksummed; a changed migration body is an error.
- Report rows are append-only: UPDATE and DELETE abort inside SQLite itself.
- Writers from separate processes may share one file (WAL, bounded busy retries).
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, TypeVar

from spec_compliance.constants import TREND_STORE_SCHEMA_VERSION
from spec_compliance.domain.models import RunStatus

SQLParams = Sequence[str | int | float | bytes | None]
RowValue = str | int | float | bytes | None

_T = TypeVar("_T")

_STATUS_CHECK: Final[str] = ",".join(f"'{status.value}'" for status in RunStatus)


def _append_only(table: str) -> tuple[str, ...]:
    return tuple(
        f"""
        CREATE TRIGGER IF NOT EXISTS {table}_append_only_{action.lower()}
        BEFORE {action} ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{table} are append-only');
        END
        """
        for action in ("UPDATE", "DELETE")
    )


# (version, name, statements); applied bodies are pinned by checksum.
_MIGRATIONS: Final[tuple[tuple[int, str, tuple[str, ...]], ...]] = (
    (
        1,
        "report_history",
        (
            f"""
            CREATE TABLE IF NOT EXISTS reports (
                run_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                sprint INTEGER NOT NULL CHECK (sprint >= 1),
                status TEXT NOT NULL CHECK (status IN ({_STATUS_CHECK})),
                spec_revision TEXT NOT NULL,
                code_revision TEXT,
                gap_count INTEGER NOT NULL CHECK (gap_count >= 0),
                p1_count INTEGER NOT NULL CHECK (p1_count >= 0),
                payload_json TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS report_modules (
                run_id TEXT NOT NULL REFERENCES reports(run_id),
                module TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                sprint INTEGER NOT NULL CHECK (sprint >= 1),
                score REAL CHECK (score IS NULL OR (score >= 0.0 AND score <= 1.0)),
                gap_count INTEGER NOT NULL CHECK (gap_count >= 0),
                p1_count INTEGER NOT NULL CHECK (p1_count >= 0),
                PRIMARY KEY (run_id, module)
            )
            """,
            *_append_only("reports"),
            *_append_only("report_modules"),
            "CREATE INDEX IF NOT EXISTS idx_reports_timestamp ON reports(timestamp, run_id)",
            "CREATE INDEX IF NOT EXISTS idx_report_modules_sprint"
            " ON report_modules(module, sprint, run_id)",
        ),
    ),
)

_BUSY_CODES: Final[frozenset[int]] = frozenset({sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED})
_CORRUPTION_HINTS: Final[tuple[str, ...]] = ("malformed", "file is not a database")


class TrendDBError(RuntimeError):
    """Base class for trend database errors."""


class TrendDBBusyError(TrendDBError):
    """Raised when bounded busy retries are exhausted."""


class TrendDBMigrationError(TrendDBError):
    """Raised when migrations cannot be applied safely."""


class TrendDBCorruptionError(TrendDBError):
    """Raised when SQLite reports possible corruption."""


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    """SHA-256 over the migration body, ignoring indentation and trailing spaces."""
    digest = hashlib.sha256(f"{version}:{name}\n".encode())
    for statement in statements:
        lines = (line.strip() for line in statement.strip().splitlines())
        digest.update("\n".join(lines).encode("utf-8") + b"\n--\n")
    return digest.hexdigest()


class TrendDB:
    """Short-lived WAL connections to the trend database, with busy retries.

    Every statement runs through one retry loop: ``SQLITE_BUSY``/``SQLITE_LOCKED``
    back off exponentially up to ``busy_retries`` times, integrity violations
    propagate untouched, and anything else becomes a :class:`TrendDBError`.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = 5_000,
        busy_retries: int = 4,
        retry_backoff_ms: int = 25,
    ) -> None:
        if min(busy_timeout_ms, busy_retries, retry_backoff_ms) < 0:
            raise ValueError("busy timeout, retries and backoff must be >= 0")
        self.path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retries = busy_retries
        self._retry_backoff_s = retry_backoff_ms / 1000.0

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self.path, timeout=self._busy_timeout_ms / 1000.0, isolation_level=None
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            mode = self._retry(lambda: conn.execute("PRAGMA journal_mode=WAL").fetchone(), "wal")
            if mode is None or str(mode[0]).lower() != "wal":
                raise TrendDBError(f"{self.path}: journal_mode must be WAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One ``BEGIN IMMEDIATE`` transaction on a fresh connection."""
        with self.connection() as conn:
            with self._transaction(conn):
                yield conn

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""
        with self.connection() as conn:
            self._execute(
                conn,
                """
                CREATE TABLE IF NOT EXISTS schema_versions (
                    version INTEGER PRIMARY KEY CHECK (version > 0),
                    name TEXT NOT NULL,
                    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
                    applied_at TEXT NOT NULL
                )
                """,
            )
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._execute(
                    conn, "SELECT version, checksum FROM schema_versions"
                ).fetchall()
            }
            newest = max(applied, default=0)
            if newest > TREND_STORE_SCHEMA_VERSION:
                raise TrendDBMigrationError(
                    f"{self.path}: database schema {newest} is newer than supported "
                    f"{TREND_STORE_SCHEMA_VERSION}"
                )

            for version, name, statements in _MIGRATIONS:
                checksum = migration_checksum(version, name, statements)
                if version in applied:
                    if applied[version] != checksum:
                        raise TrendDBMigrationError(
                            f"migration {version} checksum mismatch: "
                            f"db={applied[version]} code={checksum}"
                        )
                    continue
                with self._transaction(conn):
                    for statement in statements:
                        self._execute(conn, statement)
                    self._execute(
                        conn,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at)"
                        " VALUES (?, ?, ?, ?)",
                        (version, name, checksum, datetime.now(UTC).isoformat()),
                    )
        return self.schema_version()

    def schema_version(self) -> int:
        row = self.query_one("SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions")
        version = row["version"] if row is not None else 0
        return version if isinstance(version, int) else 0

    def execute(
        self, sql: str, params: SQLParams = (), *, conn: sqlite3.Connection | None = None
    ) -> int:
        """Run one statement and return the affected row count.

        Without ``conn`` the statement commits in its own transaction.
        """
        if conn is not None:
            return self._execute(conn, sql, params).rowcount
        with self.transaction() as owned:
            return self._execute(owned, sql, params).rowcount

    def executemany(
        self,
        sql: str,
        rows: Iterable[SQLParams],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        batch = [tuple(params) for params in rows]
        if conn is not None:
            return self._retry(lambda: conn.executemany(sql, batch).rowcount, sql)
        with self.transaction() as owned:
            return self._retry(lambda: owned.executemany(sql, batch).rowcount, sql)

    def query_all(self, sql: str, params: SQLParams = ()) -> list[dict[str, RowValue]]:
        with self.connection() as conn:
            return [dict(row) for row in self._execute(conn, sql, params).fetchall()]

    def query_one(self, sql: str, params: SQLParams = ()) -> dict[str, RowValue] | None:
        with self.connection() as conn:
            row = self._execute(conn, sql, params).fetchone()
        return None if row is None else dict(row)

    def integrity_check(self) -> tuple[str, ...]:
        """Problems reported by ``PRAGMA integrity_check``; empty when the file is sound."""
        rows = self.query_all("PRAGMA integrity_check")
        messages = tuple(str(row["integrity_check"]) for row in rows)
        return () if messages == ("ok",) else messages

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[None]:
        self._execute(conn, "BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        self._execute(conn, "COMMIT")

    def _execute(
        self, conn: sqlite3.Connection, sql: str, params: SQLParams = ()
    ) -> sqlite3.Cursor:
        return self._retry(lambda: conn.execute(sql, tuple(params)), sql)

    def _retry(self, action: Callable[[], _T], sql: str) -> _T:
        statement = " ".join(sql.split())[:60]
        attempt = 0
        while True:
            try:
                return action()
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = getattr(exc, "sqlite_errorcode", None) in _BUSY_CODES or (
                    "locked" in str(exc).lower()
                )
                if busy and attempt < self._busy_retries:
                    time.sleep(self._retry_backoff_s * 2**attempt)
                    attempt += 1
                    continue
                if busy:
                    raise TrendDBBusyError(
                        f"{self.path}: still busy after {attempt + 1} attempt(s) "
                        f"running {statement!r}: {exc}"
                    ) from exc
                if any(hint in str(exc).lower() for hint in _CORRUPTION_HINTS):
                    raise TrendDBCorruptionError(
                        f"{self.path}: {exc}; run integrity_check() before recording reports"
                    ) from exc
                raise TrendDBError(f"{self.path}: {statement!r} failed: {exc}") from exc


__all__ = [
    "RowValue",
    "SQLParams",
    "TrendDB",
    "TrendDBBusyError",
    "TrendDBCorruptionError",
    "TrendDBError",
    "TrendDBMigrationError",
    "migration_checksum",
]
