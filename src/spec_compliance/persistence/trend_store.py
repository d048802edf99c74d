"""Append-only report history keyed by run id, with per-module trend queries."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from spec_compliance.domain.models import (
    Gap,
    PendingJudgment,
    Priority,
    Report,
    RunStatus,
    RunWarning,
)
from spec_compliance.persistence.trend_db import RowValue, TrendDB, TrendDBError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

logger = structlog.get_logger(__name__)

DEFAULT_SPRINT_LENGTH_DAYS: Final[int] = 14
DEFAULT_SPRINT_EPOCH: Final[date] = date(2024, 1, 1)


class DuplicateRunError(TrendDBError):
    """A report with the same run id is already recorded."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"report for run {run_id} is already recorded")


@dataclass(frozen=True, slots=True)
class SprintCalendar:
    """Maps report timestamps to 1-based sprint indexes."""

    length_days: int = DEFAULT_SPRINT_LENGTH_DAYS
    epoch: date = DEFAULT_SPRINT_EPOCH

    def __post_init__(self) -> None:
        if isinstance(self.length_days, bool) or self.length_days < 1:
            raise ValueError("sprint length_days must be >= 1")

    def sprint_for(self, timestamp: datetime) -> int:
        if timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        day = timestamp.astimezone(UTC).date()
        return max(1, (day - self.epoch).days // self.length_days + 1)

    def sprint_start(self, sprint: int) -> date:
        return date.fromordinal(self.epoch.toordinal() + (sprint - 1) * self.length_days)


@dataclass(frozen=True, slots=True)
class SprintScore:
    """Aggregate of one module's reports inside one sprint."""

    module: str
    sprint: int
    runs: int
    average_score: float | None
    gap_count: int
    p1_count: int
    latest_run_id: str


class TrendStore:
    """Persists every Report exactly once and serves history queries ordered by run id."""

    def __init__(
        self,
        db: TrendDB | str | Path,
        *,
        calendar: SprintCalendar | None = None,
    ) -> None:
        self._db = db if isinstance(db, TrendDB) else TrendDB(db)
        self._calendar = calendar or SprintCalendar()
        self._db.migrate()

    @property
    def db(self) -> TrendDB:
        return self._db

    @property
    def calendar(self) -> SprintCalendar:
        return self._calendar

    def sprint_for(self, timestamp: datetime) -> int:
        return self._calendar.sprint_for(timestamp)

    def build_report(
        self,
        run_id: str,
        gaps: Sequence[Gap],
        module_scores: Mapping[str, float | None],
        *,
        spec_revision: str,
        timestamp: datetime | None = None,
        status: RunStatus = RunStatus.COMPLETED,
        modules: Iterable[str] | None = None,
        warnings: Sequence[RunWarning] = (),
        pending_judgments: Sequence[PendingJudgment] = (),
        code_revision: str | None = None,
    ) -> Report:
        moment = timestamp if timestamp is not None else datetime.now(UTC)
        return Report(
            run_id=run_id,
            timestamp=moment,
            sprint=self._calendar.sprint_for(moment),
            status=status,
            spec_revision=spec_revision,
            code_revision=code_revision,
            modules=tuple(modules) if modules is not None else tuple(module_scores),
            gaps=tuple(gaps),
            module_scores=module_scores,
            warnings=tuple(warnings),
            pending_judgments=tuple(pending_judgments),
        )

    def record(
        self,
        run_id: str,
        gaps: Sequence[Gap],
        module_scores: Mapping[str, float | None],
        *,
        spec_revision: str,
        timestamp: datetime | None = None,
        status: RunStatus = RunStatus.COMPLETED,
        modules: Iterable[str] | None = None,
        warnings: Sequence[RunWarning] = (),
        pending_judgments: Sequence[PendingJudgment] = (),
        code_revision: str | None = None,
    ) -> Report:
        """Build a Report for ``run_id`` and append it; raises ``DuplicateRunError``."""
        report = self.build_report(
            run_id,
            gaps,
            module_scores,
            spec_revision=spec_revision,
            timestamp=timestamp,
            status=status,
            modules=modules,
            warnings=warnings,
            pending_judgments=pending_judgments,
            code_revision=code_revision,
        )
        return self.append(report)

    def append(self, report: Report) -> Report:
        """Persist an already-built Report; the whole row set lands atomically."""
        payload = report.to_dict()
        timestamp = payload["timestamp"]
        try:
            with self._db.transaction() as conn:
                self._db.execute(
                    """
                    INSERT INTO reports (
                        run_id,
                        timestamp,
                        sprint,
                        status,
                        spec_revision,
                        code_revision,
                        gap_count,
                        p1_count,
                        payload_json,
                        recorded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        report.run_id,
                        str(timestamp),
                        report.sprint,
                        report.status.value,
                        report.spec_revision,
                        report.code_revision,
                        len(report.gaps),
                        len(report.p1_gaps),
                        report.to_json(),
                        datetime.now(UTC).isoformat(timespec="microseconds"),
                    ),
                    conn=conn,
                )
                self._db.executemany(
                    """
                    INSERT INTO report_modules (
                        run_id, module, timestamp, sprint, score, gap_count, p1_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            report.run_id,
                            module,
                            str(timestamp),
                            report.sprint,
                            report.module_scores.get(module),
                            len(report.gaps_for(module)),
                            sum(
                                1
                                for gap in report.gaps_for(module)
                                if gap.priority is Priority.P1
                            ),
                        )
                        for module in report.modules
                    ],
                    conn=conn,
                )
        except sqlite3.IntegrityError as exc:
            if "reports.run_id" in str(exc):
                logger.warning("trend_store_duplicate_run", run_id=report.run_id)
                raise DuplicateRunError(report.run_id) from exc
            raise TrendDBError(f"failed to record report {report.run_id}: {exc}") from exc

        logger.info(
            "report_recorded",
            run_id=report.run_id,
            status=report.status.value,
            sprint=report.sprint,
            modules=len(report.modules),
            gaps=len(report.gaps),
        )
        return report

    def get(self, run_id: str) -> Report | None:
        row = self._db.query_one("SELECT payload_json FROM reports WHERE run_id = ?", (run_id,))
        return None if row is None else _report_from_row(row)

    def latest(self, module: str | None = None) -> Report | None:
        if module is None:
            row = self._db.query_one(
                "SELECT payload_json FROM reports ORDER BY run_id DESC LIMIT 1"
            )
        else:
            row = self._db.query_one(
                """
                SELECT r.payload_json
                FROM reports AS r
                JOIN report_modules AS m ON m.run_id = r.run_id
                WHERE m.module = ?
                ORDER BY r.run_id DESC
                LIMIT 1
                """,
                (module,),
            )
        return None if row is None else _report_from_row(row)

    def count(self) -> int:
        row = self._db.query_one("SELECT COUNT(*) AS total FROM reports")
        value = None if row is None else row["total"]
        return value if isinstance(value, int) else 0

    def history(self, module: str, since_sprint: int | None = None) -> tuple[Report, ...]:
        """Reports that checked ``module`` from ``since_sprint`` on, in run-id order."""
        rows = self._db.query_all(
            """
            SELECT r.payload_json
            FROM reports AS r
            JOIN report_modules AS m ON m.run_id = r.run_id
            WHERE m.module = ? AND m.sprint >= ?
            ORDER BY r.run_id ASC
            """,
            (module, since_sprint if since_sprint is not None else 1),
        )
        return tuple(_report_from_row(row) for row in rows)

    def between(
        self,
        start: datetime,
        end: datetime,
        *,
        module: str | None = None,
    ) -> tuple[Report, ...]:
        """Reports with ``start <= timestamp < end``, optionally limited to one module."""
        start_text = _iso8601z(start)
        end_text = _iso8601z(end)
        if module is None:
            rows = self._db.query_all(
                """
                SELECT payload_json FROM reports
                WHERE timestamp >= ? AND timestamp < ?
                ORDER BY run_id ASC
                """,
                (start_text, end_text),
            )
        else:
            rows = self._db.query_all(
                """
                SELECT r.payload_json
                FROM reports AS r
                JOIN report_modules AS m ON m.run_id = r.run_id
                WHERE m.module = ? AND m.timestamp >= ? AND m.timestamp < ?
                ORDER BY r.run_id ASC
                """,
                (module, start_text, end_text),
            )
        return tuple(_report_from_row(row) for row in rows)

    def sprint_scores(
        self, module: str, since_sprint: int | None = None
    ) -> tuple[SprintScore, ...]:
        """Per-sprint average score for ``module``; unavailable runs do not count."""
        rows = self._db.query_all(
            """
            SELECT
                sprint,
                COUNT(*) AS runs,
                AVG(score) AS average_score,
                SUM(gap_count) AS gap_count,
                SUM(p1_count) AS p1_count,
                MAX(run_id) AS latest_run_id
            FROM report_modules
            WHERE module = ? AND sprint >= ?
            GROUP BY sprint
            ORDER BY sprint ASC
            """,
            (module, since_sprint if since_sprint is not None else 1),
        )
        return tuple(
            SprintScore(
                module=module,
                sprint=_row_int(row, "sprint"),
                runs=_row_int(row, "runs"),
                average_score=_row_optional_float(row, "average_score"),
                gap_count=_row_int(row, "gap_count"),
                p1_count=_row_int(row, "p1_count"),
                latest_run_id=str(row["latest_run_id"]),
            )
            for row in rows
        )


def _report_from_row(row: Mapping[str, RowValue]) -> Report:
    payload = row.get("payload_json")
    if not isinstance(payload, str):
        raise TrendDBError("reports.payload_json must be text")
    return Report.from_json(payload)


def _row_int(row: Mapping[str, RowValue], key: str) -> int:
    value = row.get(key)
    if not isinstance(value, int):
        raise TrendDBError(f"{key} must be an integer, got {type(value).__name__}")
    return value


def _row_optional_float(row: Mapping[str, RowValue], key: str) -> float | None:
    value = row.get(key)
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return round(float(value), 6)
    raise TrendDBError(f"{key} must be numeric, got {type(value).__name__}")


def _iso8601z(value: datetime) -> str:
    if value.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_SPRINT_EPOCH",
    "DEFAULT_SPRINT_LENGTH_DAYS",
    "DuplicateRunError",
    "SprintCalendar",
    "SprintScore",
    "TrendStore",
]
