"""Plain-text output helpers for the ``compliance`` CLI.

Purpose
- Keep human-readable CLI output (summaries, score tables, rule errors) in one place.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Output is deterministic: same input, same text.
- Machine-readable output (JSON, markdown reports) never goes through this layer.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from spec_compliance.domain.models import Priority

if TYPE_CHECKING:
    from collections.abc import Sequence

    from spec_compliance.domain.models import Report

_PRIORITY_COLORS = {
    Priority.P1: "\x1b[31m",
    Priority.P2: "\x1b[33m",
}
_RESET = "\x1b[0m"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


def format_score(score: float | None) -> str:
    return "unavailable" if score is None else f"{score:.2f}"


class CLIRenderer:
    """Line-oriented renderer writing to stdout (or an injected stream)."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        self.verbose = verbose
        self._stream = stream
        self._color = _color_allowed(no_color, stream or sys.stdout)

    def _write(self, line: str = "") -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._write(line)

    def section(self, title: str) -> None:
        self._write()
        self._write(title)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print an aligned ASCII table; nothing is printed for zero rows."""

        if not rows:
            return

        col_count = len(headers)
        widths = [len(h) for h in headers]
        for row in rows:
            for i in range(min(len(row), col_count)):
                widths[i] = max(widths[i], len(str(row[i])))

        def _pad(cells: Sequence[str]) -> str:
            parts = [
                (str(cells[i]) if i < len(cells) else "").ljust(widths[i])
                for i in range(col_count)
            ]
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        self._write(f"  {_pad(list(headers))}")
        self._write(f"  {'  '.join('-' * w for w in widths)}")
        for row in rows:
            self._write(f"  {_pad(list(row))}")

    def priority(self, priority: Priority) -> str:
        color = _PRIORITY_COLORS.get(priority) if self._color else None
        return f"{color}{priority.value}{_RESET}" if color else priority.value

    def ok(self, label: str) -> None:
        self._write(f"  OK    {label}")

    def fail(self, label: str) -> None:
        self._write(f"  FAIL  {label}")

    def report_summary(self, report: Report) -> None:
        """Short human summary of one report: status, per-module scores, P1 gaps."""

        self.kv("Run", report.run_id)
        self.kv("Status", report.status.value)
        self.kv("Sprint", report.sprint)
        self.kv("Gaps", f"{len(report.gaps)} ({len(report.p1_gaps)} P1)")
        rows = []
        for module in report.modules:
            score = format_score(report.module_scores.get(module))
            rows.append((module, score, str(len(report.gaps_for(module)))))
        self.table(("Module", "Score", "Gaps"), rows, title="Modules:")
        if report.p1_gaps:
            self.section("P1 gaps:")
            self.items(
                [
                    f"{self.priority(gap.priority)} {gap.module}/{gap.subject_name} "
                    f"[{gap.gap_type.value}] {gap.rule_id}"
                    for gap in report.p1_gaps
                ]
            )
        if self.verbose and report.warnings:
            self.section("Warnings:")
            self.items(
                [
                    f"{warning.code.value}: {warning.message}"
                    + (f" ({warning.module})" if warning.module else "")
                    for warning in report.warnings
                ]
            )


def create_renderer(
    *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer", "format_score"]
