"""Judgment sinks: hand pending judgments to the external worker without waiting."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from spec_compliance.domain import ids
from spec_compliance.domain.models import JSONValue, canonical_json

if TYPE_CHECKING:
    from collections.abc import Sequence

    from spec_compliance.domain.models import PendingJudgment

logger = structlog.get_logger(__name__)


def judgment_record(
    pending: PendingJudgment, *, run_id: str, judgment_id: str
) -> dict[str, JSONValue]:
    """Wire form consumed by the judgment worker."""
    return {
        "id": judgment_id,
        "runId": run_id,
        "ruleId": pending.rule_id,
        "ruleVersion": pending.rule_version,
        "factPair": pending.fact_pair.to_dict(),
        "prompt": dict(pending.prompt),
        "suggestedDecisionOptions": list(pending.suggested_decision_options),
    }


class JsonlJudgmentSink:
    """Appends one JSON line per pending judgment to a queue file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def submit(self, pending: Sequence[PendingJudgment], *, run_id: str) -> int:
        if not pending:
            return 0
        lines = [
            canonical_json(
                judgment_record(item, run_id=run_id, judgment_id=ids.generate_judgment_id())
            )
            for item in pending
        ]
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                for line in lines:
                    handle.write(line + "\n")
        logger.info("judgments_submitted", run_id=run_id, count=len(lines))
        return len(lines)


class NullJudgmentSink:
    """Discards pending judgments; used when no worker is configured."""

    def submit(self, pending: Sequence[PendingJudgment], *, run_id: str) -> int:
        if pending:
            logger.debug("judgments_discarded", run_id=run_id, count=len(pending))
        return 0


__all__ = ["JsonlJudgmentSink", "NullJudgmentSink", "judgment_record"]
