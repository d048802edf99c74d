"""Unit tests for JSON and markdown report rendering."""

from __future__ import annotations

import json
from datetime import datetime

from spec_compliance.domain import ids
from spec_compliance.domain.models import (
    CodeFact,
    FactKind,
    FactPair,
    Gap,
    GapType,
    PendingJudgment,
    Priority,
    Report,
    RunStatus,
    RunWarning,
    WarningCode,
)
from spec_compliance.reporting import render_json, render_markdown


def _report(fixed_now: datetime, *, gaps: tuple[Gap, ...] = ()) -> Report:
    code = CodeFact(
        module="Billing", kind=FactKind.PERMISSION, subject_name="Refund", attributes={}
    )
    return Report(
        run_id=ids.generate_run_id(),
        timestamp=fixed_now,
        sprint=57,
        status=RunStatus.PARTIAL,
        spec_revision="abc123",
        modules=("Billing", "Shipping"),
        gaps=gaps,
        module_scores={"Billing": 0.5, "Shipping": None},
        warnings=(
            RunWarning(
                code=WarningCode.PROVIDER_TIMEOUT,
                message="code facts not returned within 30s",
                module="Shipping",
            ),
        ),
        pending_judgments=(
            PendingJudgment(
                rule_id="RULE-SEC-0001",
                rule_version=1,
                fact_pair=FactPair(code.key, code=code),
                prompt={"question": "Is this grant intended?"},
            ),
        ),
    )


def _tenant_gap() -> Gap:
    return Gap(
        gap_type=GapType.MULTI_TENANCY_GAP,
        priority=Priority.P1,
        module="Billing",
        kind=FactKind.ENTITY_DEF,
        subject_name="Invoice",
        rule_id="RULE-TEN-0001",
        description="Tenant-scoped entities must be tenant-isolated in code",
        suggested_decision_options=("Add tenant filter to persistence layer",),
        evidence={"reason": "tenant isolation missing", "spec_source": "billing.md:7"},
    )


def test_render_json_is_canonical_and_parseable(fixed_now: datetime) -> None:
    report = _report(fixed_now)

    compact = render_json(report)
    pretty = render_json(report, indent=2)

    assert compact == report.to_json()
    assert "\n" not in compact
    assert json.loads(pretty) == json.loads(compact)
    assert Report.from_json(compact).to_json() == compact


def test_markdown_lists_scores_gaps_judgments_and_warnings(fixed_now: datetime) -> None:
    report = _report(fixed_now, gaps=(_tenant_gap(),))

    text = render_markdown(report)

    assert text.startswith(f"# Compliance report `{report.run_id}`\n")
    assert "- Timestamp: 2026-03-02T09:30:00.000000Z" in text
    assert "- Gaps: 1 (1 P1)" in text
    assert "## Module scores" in text
    assert "| Billing | 0.50 | 1 | 1 |" in text
    assert "| Shipping | unavailable | 0 | 0 |" in text
    assert "### P1 Multi-Tenancy Gap: Billing / Invoice" in text
    assert "- Reason: tenant isolation missing" in text
    assert "- Spec source: `billing.md:7`" in text
    assert "  - [ ] Add tenant filter to persistence layer" in text
    assert "- `RULE-SEC-0001` Billing / Refund: Is this grant intended?" in text
    assert "- **ProviderTimeout** [Shipping]: code facts not returned within 30s" in text
    assert text.endswith("\n")
    assert not text.endswith("\n\n")


def test_markdown_without_gaps_says_so(fixed_now: datetime) -> None:
    text = render_markdown(_report(fixed_now))

    assert "No gaps found." in text
    assert "Code revision" not in text
