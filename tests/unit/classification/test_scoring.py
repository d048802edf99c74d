"""Unit tests for per-module compliance scores."""

from __future__ import annotations

from spec_compliance.classification import classify, compute_module_scores
from spec_compliance.domain.models import FactKind, Finding
from spec_compliance.rules import RuleRegistry


def _finding(rule_id: str, module: str, *, violated: bool, **severity: object) -> Finding:
    return Finding(
        rule_id=rule_id,
        rule_version=1,
        module=module,
        kind=FactKind.ENTITY_DEF,
        subject_name="Invoice",
        violated=violated,
        severity=severity,
    )


def test_score_weighs_gaps_against_evaluated_rules(packaged_registry: RuleRegistry) -> None:
    findings = [
        _finding("RULE-ENT-0001", "Billing", violated=False),
        _finding("RULE-ENT-0002", "Billing", violated=False),
        _finding(
            "RULE-TEN-0001",
            "Billing",
            violated=True,
            tenant_isolation_missing=True,
            persisted=True,
        ),
        _finding("RULE-ENT-0001", "Accounts", violated=False),
    ]
    gaps = classify(findings, packaged_registry)

    scores = compute_module_scores(
        findings, gaps, packaged_registry, ["Billing", "Accounts", "Shipping"], ["Shipping"]
    )

    # P2 + P3 + P2 evaluated weights 3 + 2 + 3; the escalated P1 gap weighs 4.
    assert scores == {"Accounts": 1.0, "Billing": 0.5, "Shipping": None}
    assert list(scores) == ["Accounts", "Billing", "Shipping"]


def test_module_without_findings_scores_full(packaged_registry: RuleRegistry) -> None:
    assert compute_module_scores([], [], packaged_registry, ["Empty"]) == {"Empty": 1.0}


def test_score_is_clamped_at_zero(packaged_registry: RuleRegistry) -> None:
    findings = [_finding("RULE-ENT-0002", "Billing", violated=True)]
    escalated = _finding(
        "RULE-TEN-0001", "Billing", violated=True, tenant_isolation_missing=True, persisted=True
    )
    gaps = classify([*findings, escalated], packaged_registry)

    scores = compute_module_scores(findings, gaps, packaged_registry, ["Billing"])

    assert scores == {"Billing": 0.0}


def test_scores_are_rounded(packaged_registry: RuleRegistry) -> None:
    findings = [
        _finding("RULE-ENT-0001", "Billing", violated=False),
        _finding("RULE-ENT-0002", "Billing", violated=False),
        _finding("RULE-ENT-0001", "Billing", violated=True),
    ]
    gaps = classify(findings, packaged_registry)

    scores = compute_module_scores(findings, gaps, packaged_registry, ["Billing"])

    assert scores == {"Billing": round(1 - 3 / 8, 6)}
