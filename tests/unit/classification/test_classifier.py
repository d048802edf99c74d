"""Unit tests for gap classification and priority escalation."""

from __future__ import annotations

import pytest

from spec_compliance.classification import classify, prioritize
from spec_compliance.domain.models import (
    CodeFact,
    FactKind,
    Finding,
    GapType,
    Priority,
    SourceLocation,
    SpecFact,
)
from spec_compliance.rules import RuleRegistry, evaluate


def _finding(
    rule_id: str,
    *,
    module: str = "Billing",
    subject: str = "Invoice",
    kind: FactKind = FactKind.ENTITY_DEF,
    violated: bool = True,
    severity: dict[str, object] | None = None,
) -> Finding:
    return Finding(
        rule_id=rule_id,
        rule_version=1,
        module=module,
        kind=kind,
        subject_name=subject,
        violated=violated,
        evidence={"reason": "test"},
        severity=severity or {},
    )


def test_persisted_tenant_gap_escalates_to_p1(packaged_registry: RuleRegistry) -> None:
    gaps = classify(
        [
            _finding(
                "RULE-TEN-0001",
                severity={"tenant_isolation_missing": True, "persisted": True},
            )
        ],
        packaged_registry,
    )

    assert len(gaps) == 1
    gap = gaps[0]
    assert gap.gap_type is GapType.MULTI_TENANCY_GAP
    assert gap.priority is Priority.P1
    assert gap.evidence["rule_version"] == 1
    assert gap.evidence["severity"] == {"tenant_isolation_missing": True, "persisted": True}
    assert gap.suggested_decision_options == (
        "Add tenant filter to persistence layer",
        "Drop tenant scoping from spec",
    )


def test_transient_tenant_gap_keeps_default_priority(packaged_registry: RuleRegistry) -> None:
    rule = packaged_registry.require("RULE-TEN-0001")

    assert (
        prioritize(rule, {"tenant_isolation_missing": True, "persisted": False}) is Priority.P2
    )


def test_unviolated_findings_produce_no_gaps(packaged_registry: RuleRegistry) -> None:
    assert classify([_finding("RULE-ENT-0001", violated=False)], packaged_registry) == ()


def test_gaps_sort_by_priority_module_subject_rule(packaged_registry: RuleRegistry) -> None:
    findings = [
        _finding("RULE-ENT-0002", module="Billing", subject="Invoice"),
        _finding("RULE-ENT-0001", module="Billing", subject="Invoice"),
        _finding("RULE-ENT-0001", module="Accounts", subject="User"),
        _finding(
            "RULE-DLT-0001",
            module="Zeta",
            subject="Flow",
            kind=FactKind.STATE_MACHINE,
            severity={"missing_in_code": True},
        ),
    ]

    gaps = classify(findings, packaged_registry)

    assert [(gap.priority.value, gap.module, gap.rule_id) for gap in gaps] == [
        ("P1", "Zeta", "RULE-DLT-0001"),
        ("P2", "Accounts", "RULE-ENT-0001"),
        ("P2", "Billing", "RULE-ENT-0001"),
        ("P3", "Billing", "RULE-ENT-0002"),
    ]


def test_unknown_rule_id_is_an_error(packaged_registry: RuleRegistry) -> None:
    with pytest.raises(KeyError, match="RULE-XYZ-0001"):
        classify([_finding("RULE-XYZ-0001")], packaged_registry)


@pytest.mark.parametrize("kind", list(FactKind))
def test_spec_only_fact_of_every_kind_is_a_spec_code_delta(
    packaged_registry: RuleRegistry, kind: FactKind
) -> None:
    spec_fact = SpecFact(
        module="Billing",
        kind=kind,
        subject_name="Subject",
        attributes={},
        source=SourceLocation(path="billing.md", line=3),
    )

    gaps = classify(evaluate([spec_fact], [], packaged_registry), packaged_registry)

    deltas = [gap for gap in gaps if gap.gap_type is GapType.SPEC_CODE_DELTA]
    assert len(deltas) == 1
    assert deltas[0].kind is kind
    assert deltas[0].evidence["absent_side"] == "code"


@pytest.mark.parametrize("kind", list(FactKind))
def test_code_only_fact_of_every_kind_yields_no_gap(
    packaged_registry: RuleRegistry, kind: FactKind
) -> None:
    code_fact = CodeFact(module="Billing", kind=kind, subject_name="Subject", attributes={})

    assert classify(evaluate([], [code_fact], packaged_registry), packaged_registry) == ()
