"""Gap classification and prioritization of violated findings."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from spec_compliance.domain.models import Gap, JSONValue, Priority

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from spec_compliance.domain.models import Finding
    from spec_compliance.rules.model import Rule
    from spec_compliance.rules.registry import RuleRegistry

logger = structlog.get_logger(__name__)


def prioritize(rule: Rule, severity: Mapping[str, JSONValue]) -> Priority:
    """Rule default priority escalated once per matching escalation, capped at P1."""
    levels = sum(
        escalation.levels for escalation in rule.escalations if escalation.matches(severity)
    )
    return rule.default_priority.escalate(levels)


def classify(findings: Iterable[Finding], registry: RuleRegistry) -> tuple[Gap, ...]:
    """Map violated findings to gaps ordered by priority, module, subject then rule.

    Raises ``KeyError`` when a finding names a rule the registry does not hold.
    """
    gaps: list[Gap] = []
    for finding in findings:
        if not finding.violated:
            continue
        rule = registry.require(finding.rule_id)
        priority = prioritize(rule, finding.severity)
        evidence: dict[str, JSONValue] = dict(finding.evidence)
        evidence["rule_version"] = finding.rule_version
        if finding.severity:
            evidence["severity"] = dict(finding.severity)
        if priority is not rule.default_priority:
            logger.debug(
                "gap_priority_escalated",
                rule_id=rule.id,
                module=finding.module,
                subject=finding.subject_name,
                default=rule.default_priority.value,
                priority=priority.value,
            )
        gaps.append(
            Gap(
                gap_type=rule.gap_type,
                priority=priority,
                module=finding.module,
                kind=finding.kind,
                subject_name=finding.subject_name,
                rule_id=rule.id,
                description=rule.description,
                suggested_decision_options=rule.decision_options,
                evidence=evidence,
            )
        )
    gaps.sort(key=lambda gap: gap.sort_key)
    return tuple(gaps)


__all__ = ["classify", "prioritize"]
