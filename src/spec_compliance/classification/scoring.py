"""Per-module compliance scores derived from findings and classified gaps."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from spec_compliance.domain.models import Finding, Gap
    from spec_compliance.rules.registry import RuleRegistry


def compute_module_scores(
    findings: Iterable[Finding],
    gaps: Iterable[Gap],
    registry: RuleRegistry,
    modules: Iterable[str],
    unavailable: Iterable[str] = (),
) -> dict[str, float | None]:
    """Score each module in ``modules`` on [0, 1].

    The score is ``1 - gap_weight / evaluated_weight`` where the evaluated
    weight sums the default priority weight of every rule evaluated in the
    module and the gap weight sums the (possibly escalated) gap priorities.
    Modules with nothing evaluated score 1.0; unavailable modules score None.
    """
    missing = frozenset(unavailable)
    evaluated: dict[str, int] = {}
    for finding in findings:
        rule = registry.get(finding.rule_id)
        if rule is None:
            continue
        evaluated[finding.module] = evaluated.get(finding.module, 0) + rule.default_priority.weight
    penalties: dict[str, int] = {}
    for gap in gaps:
        penalties[gap.module] = penalties.get(gap.module, 0) + gap.priority.weight

    scores: dict[str, float | None] = {}
    for module in sorted(set(modules)):
        if module in missing:
            scores[module] = None
            continue
        total = evaluated.get(module, 0)
        if total == 0:
            scores[module] = 1.0
            continue
        raw = 1.0 - penalties.get(module, 0) / total
        scores[module] = round(min(1.0, max(0.0, raw)), 6)
    return scores


__all__ = ["compute_module_scores"]
