"""Generic tree-walking interpreter for declarative compliance rules.

Walks are pure functions of ``(rule, fact pair)``; the engine joins spec and
code facts on ``(module, kind, subject_name)``, walks every applicable rule
over every pair (one-sided pairs included) and re-sorts the output so the
sequence is positionally identical regardless of evaluation order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from spec_compliance.domain.models import (
    FactKey,
    FactPair,
    Finding,
    JSONValue,
    PendingJudgment,
)
from spec_compliance.rules.model import Leaf, PathStep, Rule

if TYPE_CHECKING:
    from collections.abc import Iterable

    from spec_compliance.domain.models import CodeFact, SpecFact
    from spec_compliance.rules.registry import RuleRegistry
    from spec_compliance.utils.concurrency import CancellationToken

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class WalkResult:
    path: tuple[PathStep, ...]
    leaf: Leaf
    observed: dict[str, JSONValue]


@dataclass(frozen=True, slots=True)
class EvaluationOutcome:
    findings: tuple[Finding, ...]
    pending_judgments: tuple[PendingJudgment, ...]
    pairs_evaluated: int = 0


def walk(rule: Rule, pair: FactPair) -> WalkResult:
    """Follow exactly one edge per node from the root until a leaf is reached."""
    node = rule.root
    if node is None:
        raise ValueError(f"rule {rule.id} has no decision nodes to walk")

    steps: list[PathStep] = []
    observed: dict[str, JSONValue] = {}
    # A validated tree reaches a leaf in at most len(nodes) steps.
    for _ in range(len(rule.nodes)):
        result = node.predicate.evaluate(pair)
        steps.append(PathStep(node.id, result.outcome))
        for key, value in result.observed.items():
            observed.setdefault(key, value)
        edge = node.edge(result.outcome)
        if isinstance(edge, Leaf):
            return WalkResult(path=tuple(steps), leaf=edge, observed=observed)
        node = rule.node(edge.node_id)
    raise RuntimeError(f"rule {rule.id} did not reach a leaf in {len(rule.nodes)} steps")


def join_facts(
    spec_facts: Iterable[SpecFact],
    code_facts: Iterable[CodeFact],
    module_scope: Iterable[str] | None = None,
) -> tuple[FactPair, ...]:
    """Pair facts by key within ``module_scope`` (``None`` means every module)."""
    scope = None if module_scope is None else frozenset(module_scope)
    spec_by_key: dict[FactKey, SpecFact] = {}
    for spec_fact in spec_facts:
        spec_by_key.setdefault(spec_fact.key, spec_fact)
    code_by_key: dict[FactKey, CodeFact] = {}
    for code_fact in code_facts:
        code_by_key.setdefault(code_fact.key, code_fact)

    keys = sorted(
        key
        for key in set(spec_by_key) | set(code_by_key)
        if scope is None or key.module in scope
    )
    return tuple(FactPair(key, spec_by_key.get(key), code_by_key.get(key)) for key in keys)


class RuleEngine:
    """Evaluates a registry snapshot against joined fact pairs."""

    __slots__ = ()

    def evaluate(
        self,
        spec_facts: Iterable[SpecFact],
        code_facts: Iterable[CodeFact],
        registry: RuleRegistry,
        module_scope: Iterable[str] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> EvaluationOutcome:
        """Evaluate every applicable rule on every pair.

        ``cancel_token`` is checked between walks, so a cancelled evaluation
        always finishes the walk it is in before raising ``CancellationError``.
        """
        pairs = join_facts(spec_facts, code_facts, module_scope)
        findings: list[Finding] = []
        pending: list[PendingJudgment] = []

        for pair in pairs:
            for rule in registry.for_kind(pair.key.kind):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if rule.requires_judgment:
                    pending.append(_pending_judgment(rule, pair, None))
                    continue
                result = walk(rule, pair)
                if result.leaf.judgment:
                    pending.append(_pending_judgment(rule, pair, result))
                    continue
                findings.append(_finding(rule, pair, result))

        findings.sort(key=lambda finding: finding.sort_key)
        pending.sort(key=lambda item: item.sort_key)
        logger.debug(
            "rule_engine_evaluated",
            pairs=len(pairs),
            findings=len(findings),
            violations=sum(1 for finding in findings if finding.violated),
            pending_judgments=len(pending),
        )
        return EvaluationOutcome(
            findings=tuple(findings),
            pending_judgments=tuple(pending),
            pairs_evaluated=len(pairs),
        )


def evaluate(
    spec_facts: Iterable[SpecFact],
    code_facts: Iterable[CodeFact],
    registry: RuleRegistry,
    module_scope: Iterable[str] | None = None,
) -> tuple[Finding, ...]:
    """Return the sorted findings for ``registry`` over the joined facts."""
    return RuleEngine().evaluate(spec_facts, code_facts, registry, module_scope).findings


def _finding(rule: Rule, pair: FactPair, result: WalkResult) -> Finding:
    absent = pair.absent_side
    evidence: dict[str, JSONValue] = {
        "path": [step.to_dict() for step in result.path],
        "reason": result.leaf.reason,
        "absent_side": None if absent is None else absent.value,
        "observed": dict(result.observed),
    }
    if pair.spec is not None:
        evidence["spec_source"] = str(pair.spec.source)
    if pair.code is not None and pair.code.origin is not None:
        evidence["code_origin"] = pair.code.origin
    return Finding(
        rule_id=rule.id,
        rule_version=rule.version,
        module=pair.key.module,
        kind=pair.key.kind,
        subject_name=pair.key.subject_name,
        violated=result.leaf.violated,
        evidence=evidence,
        severity=dict(result.leaf.severity),
    )


def _pending_judgment(rule: Rule, pair: FactPair, result: WalkResult | None) -> PendingJudgment:
    question = (
        (result.leaf.prompt if result is not None else None)
        or rule.judgment_prompt
        or rule.description
    )
    prompt: dict[str, JSONValue] = {
        "question": question,
        "rule": {
            "id": rule.id,
            "version": rule.version,
            "description": rule.description,
            "gap_type": rule.gap_type.value,
        },
        "subject": pair.key.to_dict(),
        "path": [] if result is None else [step.to_dict() for step in result.path],
        "observed": {} if result is None else dict(result.observed),
    }
    return PendingJudgment(
        rule_id=rule.id,
        rule_version=rule.version,
        fact_pair=pair,
        prompt=prompt,
        suggested_decision_options=rule.decision_options,
    )


__all__ = [
    "EvaluationOutcome",
    "RuleEngine",
    "WalkResult",
    "evaluate",
    "join_facts",
    "walk",
]
