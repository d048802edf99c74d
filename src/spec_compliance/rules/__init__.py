"""Declarative rules: model, registry loader and tree-walking engine."""

from spec_compliance.rules.engine import (
    EvaluationOutcome,
    RuleEngine,
    WalkResult,
    evaluate,
    join_facts,
    walk,
)
from spec_compliance.rules.model import (
    DecisionNode,
    DecisionPath,
    Escalation,
    Leaf,
    NextNode,
    PathStep,
    PredicateOp,
    Rule,
    decision_paths,
)
from spec_compliance.rules.registry import (
    PACKAGED_RULES_DIR,
    RuleRegistry,
    RuleRegistryHandle,
    RuleRegistryLoadError,
    parse_rule,
    rule_summary,
)

__all__ = [
    "PACKAGED_RULES_DIR",
    "DecisionNode",
    "DecisionPath",
    "Escalation",
    "EvaluationOutcome",
    "Leaf",
    "NextNode",
    "PathStep",
    "PredicateOp",
    "Rule",
    "RuleEngine",
    "RuleRegistry",
    "RuleRegistryHandle",
    "RuleRegistryLoadError",
    "WalkResult",
    "decision_paths",
    "evaluate",
    "join_facts",
    "parse_rule",
    "rule_summary",
    "walk",
]
