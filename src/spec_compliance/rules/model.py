"""Declarative rule model: tagged predicates, XOR decision nodes and leaves.

A rule is a binary decision tree stored as an ordered node list whose first
entry is the root. Every node holds one predicate and exactly two outgoing
edges, and every non-root node is referenced by exactly one edge, so ``n``
nodes always yield ``n + 1`` leaves reachable by paths of length <= ``n``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import ClassVar, TypeAlias

from spec_compliance.domain.models import (
    FactKind,
    FactPair,
    GapType,
    JSONValue,
    Priority,
    Side,
    as_json_value,
    canonical_json,
)


class PredicateOp(StrEnum):
    PRESENT = "present"
    ATTR_PRESENT = "attr_present"
    ATTR_EQUALS = "attr_equals"
    ATTR_TRUTHY = "attr_truthy"
    ATTRS_MATCH = "attrs_match"
    ATTR_SUBSET = "attr_subset"
    MODULE_IN = "module_in"


@dataclass(frozen=True, slots=True)
class PredicateResult:
    outcome: bool
    observed: dict[str, JSONValue]


@dataclass(frozen=True, slots=True)
class Present:
    op: ClassVar[PredicateOp] = PredicateOp.PRESENT
    side: Side

    def evaluate(self, pair: FactPair) -> PredicateResult:
        present = pair.side(self.side) is not None
        return PredicateResult(present, {f"{self.side.value}.present": present})

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "side": self.side.value}


@dataclass(frozen=True, slots=True)
class AttrPresent:
    op: ClassVar[PredicateOp] = PredicateOp.ATTR_PRESENT
    side: Side
    attribute: str

    def evaluate(self, pair: FactPair) -> PredicateResult:
        found, value = _lookup(pair, self.side, self.attribute)
        return PredicateResult(found, {f"{self.side.value}.{self.attribute}": value})

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "side": self.side.value, "attribute": self.attribute}


@dataclass(frozen=True, slots=True)
class AttrEquals:
    op: ClassVar[PredicateOp] = PredicateOp.ATTR_EQUALS
    side: Side
    attribute: str
    value: JSONValue

    def evaluate(self, pair: FactPair) -> PredicateResult:
        found, actual = _lookup(pair, self.side, self.attribute)
        outcome = found and comparable(actual) == comparable(self.value)
        return PredicateResult(outcome, {f"{self.side.value}.{self.attribute}": actual})

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "op": self.op.value,
            "side": self.side.value,
            "attribute": self.attribute,
            "value": self.value,
        }


@dataclass(frozen=True, slots=True)
class AttrTruthy:
    op: ClassVar[PredicateOp] = PredicateOp.ATTR_TRUTHY
    side: Side
    attribute: str

    def evaluate(self, pair: FactPair) -> PredicateResult:
        found, actual = _lookup(pair, self.side, self.attribute)
        return PredicateResult(
            found and bool(actual), {f"{self.side.value}.{self.attribute}": actual}
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "side": self.side.value, "attribute": self.attribute}


@dataclass(frozen=True, slots=True)
class AttrsMatch:
    """Both sides present and ``attribute`` equal (lists compared as multisets)."""

    op: ClassVar[PredicateOp] = PredicateOp.ATTRS_MATCH
    attribute: str

    def evaluate(self, pair: FactPair) -> PredicateResult:
        spec_found, spec_value = _lookup(pair, Side.SPEC, self.attribute)
        code_found, code_value = _lookup(pair, Side.CODE, self.attribute)
        outcome = (
            pair.spec is not None
            and pair.code is not None
            and spec_found == code_found
            and comparable(spec_value) == comparable(code_value)
        )
        return PredicateResult(
            outcome,
            {f"spec.{self.attribute}": spec_value, f"code.{self.attribute}": code_value},
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "attribute": self.attribute}


@dataclass(frozen=True, slots=True)
class AttrSubset:
    """Every element the spec lists for ``attribute`` also appears on the code side."""

    op: ClassVar[PredicateOp] = PredicateOp.ATTR_SUBSET
    attribute: str

    def evaluate(self, pair: FactPair) -> PredicateResult:
        _, spec_value = _lookup(pair, Side.SPEC, self.attribute)
        _, code_value = _lookup(pair, Side.CODE, self.attribute)
        missing = _missing_elements(spec_value, code_value)
        outcome = pair.spec is not None and pair.code is not None and not missing
        return PredicateResult(
            outcome,
            {
                f"spec.{self.attribute}": spec_value,
                f"code.{self.attribute}": code_value,
                f"missing.{self.attribute}": missing,
            },
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "attribute": self.attribute}


@dataclass(frozen=True, slots=True)
class ModuleIn:
    op: ClassVar[PredicateOp] = PredicateOp.MODULE_IN
    modules: tuple[str, ...]

    def evaluate(self, pair: FactPair) -> PredicateResult:
        return PredicateResult(pair.key.module in self.modules, {"module": pair.key.module})

    def to_dict(self) -> dict[str, JSONValue]:
        return {"op": self.op.value, "modules": list(self.modules)}


Predicate: TypeAlias = (
    Present | AttrPresent | AttrEquals | AttrTruthy | AttrsMatch | AttrSubset | ModuleIn
)


@dataclass(frozen=True, slots=True)
class Leaf:
    """Terminal outcome of a walk; a judgment leaf defers the decision."""

    violated: bool = False
    reason: str = ""
    severity: Mapping[str, JSONValue] = field(default_factory=dict)
    judgment: bool = False
    prompt: str | None = None


@dataclass(frozen=True, slots=True)
class NextNode:
    node_id: str


Edge: TypeAlias = Leaf | NextNode


@dataclass(frozen=True, slots=True)
class DecisionNode:
    id: str
    predicate: Predicate
    taken: Edge
    not_taken: Edge

    def edge(self, outcome: bool) -> Edge:
        return self.taken if outcome else self.not_taken


@dataclass(frozen=True, slots=True)
class Escalation:
    """Raise priority by ``levels`` when every ``when`` entry matches finding severity."""

    when: Mapping[str, JSONValue]
    levels: int = 1

    def matches(self, severity: Mapping[str, JSONValue]) -> bool:
        return all(
            key in severity and comparable(severity[key]) == comparable(expected)
            for key, expected in self.when.items()
        )


@dataclass(frozen=True, slots=True)
class PathStep:
    node_id: str
    taken: bool

    def to_dict(self) -> dict[str, JSONValue]:
        return {"node": self.node_id, "taken": self.taken}


@dataclass(frozen=True, slots=True)
class DecisionPath:
    steps: tuple[PathStep, ...]
    leaf: Leaf


@dataclass(frozen=True, slots=True)
class Rule:
    """A named, versioned decision tree plus its classification metadata."""

    id: str
    version: int
    applies_to: FactKind
    gap_type: GapType
    default_priority: Priority
    description: str
    nodes: tuple[DecisionNode, ...] = ()
    requires_judgment: bool = False
    judgment_prompt: str | None = None
    decision_options: tuple[str, ...] = ()
    escalations: tuple[Escalation, ...] = ()
    source: str | None = None
    node_index: Mapping[str, DecisionNode] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.nodes and not self.requires_judgment:
            raise ValueError(f"rule {self.id}: nodes must not be empty unless requires_judgment")
        object.__setattr__(self, "node_index", validate_tree(self.nodes, rule_id=self.id))

    @property
    def root(self) -> DecisionNode | None:
        return self.nodes[0] if self.nodes else None

    def node(self, node_id: str) -> DecisionNode:
        return self.node_index[node_id]


def validate_tree(
    nodes: Sequence[DecisionNode], *, rule_id: str = "<rule>"
) -> dict[str, DecisionNode]:
    """Check that ``nodes`` form a single tree rooted at ``nodes[0]``; return the id index."""
    index: dict[str, DecisionNode] = {}
    for node in nodes:
        if node.id in index:
            raise ValueError(f"rule {rule_id}: duplicate node id {node.id!r}")
        index[node.id] = node
    if not nodes:
        return index

    root_id = nodes[0].id
    referenced: dict[str, str] = {}
    for node in nodes:
        for edge in (node.taken, node.not_taken):
            if not isinstance(edge, NextNode):
                continue
            target = edge.node_id
            if target not in index:
                raise ValueError(f"rule {rule_id}: node {node.id!r} points to unknown {target!r}")
            if target == root_id:
                raise ValueError(f"rule {rule_id}: node {node.id!r} points back to the root")
            previous = referenced.get(target)
            if previous is not None:
                raise ValueError(
                    f"rule {rule_id}: node {target!r} is referenced by both "
                    f"{previous!r} and {node.id!r}; decision nodes must form a tree"
                )
            referenced[target] = node.id

    reachable: set[str] = set()
    pending = [root_id]
    while pending:
        current = pending.pop()
        if current in reachable:
            raise ValueError(f"rule {rule_id}: cycle through node {current!r}")
        reachable.add(current)
        node = index[current]
        for edge in (node.taken, node.not_taken):
            if isinstance(edge, NextNode):
                pending.append(edge.node_id)

    unreachable = sorted(set(index) - reachable)
    if unreachable:
        raise ValueError(f"rule {rule_id}: unreachable nodes {unreachable}")
    return index


def decision_paths(rule: Rule) -> tuple[DecisionPath, ...]:
    """Enumerate every root-to-leaf path of ``rule``."""
    root = rule.root
    if root is None:
        return ()

    paths: list[DecisionPath] = []
    stack: list[tuple[DecisionNode, tuple[PathStep, ...]]] = [(root, ())]
    while stack:
        node, prefix = stack.pop()
        for outcome in (True, False):
            steps = (*prefix, PathStep(node.id, outcome))
            edge = node.edge(outcome)
            if isinstance(edge, Leaf):
                paths.append(DecisionPath(steps=steps, leaf=edge))
            else:
                stack.append((rule.node(edge.node_id), steps))
    return tuple(paths)


def comparable(value: object) -> str:
    """Canonical text form used for equality; list order is ignored."""
    return canonical_json(_normalize_for_compare(as_json_value(value, "value")))


def _normalize_for_compare(value: JSONValue) -> JSONValue:
    if isinstance(value, list):
        return sorted((_normalize_for_compare(item) for item in value), key=canonical_json)
    if isinstance(value, dict):
        return {key: _normalize_for_compare(item) for key, item in value.items()}
    return value


def _lookup(pair: FactPair, side: Side, attribute: str) -> tuple[bool, JSONValue]:
    fact = pair.side(side)
    if fact is None or attribute not in fact.attributes:
        return (False, None)
    return (True, as_json_value(fact.attributes[attribute], attribute))


def _missing_elements(spec_value: JSONValue, code_value: JSONValue) -> list[JSONValue]:
    if spec_value is None:
        return []
    if isinstance(spec_value, dict):
        code_map = code_value if isinstance(code_value, dict) else {}
        missing: list[JSONValue] = []
        for key in sorted(spec_value):
            if key not in code_map:
                missing.append(key)
                continue
            missing.extend(
                f"{key}:{item if isinstance(item, str) else canonical_json(item)}"
                for item in _missing_elements(spec_value[key], code_map[key])
            )
        return missing

    spec_items = spec_value if isinstance(spec_value, list) else [spec_value]
    if code_value is None:
        code_items: list[JSONValue] = []
    else:
        code_items = code_value if isinstance(code_value, list) else [code_value]
    present = {comparable(item) for item in code_items}
    return sorted(
        (item for item in spec_items if comparable(item) not in present),
        key=canonical_json,
    )


__all__ = [
    "AttrEquals",
    "AttrPresent",
    "AttrSubset",
    "AttrTruthy",
    "AttrsMatch",
    "DecisionNode",
    "DecisionPath",
    "Edge",
    "Escalation",
    "Leaf",
    "ModuleIn",
    "NextNode",
    "PathStep",
    "Predicate",
    "PredicateOp",
    "PredicateResult",
    "Present",
    "Rule",
    "comparable",
    "decision_paths",
    "validate_tree",
]
