"""
spec-compliance: unit tests for the declarative rule model

Purpose
- Validate decision-tree structure checks, path enumeration and predicate semantics.

What this test file should cover
- Trees with duplicate ids, dangling edges, shared children or unreachable nodes are rejected.
- ``n`` decision nodes always yield ``n + 1`` leaves with paths no longer than ``n``.
- Predicates compare lists as multisets and report observed values.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from spec_compliance.domain.models import (
    CodeFact,
    FactKind,
    FactPair,
    GapType,
    Priority,
    Side,
    SourceLocation,
    SpecFact,
)
from spec_compliance.rules.model import (
    AttrEquals,
    AttrPresent,
    AttrsMatch,
    AttrSubset,
    AttrTruthy,
    DecisionNode,
    Escalation,
    Leaf,
    ModuleIn,
    NextNode,
    Present,
    Rule,
    comparable,
    decision_paths,
    validate_tree,
)

VIOLATED = Leaf(violated=True, reason="violated")
OK = Leaf(violated=False, reason="ok")


def _rule(nodes: tuple[DecisionNode, ...]) -> Rule:
    return Rule(
        id="RULE-ENT-0001",
        version=1,
        applies_to=FactKind.ENTITY_DEF,
        gap_type=GapType.SPEC_CODE_DELTA,
        default_priority=Priority.P2,
        description="test rule",
        nodes=nodes,
    )


def _node(
    node_id: str, taken: Leaf | NextNode = OK, not_taken: Leaf | NextNode = VIOLATED
) -> DecisionNode:
    return DecisionNode(
        id=node_id,
        predicate=Present(side=Side.CODE),
        taken=taken,
        not_taken=not_taken,
    )


def _pair(
    spec_attributes: dict[str, object] | None = None,
    code_attributes: dict[str, object] | None = None,
    module: str = "Billing",
) -> FactPair:
    spec = (
        None
        if spec_attributes is None
        else SpecFact(
            module=module,
            kind=FactKind.ENTITY_DEF,
            subject_name="Invoice",
            attributes=spec_attributes,
            source=SourceLocation(path="billing.md", line=1),
        )
    )
    code = (
        None
        if code_attributes is None
        else CodeFact(
            module=module,
            kind=FactKind.ENTITY_DEF,
            subject_name="Invoice",
            attributes=code_attributes,
        )
    )
    key = (spec or code).key  # type: ignore[union-attr]
    return FactPair(key, spec=spec, code=code)


def test_validate_tree_rejects_duplicate_ids() -> None:
    with pytest.raises(ValueError, match="duplicate node id 'a'"):
        validate_tree([_node("a"), _node("a")])


def test_validate_tree_rejects_edges_back_to_root() -> None:
    with pytest.raises(ValueError, match="points back to the root"):
        validate_tree([_node("a", taken=NextNode("b")), _node("b", taken=NextNode("a"))])


def test_validate_tree_rejects_shared_children() -> None:
    nodes = [
        _node("a", taken=NextNode("b"), not_taken=NextNode("c")),
        _node("b", taken=NextNode("d")),
        _node("c", taken=NextNode("d")),
        _node("d"),
    ]

    with pytest.raises(ValueError, match="referenced by both"):
        validate_tree(nodes)


def test_validate_tree_rejects_unreachable_nodes() -> None:
    with pytest.raises(ValueError, match=r"unreachable nodes \['orphan'\]"):
        validate_tree([_node("a"), _node("orphan")])


def test_rule_without_nodes_requires_judgment() -> None:
    with pytest.raises(ValueError, match="nodes must not be empty"):
        _rule(())


def test_decision_paths_enumerates_every_leaf() -> None:
    rule = _rule((_node("a", taken=NextNode("b")), _node("b")))

    paths = decision_paths(rule)

    by_steps = {
        tuple((step.node_id, step.taken) for step in path.steps): path.leaf for path in paths
    }
    assert by_steps == {
        (("a", False),): VIOLATED,
        (("a", True), ("b", True)): OK,
        (("a", True), ("b", False)): VIOLATED,
    }


@given(st.lists(st.booleans(), min_size=1, max_size=12))
def test_chain_of_n_nodes_has_n_plus_one_leaves(branch_sides: list[bool]) -> None:
    nodes: list[DecisionNode] = []
    for index, continue_on_taken in enumerate(branch_sides):
        node_id = f"n{index}"
        is_last = index == len(branch_sides) - 1
        onward: Leaf | NextNode = OK if is_last else NextNode(f"n{index + 1}")
        if continue_on_taken:
            nodes.append(_node(node_id, taken=onward, not_taken=VIOLATED))
        else:
            nodes.append(_node(node_id, taken=VIOLATED, not_taken=onward))

    paths = decision_paths(_rule(tuple(nodes)))

    assert len(paths) == len(nodes) + 1
    assert all(len(path.steps) <= len(nodes) for path in paths)
    assert max(len(path.steps) for path in paths) == len(nodes)


def test_present_and_attr_predicates_report_observed_values() -> None:
    pair = _pair({"tenantScoped": True}, {"tenantScoped": False, "note": ""})

    assert Present(Side.SPEC).evaluate(pair).outcome is True
    assert AttrPresent(Side.CODE, "missing").evaluate(pair).outcome is False
    equals = AttrEquals(Side.CODE, "tenantScoped", False).evaluate(pair)
    assert equals.outcome is True
    assert equals.observed == {"code.tenantScoped": False}
    assert AttrTruthy(Side.CODE, "note").evaluate(pair).outcome is False
    assert AttrTruthy(Side.SPEC, "tenantScoped").evaluate(pair).outcome is True


def test_attrs_match_ignores_list_order_and_requires_both_sides() -> None:
    matched = AttrsMatch("fields").evaluate(_pair({"fields": ["a", "b"]}, {"fields": ["b", "a"]}))
    assert matched.outcome is True

    one_sided = AttrsMatch("fields").evaluate(_pair({"fields": ["a"]}, None))
    assert one_sided.outcome is False

    both_absent = AttrsMatch("fields").evaluate(_pair({}, {}))
    assert both_absent.outcome is True


def test_attr_subset_reports_missing_elements() -> None:
    result = AttrSubset("fields").evaluate(
        _pair({"fields": ["id", "amount", "currency"]}, {"fields": ["id"]})
    )

    assert result.outcome is False
    assert result.observed["missing.fields"] == ["amount", "currency"]


def test_attr_subset_compares_nested_grant_mappings() -> None:
    result = AttrSubset("grants").evaluate(
        _pair(
            {"grants": {"admin": ["read", "write"], "viewer": ["read"]}},
            {"grants": {"admin": ["read"]}},
        )
    )

    assert result.outcome is False
    assert result.observed["missing.grants"] == ["admin:write", "viewer"]


def test_module_in_checks_pair_module() -> None:
    predicate = ModuleIn(modules=("Billing", "Payments"))

    assert predicate.evaluate(_pair({}, None)).outcome is True
    assert predicate.evaluate(_pair({}, None, module="Accounts")).outcome is False


def test_escalation_matches_only_when_every_condition_holds() -> None:
    escalation = Escalation(when={"tenant_isolation_missing": True, "persisted": True})

    assert escalation.matches({"tenant_isolation_missing": True, "persisted": True})
    assert not escalation.matches({"tenant_isolation_missing": True, "persisted": False})
    assert not escalation.matches({"tenant_isolation_missing": True})


def test_comparable_is_order_insensitive_for_lists() -> None:
    assert comparable(["b", "a"]) == comparable(["a", "b"])
    assert comparable({"x": [2, 1]}) == comparable({"x": [1, 2]})
    assert comparable([1]) != comparable(1)
