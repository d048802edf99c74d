"""Deterministic rule registry loader with collect-and-report validation."""

from __future__ import annotations

import hashlib
import os
import re
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Final, TypeAlias, TypeVar, cast

import structlog
import yaml

from spec_compliance.domain.models import (
    FactKind,
    GapType,
    JSONValue,
    Priority,
    RunWarning,
    Side,
    WarningCode,
    as_json_value,
    canonical_json,
)
from spec_compliance.rules.model import (
    AttrEquals,
    AttrPresent,
    AttrSubset,
    AttrTruthy,
    AttrsMatch,
    DecisionNode,
    Edge,
    Escalation,
    Leaf,
    ModuleIn,
    NextNode,
    Predicate,
    PredicateOp,
    Present,
    Rule,
)

PathLike: TypeAlias = str | os.PathLike[str]
TEnum = TypeVar("TEnum", bound=Enum)

logger = structlog.get_logger(__name__)

_RULE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^RULE-[A-Z]{2,10}-\d{4}$")
_REQUIRED_RULE_FIELDS: Final[frozenset[str]] = frozenset(
    {"id", "version", "applies_to", "gap_type", "default_priority", "description"}
)
_OPTIONAL_RULE_FIELDS: Final[frozenset[str]] = frozenset(
    {"nodes", "requires_judgment", "judgment_prompt", "decision_options", "escalations"}
)
_ALLOWED_RULE_FIELDS: Final[frozenset[str]] = _REQUIRED_RULE_FIELDS | _OPTIONAL_RULE_FIELDS
_PREDICATE_FIELDS: Final[dict[PredicateOp, frozenset[str]]] = {
    PredicateOp.PRESENT: frozenset({"side"}),
    PredicateOp.ATTR_PRESENT: frozenset({"side", "attribute"}),
    PredicateOp.ATTR_EQUALS: frozenset({"side", "attribute", "value"}),
    PredicateOp.ATTR_TRUTHY: frozenset({"side", "attribute"}),
    PredicateOp.ATTRS_MATCH: frozenset({"attribute"}),
    PredicateOp.ATTR_SUBSET: frozenset({"attribute"}),
    PredicateOp.MODULE_IN: frozenset({"modules"}),
}
_LEAF_FIELDS: Final[frozenset[str]] = frozenset(
    {"violated", "reason", "severity", "judgment", "prompt"}
)
_DEFAULT_REGISTRY_DIR: Final[Path] = Path("rules")
PACKAGED_RULES_DIR: Final[Path] = Path(__file__).resolve().parent / "defaults"


class RuleRegistryLoadError(ValueError):
    """One rule (or one whole registry file) failed schema validation."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        index: int | None = None,
        rule_id: str | None = None,
    ) -> None:
        self.message = message
        self.source = source
        self.index = index
        self.rule_id = rule_id
        super().__init__(f"{self.location}: {message}" if self.location else message)

    @property
    def location(self) -> str | None:
        if self.source is None:
            return None
        if self.index is None:
            return self.source
        return f"{self.source}[{self.index}]"

    def to_run_warning(self) -> RunWarning:
        label = f"rule {self.rule_id}: " if self.rule_id else ""
        return RunWarning(
            code=WarningCode.RULE_REGISTRY_LOAD_ERROR,
            message=f"{label}{self.message}",
            location=self.location,
        )


class RuleRegistry:
    """Immutable, deterministically ordered view of the rule registry files."""

    __slots__ = ("_by_id", "_by_kind", "_errors", "_registry_dir", "_rules", "_source_files")

    def __init__(
        self,
        *,
        rules: Sequence[Rule],
        errors: Sequence[RuleRegistryLoadError] = (),
        registry_dir: Path | None = None,
        source_files: Sequence[Path] = (),
    ) -> None:
        by_id: dict[str, Rule] = {}
        for rule in rules:
            if rule.id in by_id:
                raise ValueError(f"duplicate rule id in memory: {rule.id!r}")
            by_id[rule.id] = rule
        self._rules = tuple(sorted(rules, key=lambda rule: rule.id))
        self._by_id = by_id
        by_kind: dict[FactKind, list[Rule]] = {}
        for rule in self._rules:
            by_kind.setdefault(rule.applies_to, []).append(rule)
        self._by_kind = {kind: tuple(items) for kind, items in by_kind.items()}
        self._errors = tuple(errors)
        self._registry_dir = registry_dir
        self._source_files = tuple(source_files)

    @property
    def rules(self) -> tuple[Rule, ...]:
        """All loaded rules ordered by id."""
        return self._rules

    @property
    def errors(self) -> tuple[RuleRegistryLoadError, ...]:
        return self._errors

    @property
    def registry_dir(self) -> Path | None:
        return self._registry_dir

    @property
    def source_files(self) -> tuple[Path, ...]:
        return self._source_files

    @property
    def revision(self) -> str:
        entries = [[rule.id, rule.version] for rule in self._rules]
        return hashlib.sha256(canonical_json(entries).encode("utf-8")).hexdigest()

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._by_id

    def get(self, rule_id: str) -> Rule | None:
        return self._by_id.get(rule_id)

    def require(self, rule_id: str) -> Rule:
        rule = self._by_id.get(rule_id)
        if rule is None:
            raise KeyError(f"unknown rule id: {rule_id!r}")
        return rule

    def for_kind(self, kind: FactKind) -> tuple[Rule, ...]:
        return self._by_kind.get(kind, ())

    @classmethod
    def load(cls, registry_dir: PathLike = _DEFAULT_REGISTRY_DIR) -> RuleRegistry:
        """Load every ``*.yaml`` file in ``registry_dir`` in lexicographic order.

        Per-rule schema violations are collected on ``errors``; an unreadable
        directory or a file that is not a YAML list raises ``RuleRegistryLoadError``.
        """
        root = Path(registry_dir).expanduser()
        if not root.is_dir():
            raise RuleRegistryLoadError(
                "rule registry directory does not exist or is not a directory",
                source=root.as_posix(),
            )

        files = tuple(sorted(root.glob("*.yaml"), key=lambda path: (path.name, path.as_posix())))
        records: list[tuple[str, int, object]] = []
        for source_file in files:
            loaded = _load_rules_file(source_file)
            records.extend((source_file.name, index, item) for index, item in enumerate(loaded))

        registry = cls._from_indexed_records(records, registry_dir=root, source_files=files)
        logger.info(
            "rule_registry_loaded",
            registry_dir=root.as_posix(),
            files=len(files),
            rules=len(registry),
            errors=len(registry.errors),
        )
        return registry

    @classmethod
    def from_records(
        cls, records: Iterable[object], *, source: str = "<memory>"
    ) -> RuleRegistry:
        """Build a registry from already-parsed rule mappings."""
        indexed = [(source, index, item) for index, item in enumerate(records)]
        return cls._from_indexed_records(indexed)

    @classmethod
    def _from_indexed_records(
        cls,
        records: Sequence[tuple[str, int, object]],
        *,
        registry_dir: Path | None = None,
        source_files: Sequence[Path] = (),
    ) -> RuleRegistry:
        rules: list[Rule] = []
        errors: list[RuleRegistryLoadError] = []
        seen: dict[str, str] = {}

        for source, index, item in records:
            location = f"{source}[{index}]"
            rule_id = _peek_rule_id(item)
            try:
                rule = parse_rule(item, location=location, source=source)
            except ValueError as exc:
                error = RuleRegistryLoadError(
                    _strip_location(str(exc), location),
                    source=source,
                    index=index,
                    rule_id=rule_id,
                )
                logger.warning(
                    "rule_registry_rule_rejected",
                    location=location,
                    rule_id=rule_id,
                    error=error.message,
                )
                errors.append(error)
                continue

            first_seen = seen.get(rule.id)
            if first_seen is not None:
                error = RuleRegistryLoadError(
                    f"duplicate rule id {rule.id!r}; first defined at {first_seen}",
                    source=source,
                    index=index,
                    rule_id=rule.id,
                )
                logger.warning("rule_registry_duplicate_id", location=location, rule_id=rule.id)
                errors.append(error)
                continue
            seen[rule.id] = location
            rules.append(rule)

        return cls(
            rules=rules,
            errors=errors,
            registry_dir=registry_dir,
            source_files=source_files,
        )


class RuleRegistryHandle:
    """Holds the current registry snapshot; reloads swap in a new one atomically.

    Runs capture ``current`` once at start, so a reload never changes the
    rules of a run already in flight.
    """

    __slots__ = ("_current", "_loader", "_lock")

    def __init__(
        self,
        loader: Callable[[], RuleRegistry],
        *,
        initial: RuleRegistry | None = None,
    ) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._current = initial if initial is not None else loader()

    @classmethod
    def from_directory(cls, registry_dir: PathLike) -> RuleRegistryHandle:
        root = Path(registry_dir)
        return cls(lambda: RuleRegistry.load(root))

    @classmethod
    def static(cls, registry: RuleRegistry) -> RuleRegistryHandle:
        return cls(lambda: registry, initial=registry)

    @property
    def current(self) -> RuleRegistry:
        with self._lock:
            return self._current

    def reload(self) -> RuleRegistry:
        fresh = self._loader()
        with self._lock:
            self._current = fresh
        logger.info("rule_registry_reloaded", rules=len(fresh), errors=len(fresh.errors))
        return fresh


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _load_rules_file(path: Path) -> list[object]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except OSError as exc:
        raise RuleRegistryLoadError(f"unreadable registry file ({exc})", source=path.name) from exc
    except yaml.YAMLError as exc:
        raise RuleRegistryLoadError(f"invalid YAML ({exc})", source=path.name) from exc

    if loaded is None:
        return []
    if not isinstance(loaded, list):
        raise RuleRegistryLoadError(
            f"expected top-level YAML sequence, got {type(loaded).__name__}",
            source=path.name,
        )
    return list(loaded)


def parse_rule(value: object, *, location: str, source: str | None = None) -> Rule:
    """Parse one rule mapping; raises ``ValueError`` prefixed with ``location``."""
    parsed = _as_string_key_mapping(value, location)
    parsed_keys = set(parsed)

    missing = sorted(_REQUIRED_RULE_FIELDS - parsed_keys)
    if missing:
        raise ValueError(f"{location}: missing required fields: {missing}")

    unknown = sorted(parsed_keys - _ALLOWED_RULE_FIELDS)
    if unknown:
        raise ValueError(
            f"{location}: unexpected fields: {unknown}; allowed fields: "
            f"{sorted(_ALLOWED_RULE_FIELDS)}"
        )

    rule_id = _coerce_rule_id(parsed["id"], f"{location}.id")
    version = _coerce_positive_int(parsed["version"], f"{location}.version")
    applies_to = _coerce_enum(FactKind, parsed["applies_to"], f"{location}.applies_to")
    gap_type = _coerce_enum(GapType, parsed["gap_type"], f"{location}.gap_type")
    default_priority = _coerce_enum(
        Priority, parsed["default_priority"], f"{location}.default_priority"
    )
    description = _coerce_non_empty_str(parsed["description"], f"{location}.description")
    requires_judgment = _coerce_bool(
        parsed.get("requires_judgment", False), f"{location}.requires_judgment"
    )
    judgment_prompt = (
        _coerce_non_empty_str(parsed["judgment_prompt"], f"{location}.judgment_prompt")
        if parsed.get("judgment_prompt") is not None
        else None
    )
    decision_options = _coerce_str_list(
        parsed.get("decision_options", []), f"{location}.decision_options"
    )
    raw_escalations = _coerce_list(parsed.get("escalations", []), f"{location}.escalations")
    escalations = tuple(
        _parse_escalation(item, f"{location}.escalations[{index}]")
        for index, item in enumerate(raw_escalations)
    )
    raw_nodes = _coerce_list(parsed.get("nodes", []), f"{location}.nodes")
    nodes = tuple(
        _parse_node(item, f"{location}.nodes[{index}]") for index, item in enumerate(raw_nodes)
    )

    try:
        return Rule(
            id=rule_id,
            version=version,
            applies_to=applies_to,
            gap_type=gap_type,
            default_priority=default_priority,
            description=description,
            nodes=nodes,
            requires_judgment=requires_judgment,
            judgment_prompt=judgment_prompt,
            decision_options=decision_options,
            escalations=escalations,
            source=source,
        )
    except ValueError as exc:
        raise ValueError(f"{location}: {exc}") from exc


def _parse_node(value: object, path: str) -> DecisionNode:
    parsed = _as_string_key_mapping(value, path)
    _check_fields(parsed, path, required={"id", "predicate", "taken", "not_taken"})
    return DecisionNode(
        id=_coerce_non_empty_str(parsed["id"], f"{path}.id"),
        predicate=parse_predicate(parsed["predicate"], f"{path}.predicate"),
        taken=_parse_edge(parsed["taken"], f"{path}.taken"),
        not_taken=_parse_edge(parsed["not_taken"], f"{path}.not_taken"),
    )


def parse_predicate(value: object, path: str) -> Predicate:
    parsed = _as_string_key_mapping(value, path)
    if "op" not in parsed:
        raise ValueError(f"{path}: missing required field 'op'")
    op = _coerce_enum(PredicateOp, parsed["op"], f"{path}.op")
    fields = _PREDICATE_FIELDS[op]
    body = {key: item for key, item in parsed.items() if key != "op"}
    _check_fields(body, path, required=set(fields))

    if op is PredicateOp.PRESENT:
        return Present(side=_coerce_enum(Side, body["side"], f"{path}.side"))
    if op is PredicateOp.ATTR_PRESENT:
        return AttrPresent(
            side=_coerce_enum(Side, body["side"], f"{path}.side"),
            attribute=_coerce_non_empty_str(body["attribute"], f"{path}.attribute"),
        )
    if op is PredicateOp.ATTR_EQUALS:
        return AttrEquals(
            side=_coerce_enum(Side, body["side"], f"{path}.side"),
            attribute=_coerce_non_empty_str(body["attribute"], f"{path}.attribute"),
            value=as_json_value(body["value"], f"{path}.value"),
        )
    if op is PredicateOp.ATTR_TRUTHY:
        return AttrTruthy(
            side=_coerce_enum(Side, body["side"], f"{path}.side"),
            attribute=_coerce_non_empty_str(body["attribute"], f"{path}.attribute"),
        )
    if op is PredicateOp.ATTRS_MATCH:
        return AttrsMatch(
            attribute=_coerce_non_empty_str(body["attribute"], f"{path}.attribute")
        )
    if op is PredicateOp.ATTR_SUBSET:
        return AttrSubset(
            attribute=_coerce_non_empty_str(body["attribute"], f"{path}.attribute")
        )
    modules = _coerce_str_list(body["modules"], f"{path}.modules")
    if not modules:
        raise ValueError(f"{path}.modules: must not be empty")
    return ModuleIn(modules=tuple(sorted(set(modules))))


def _parse_edge(value: object, path: str) -> Edge:
    parsed = _as_string_key_mapping(value, path)
    if set(parsed) == {"next"}:
        return NextNode(node_id=_coerce_non_empty_str(parsed["next"], f"{path}.next"))
    if set(parsed) == {"leaf"}:
        return _parse_leaf(parsed["leaf"], f"{path}.leaf")
    raise ValueError(f"{path}: edge must have exactly one of 'next' or 'leaf'")


def _parse_leaf(value: object, path: str) -> Leaf:
    parsed = _as_string_key_mapping(value, path)
    unknown = sorted(set(parsed) - _LEAF_FIELDS)
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")

    judgment = _coerce_bool(parsed.get("judgment", False), f"{path}.judgment")
    if judgment:
        if "violated" in parsed:
            raise ValueError(f"{path}: judgment leaves must not set 'violated'")
        return Leaf(
            violated=False,
            reason=_optional_str(parsed.get("reason"), f"{path}.reason") or "judgment required",
            judgment=True,
            prompt=_optional_str(parsed.get("prompt"), f"{path}.prompt"),
        )

    if "violated" not in parsed:
        raise ValueError(f"{path}: leaf must set 'violated' or 'judgment: true'")
    if "prompt" in parsed:
        raise ValueError(f"{path}: 'prompt' is only valid on judgment leaves")
    severity = parsed.get("severity", {})
    severity_json = as_json_value(severity, f"{path}.severity")
    if not isinstance(severity_json, dict):
        raise ValueError(f"{path}.severity: expected mapping")
    return Leaf(
        violated=_coerce_bool(parsed["violated"], f"{path}.violated"),
        reason=_optional_str(parsed.get("reason"), f"{path}.reason") or "",
        severity=severity_json,
    )


def _parse_escalation(value: object, path: str) -> Escalation:
    parsed = _as_string_key_mapping(value, path)
    _check_fields(parsed, path, required={"when"}, optional={"levels"})
    when = as_json_value(parsed["when"], f"{path}.when")
    if not isinstance(when, dict) or not when:
        raise ValueError(f"{path}.when: expected non-empty mapping")
    return Escalation(
        when=when,
        levels=_coerce_positive_int(parsed.get("levels", 1), f"{path}.levels"),
    )


def _peek_rule_id(value: object) -> str | None:
    if isinstance(value, Mapping):
        candidate = value.get("id")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _strip_location(message: str, location: str) -> str:
    prefix = f"{location}"
    if message.startswith(prefix):
        trimmed = message[len(prefix) :].lstrip(".:").strip()
        return trimmed or message
    return message


def _check_fields(
    parsed: Mapping[str, object],
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> None:
    missing = sorted(required - set(parsed))
    if missing:
        raise ValueError(f"{path}: missing required fields: {missing}")
    unknown = sorted(set(parsed) - required - (optional or set()))
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")


def _as_string_key_mapping(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{path}: expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ValueError(f"{path}: object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _coerce_non_empty_str(value: object, path: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{path}: expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{path}: must not be empty")
    return normalized


def _optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _coerce_non_empty_str(value, path)


def _coerce_rule_id(value: object, path: str) -> str:
    parsed = _coerce_non_empty_str(value, path)
    if _RULE_ID_RE.fullmatch(parsed) is None:
        raise ValueError(f"{path}: rule id must match RULE-ABC-0001 (got {parsed!r})")
    return parsed


def _coerce_bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{path}: expected bool, got {type(value).__name__}")
    return value


def _coerce_positive_int(value: object, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{path}: expected integer, got {type(value).__name__}")
    if value < 1:
        raise ValueError(f"{path}: must be >= 1")
    return value


def _coerce_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    raw = _coerce_non_empty_str(value, path)
    try:
        return enum_type(raw)
    except ValueError as exc:
        allowed = ", ".join(sorted(str(item.value) for item in enum_type))
        raise ValueError(f"{path}: invalid value {raw!r}; expected one of: {allowed}") from exc


def _coerce_list(value: object, path: str) -> list[object]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes, bytearray)):
        raise ValueError(f"{path}: expected array, got {type(value).__name__}")
    return list(value)


def _coerce_str_list(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _coerce_non_empty_str(item, f"{path}[{index}]")
        for index, item in enumerate(_coerce_list(value, path))
    )


def rule_summary(rule: Rule) -> dict[str, JSONValue]:
    """Compact, JSON-ready description of ``rule`` for listings."""
    return {
        "id": rule.id,
        "version": rule.version,
        "applies_to": rule.applies_to.value,
        "gap_type": rule.gap_type.value,
        "default_priority": rule.default_priority.value,
        "requires_judgment": rule.requires_judgment,
        "nodes": len(rule.nodes),
        "source": rule.source,
    }


__all__ = [
    "PACKAGED_RULES_DIR",
    "RuleRegistry",
    "RuleRegistryHandle",
    "RuleRegistryLoadError",
    "parse_predicate",
    "parse_rule",
    "rule_summary",
]
