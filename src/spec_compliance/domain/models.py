"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from types import MappingProxyType
from typing import NoReturn, TypeVar, cast

from spec_compliance.constants import PRIORITY_WEIGHT, REPORT_SCHEMA_VERSION
from spec_compliance.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16
_MAX_JSON_COLLECTION = 1024


class FactKind(StrEnum):
    ENTITY_DEF = "EntityDef"
    STATE_MACHINE = "StateMachine"
    PERMISSION = "Permission"
    API_CONTRACT = "ApiContract"
    TENANCY_RULE = "TenancyRule"


class Side(StrEnum):
    SPEC = "spec"
    CODE = "code"


class GapType(StrEnum):
    SPEC_CODE_DELTA = "Spec-Code Delta"
    ATTRIBUTE_DRIFT = "Attribute Drift"
    MULTI_TENANCY_GAP = "Multi-Tenancy Gap"
    PERMISSION_GAP = "Permission Gap"
    STATE_MACHINE_GAP = "State Machine Gap"
    API_CONTRACT_MISMATCH = "API Contract Mismatch"
    VALIDATION_GAP = "Validation Gap"
    DATA_MODEL_DRIFT = "Data Model Drift"
    AUDIT_TRAIL_GAP = "Audit Trail Gap"
    SECURITY_GAP = "Security Gap"
    INTEGRATION_GAP = "Integration Gap"
    DOCUMENTATION_DRIFT = "Documentation Drift"


class Priority(StrEnum):
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def rank(self) -> int:
        """1 for P1 (most severe) through 4 for P4."""
        return int(self.value[1:])

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHT[self.value]

    def escalate(self, levels: int = 1) -> Priority:
        """Move ``levels`` steps toward P1, saturating at P1."""
        if levels < 0:
            raise ValueError("escalation levels must be >= 0")
        return Priority(f"P{max(1, self.rank - levels)}")


class RunStatus(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class WarningCode(StrEnum):
    PARSE_WARNING = "ParseWarning"
    UNRECOGNIZED_FACT_KIND = "UnrecognizedFactKind"
    PROVIDER_TIMEOUT = "ProviderTimeout"
    PROVIDER_ERROR = "ProviderError"
    PARTIAL_DATA = "PartialDataWarning"
    RULE_REGISTRY_LOAD_ERROR = "RuleRegistryLoadError"
    MODULE_CHECK_FAILED = "ModuleCheckFailed"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        if not isinstance(raw, str):
            _fail(cls.__name__, f"expected JSON string, got {type(raw).__name__}")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if not isinstance(parsed, dict):
            _fail(cls.__name__, "JSON root must be an object")
        return cls.from_dict(parsed)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be non-empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_optional_score(value: object, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number or null, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed) or not 0.0 <= parsed <= 1.0:
        _fail(path, "score must be within [0, 1]")
    return parsed


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )


def as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    """Deep-copy ``value`` into plain JSON types, rejecting anything else."""
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"list length exceeds {_MAX_JSON_COLLECTION}")
        return [
            as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        if len(value) > _MAX_JSON_COLLECTION:
            _fail(path, f"object size exceeds {_MAX_JSON_COLLECTION}")
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _frozen_json_object(value: object, path: str) -> Mapping[str, JSONValue]:
    parsed = as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return MappingProxyType(dict(sorted(parsed.items())))


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return _datetime_to_iso8601z(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


def _digest_id(prefix: str, payload: Mapping[str, JSONValue]) -> str:
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{prefix}-{digest[:20]}"


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, order=True)
class FactKey(CanonicalModel):
    """Join key shared by specification and code facts."""

    module: str
    kind: FactKind
    subject_name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "module", _as_str(self.module, "FactKey.module"))
        object.__setattr__(self, "kind", _as_enum(FactKind, self.kind, "FactKey.kind"))
        object.__setattr__(
            self, "subject_name", _as_str(self.subject_name, "FactKey.subject_name")
        )

    def __str__(self) -> str:
        return f"{self.module}/{self.kind.value}/{self.subject_name}"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FactKey:
        parsed = _expect_object(data, "FactKey", required={"module", "kind", "subject_name"})
        return cls(
            module=_as_str(parsed["module"], "FactKey.module"),
            kind=_as_enum(FactKind, parsed["kind"], "FactKey.kind"),
            subject_name=_as_str(parsed["subject_name"], "FactKey.subject_name"),
        )


@dataclass(frozen=True, slots=True)
class SourceLocation(CanonicalModel):
    path: str
    line: int
    section: str | None = None
    column: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _as_str(self.path, "SourceLocation.path"))
        object.__setattr__(self, "line", _as_int(self.line, "SourceLocation.line", minimum=1))
        object.__setattr__(
            self, "section", _as_optional_str(self.section, "SourceLocation.section")
        )
        if self.column is not None:
            object.__setattr__(
                self, "column", _as_int(self.column, "SourceLocation.column", minimum=1)
            )

    def __str__(self) -> str:
        return f"{self.path}:{self.line}"

    @property
    def sort_key(self) -> tuple[str, int, int]:
        return (self.path, self.line, self.column or 0)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SourceLocation:
        parsed = _expect_object(
            data, "SourceLocation", required={"path", "line"}, optional={"section", "column"}
        )
        column = parsed.get("column")
        return cls(
            path=_as_str(parsed["path"], "SourceLocation.path"),
            line=_as_int(parsed["line"], "SourceLocation.line", minimum=1),
            section=_as_optional_str(parsed.get("section"), "SourceLocation.section"),
            column=None if column is None else _as_int(column, "SourceLocation.column", minimum=1),
        )


@dataclass(frozen=True, slots=True)
class SpecFact(CanonicalModel):
    """One normalized assertion extracted from the specification corpus."""

    module: str
    kind: FactKind
    subject_name: str
    attributes: Mapping[str, JSONValue]
    source: SourceLocation
    id: str = ""

    def __post_init__(self) -> None:
        key = FactKey(self.module, self.kind, self.subject_name)
        object.__setattr__(self, "module", key.module)
        object.__setattr__(self, "kind", key.kind)
        object.__setattr__(self, "subject_name", key.subject_name)
        object.__setattr__(
            self, "attributes", _frozen_json_object(self.attributes, "SpecFact.attributes")
        )
        if not isinstance(self.source, SourceLocation):
            _fail("SpecFact.source", "must be SourceLocation")
        expected_id = _digest_id(
            "sf",
            {"key": key.to_dict(), "source": self.source.to_dict()},
        )
        if self.id and self.id != expected_id:
            _fail("SpecFact.id", "does not match the fact key and source location")
        object.__setattr__(self, "id", expected_id)

    @property
    def key(self) -> FactKey:
        return FactKey(self.module, self.kind, self.subject_name)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> SpecFact:
        parsed = _expect_object(
            data,
            "SpecFact",
            required={"module", "kind", "subject_name", "attributes", "source"},
            optional={"id"},
        )
        source = parsed["source"]
        return cls(
            module=_as_str(parsed["module"], "SpecFact.module"),
            kind=_as_enum(FactKind, parsed["kind"], "SpecFact.kind"),
            subject_name=_as_str(parsed["subject_name"], "SpecFact.subject_name"),
            attributes=_frozen_json_object(parsed["attributes"], "SpecFact.attributes"),
            source=SourceLocation.from_dict(
                _expect_object(
                    source,
                    "SpecFact.source",
                    required={"path", "line"},
                    optional={"section", "column"},
                )
            ),
            id=str(parsed.get("id", "")),
        )


@dataclass(frozen=True, slots=True)
class CodeFact(CanonicalModel):
    """Point-in-time code-side counterpart of a :class:`SpecFact`."""

    module: str
    kind: FactKind
    subject_name: str
    attributes: Mapping[str, JSONValue]
    origin: str | None = None
    id: str = ""

    def __post_init__(self) -> None:
        key = FactKey(self.module, self.kind, self.subject_name)
        object.__setattr__(self, "module", key.module)
        object.__setattr__(self, "kind", key.kind)
        object.__setattr__(self, "subject_name", key.subject_name)
        object.__setattr__(
            self, "attributes", _frozen_json_object(self.attributes, "CodeFact.attributes")
        )
        object.__setattr__(self, "origin", _as_optional_str(self.origin, "CodeFact.origin"))
        object.__setattr__(
            self,
            "id",
            _digest_id("cf", {"key": key.to_dict(), "origin": self.origin}),
        )

    @property
    def key(self) -> FactKey:
        return FactKey(self.module, self.kind, self.subject_name)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> CodeFact:
        parsed = _expect_object(
            data,
            "CodeFact",
            required={"module", "kind", "subject_name", "attributes"},
            optional={"origin", "id"},
        )
        return cls(
            module=_as_str(parsed["module"], "CodeFact.module"),
            kind=_as_enum(FactKind, parsed["kind"], "CodeFact.kind"),
            subject_name=_as_str(parsed["subject_name"], "CodeFact.subject_name"),
            attributes=_frozen_json_object(parsed["attributes"], "CodeFact.attributes"),
            origin=_as_optional_str(parsed.get("origin"), "CodeFact.origin"),
        )


@dataclass(frozen=True, slots=True)
class FactPair(CanonicalModel):
    """Joined spec/code facts for one key; either side may be absent, not both."""

    key: FactKey
    spec: SpecFact | None = None
    code: CodeFact | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.key, FactKey):
            _fail("FactPair.key", "must be FactKey")
        if self.spec is None and self.code is None:
            _fail("FactPair", "at least one of spec or code must be present")
        if self.spec is not None and self.spec.key != self.key:
            _fail("FactPair.spec", f"key {self.spec.key} does not match {self.key}")
        if self.code is not None and self.code.key != self.key:
            _fail("FactPair.code", f"key {self.code.key} does not match {self.key}")

    def side(self, side: Side) -> SpecFact | CodeFact | None:
        return self.spec if side is Side.SPEC else self.code

    @property
    def absent_side(self) -> Side | None:
        if self.spec is None:
            return Side.SPEC
        if self.code is None:
            return Side.CODE
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> FactPair:
        parsed = _expect_object(data, "FactPair", required={"key"}, optional={"spec", "code"})
        key_raw = _expect_object(
            parsed["key"], "FactPair.key", required={"module", "kind", "subject_name"}
        )
        spec_raw = parsed.get("spec")
        code_raw = parsed.get("code")
        return cls(
            key=FactKey.from_dict(key_raw),
            spec=(
                None
                if spec_raw is None
                else SpecFact.from_dict(cast("Mapping[str, object]", spec_raw))
            ),
            code=(
                None
                if code_raw is None
                else CodeFact.from_dict(cast("Mapping[str, object]", code_raw))
            ),
        )


# ---------------------------------------------------------------------------
# Evaluation output
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Finding(CanonicalModel):
    """Outcome of one rule evaluated against one fact pair."""

    rule_id: str
    rule_version: int
    module: str
    kind: FactKind
    subject_name: str
    violated: bool
    evidence: Mapping[str, JSONValue] = field(default_factory=dict)
    severity: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rule_id", _as_str(self.rule_id, "Finding.rule_id"))
        object.__setattr__(
            self, "rule_version", _as_int(self.rule_version, "Finding.rule_version", minimum=1)
        )
        key = FactKey(self.module, self.kind, self.subject_name)
        object.__setattr__(self, "module", key.module)
        object.__setattr__(self, "kind", key.kind)
        object.__setattr__(self, "subject_name", key.subject_name)
        object.__setattr__(self, "violated", _as_bool(self.violated, "Finding.violated"))
        object.__setattr__(
            self, "evidence", _frozen_json_object(self.evidence, "Finding.evidence")
        )
        object.__setattr__(
            self, "severity", _frozen_json_object(self.severity, "Finding.severity")
        )

    @property
    def key(self) -> FactKey:
        return FactKey(self.module, self.kind, self.subject_name)

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.module, self.subject_name, self.rule_id, self.kind.value)


@dataclass(frozen=True, slots=True)
class PendingJudgment(CanonicalModel):
    """A rule outcome deferred to the external judgment worker."""

    rule_id: str
    rule_version: int
    fact_pair: FactPair
    prompt: Mapping[str, JSONValue]
    suggested_decision_options: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "rule_id", _as_str(self.rule_id, "PendingJudgment.rule_id"))
        object.__setattr__(
            self,
            "rule_version",
            _as_int(self.rule_version, "PendingJudgment.rule_version", minimum=1),
        )
        if not isinstance(self.fact_pair, FactPair):
            _fail("PendingJudgment.fact_pair", "must be FactPair")
        object.__setattr__(
            self, "prompt", _frozen_json_object(self.prompt, "PendingJudgment.prompt")
        )
        object.__setattr__(
            self,
            "suggested_decision_options",
            _as_str_tuple(
                self.suggested_decision_options, "PendingJudgment.suggested_decision_options"
            ),
        )

    @property
    def key(self) -> FactKey:
        return self.fact_pair.key

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        key = self.fact_pair.key
        return (key.module, key.subject_name, self.rule_id, key.kind.value)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> PendingJudgment:
        parsed = _expect_object(
            data,
            "PendingJudgment",
            required={"rule_id", "rule_version", "fact_pair", "prompt"},
            optional={"suggested_decision_options"},
        )
        return cls(
            rule_id=_as_str(parsed["rule_id"], "PendingJudgment.rule_id"),
            rule_version=_as_int(parsed["rule_version"], "PendingJudgment.rule_version"),
            fact_pair=FactPair.from_dict(
                _expect_object(
                    parsed["fact_pair"],
                    "PendingJudgment.fact_pair",
                    required={"key"},
                    optional={"spec", "code"},
                )
            ),
            prompt=_frozen_json_object(parsed["prompt"], "PendingJudgment.prompt"),
            suggested_decision_options=_as_str_tuple(
                parsed.get("suggested_decision_options", ()),
                "PendingJudgment.suggested_decision_options",
            ),
        )


@dataclass(frozen=True, slots=True)
class Gap(CanonicalModel):
    """Classified, prioritized finding surfaced to users."""

    gap_type: GapType
    priority: Priority
    module: str
    kind: FactKind
    subject_name: str
    rule_id: str
    description: str
    suggested_decision_options: tuple[str, ...] = ()
    evidence: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "gap_type", _as_enum(GapType, self.gap_type, "Gap.gap_type"))
        object.__setattr__(self, "priority", _as_enum(Priority, self.priority, "Gap.priority"))
        key = FactKey(self.module, self.kind, self.subject_name)
        object.__setattr__(self, "module", key.module)
        object.__setattr__(self, "kind", key.kind)
        object.__setattr__(self, "subject_name", key.subject_name)
        object.__setattr__(self, "rule_id", _as_str(self.rule_id, "Gap.rule_id"))
        object.__setattr__(self, "description", _as_str(self.description, "Gap.description"))
        object.__setattr__(
            self,
            "suggested_decision_options",
            _as_str_tuple(self.suggested_decision_options, "Gap.suggested_decision_options"),
        )
        object.__setattr__(self, "evidence", _frozen_json_object(self.evidence, "Gap.evidence"))

    @property
    def sort_key(self) -> tuple[int, str, str, str, str]:
        return (
            self.priority.rank,
            self.module,
            self.subject_name,
            self.rule_id,
            self.kind.value,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Gap:
        parsed = _expect_object(
            data,
            "Gap",
            required={
                "gap_type",
                "priority",
                "module",
                "kind",
                "subject_name",
                "rule_id",
                "description",
            },
            optional={"suggested_decision_options", "evidence"},
        )
        return cls(
            gap_type=_as_enum(GapType, parsed["gap_type"], "Gap.gap_type"),
            priority=_as_enum(Priority, parsed["priority"], "Gap.priority"),
            module=_as_str(parsed["module"], "Gap.module"),
            kind=_as_enum(FactKind, parsed["kind"], "Gap.kind"),
            subject_name=_as_str(parsed["subject_name"], "Gap.subject_name"),
            rule_id=_as_str(parsed["rule_id"], "Gap.rule_id"),
            description=_as_str(parsed["description"], "Gap.description"),
            suggested_decision_options=_as_str_tuple(
                parsed.get("suggested_decision_options", ()), "Gap.suggested_decision_options"
            ),
            evidence=_frozen_json_object(parsed.get("evidence", {}), "Gap.evidence"),
        )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RunWarning(CanonicalModel):
    code: WarningCode
    message: str
    module: str | None = None
    location: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "code", _as_enum(WarningCode, self.code, "RunWarning.code"))
        object.__setattr__(self, "message", _as_str(self.message, "RunWarning.message"))
        object.__setattr__(self, "module", _as_optional_str(self.module, "RunWarning.module"))
        object.__setattr__(
            self, "location", _as_optional_str(self.location, "RunWarning.location")
        )

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.module or "", self.code.value, self.location or "", self.message)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> RunWarning:
        parsed = _expect_object(
            data, "RunWarning", required={"code", "message"}, optional={"module", "location"}
        )
        return cls(
            code=_as_enum(WarningCode, parsed["code"], "RunWarning.code"),
            message=_as_str(parsed["message"], "RunWarning.message"),
            module=_as_optional_str(parsed.get("module"), "RunWarning.module"),
            location=_as_optional_str(parsed.get("location"), "RunWarning.location"),
        )


@dataclass(frozen=True, slots=True)
class Report(CanonicalModel):
    """Immutable result of one compliance run."""

    run_id: str
    timestamp: datetime
    sprint: int
    status: RunStatus
    spec_revision: str
    modules: tuple[str, ...]
    gaps: tuple[Gap, ...] = ()
    module_scores: Mapping[str, float | None] = field(default_factory=dict)
    warnings: tuple[RunWarning, ...] = ()
    pending_judgments: tuple[PendingJudgment, ...] = ()
    code_revision: str | None = None
    schema_version: int = REPORT_SCHEMA_VERSION

    def __post_init__(self) -> None:
        run_id = _as_str(self.run_id, "Report.run_id")
        try:
            domain_ids.validate_run_id(run_id)
        except ValueError as exc:
            _fail("Report.run_id", str(exc))
        object.__setattr__(self, "run_id", run_id)
        object.__setattr__(self, "timestamp", _as_datetime(self.timestamp, "Report.timestamp"))
        object.__setattr__(self, "sprint", _as_int(self.sprint, "Report.sprint", minimum=1))
        object.__setattr__(self, "status", _as_enum(RunStatus, self.status, "Report.status"))
        object.__setattr__(
            self, "spec_revision", _as_str(self.spec_revision, "Report.spec_revision")
        )
        object.__setattr__(
            self, "code_revision", _as_optional_str(self.code_revision, "Report.code_revision")
        )
        modules = tuple(sorted(set(_as_str_tuple(self.modules, "Report.modules"))))
        object.__setattr__(self, "modules", modules)

        for index, gap in enumerate(self.gaps):
            if not isinstance(gap, Gap):
                _fail(f"Report.gaps[{index}]", "must be Gap")
        object.__setattr__(self, "gaps", tuple(self.gaps))
        for index, warning in enumerate(self.warnings):
            if not isinstance(warning, RunWarning):
                _fail(f"Report.warnings[{index}]", "must be RunWarning")
        object.__setattr__(self, "warnings", tuple(self.warnings))
        for index, pending in enumerate(self.pending_judgments):
            if not isinstance(pending, PendingJudgment):
                _fail(f"Report.pending_judgments[{index}]", "must be PendingJudgment")
        object.__setattr__(self, "pending_judgments", tuple(self.pending_judgments))

        if not isinstance(self.module_scores, Mapping):
            _fail("Report.module_scores", "expected mapping")
        scores: dict[str, float | None] = {}
        for module in sorted(self.module_scores):
            if module not in modules:
                _fail("Report.module_scores", f"score for unchecked module {module!r}")
            scores[module] = _as_optional_score(
                self.module_scores[module], f"Report.module_scores.{module}"
            )
        object.__setattr__(self, "module_scores", MappingProxyType(scores))

    @property
    def p1_gaps(self) -> tuple[Gap, ...]:
        return tuple(gap for gap in self.gaps if gap.priority is Priority.P1)

    @property
    def unavailable_modules(self) -> tuple[str, ...]:
        return tuple(module for module, score in self.module_scores.items() if score is None)

    def gaps_for(self, module: str) -> tuple[Gap, ...]:
        return tuple(gap for gap in self.gaps if gap.module == module)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Report:
        parsed = _expect_object(
            data,
            "Report",
            required={"run_id", "timestamp", "sprint", "status", "spec_revision", "modules"},
            optional={
                "gaps",
                "module_scores",
                "warnings",
                "pending_judgments",
                "code_revision",
                "schema_version",
            },
        )
        scores_raw = parsed.get("module_scores", {})
        if not isinstance(scores_raw, Mapping):
            _fail("Report.module_scores", "expected object")
        return cls(
            run_id=_as_str(parsed["run_id"], "Report.run_id"),
            timestamp=_as_datetime(parsed["timestamp"], "Report.timestamp"),
            sprint=_as_int(parsed["sprint"], "Report.sprint", minimum=1),
            status=_as_enum(RunStatus, parsed["status"], "Report.status"),
            spec_revision=_as_str(parsed["spec_revision"], "Report.spec_revision"),
            modules=_as_str_tuple(parsed["modules"], "Report.modules"),
            gaps=tuple(
                Gap.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("gaps", ()), "Report.gaps")
            ),
            module_scores={
                str(module): _as_optional_score(score, f"Report.module_scores.{module}")
                for module, score in scores_raw.items()
            },
            warnings=tuple(
                RunWarning.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("warnings", ()), "Report.warnings")
            ),
            pending_judgments=tuple(
                PendingJudgment.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(
                    parsed.get("pending_judgments", ()), "Report.pending_judgments"
                )
            ),
            code_revision=_as_optional_str(parsed.get("code_revision"), "Report.code_revision"),
            schema_version=_as_int(
                parsed.get("schema_version", REPORT_SCHEMA_VERSION),
                "Report.schema_version",
                minimum=1,
            ),
        )


__all__ = [
    "CanonicalModel",
    "CodeFact",
    "FactKey",
    "FactKind",
    "FactPair",
    "Finding",
    "Gap",
    "GapType",
    "JSONValue",
    "PendingJudgment",
    "Priority",
    "Report",
    "RunStatus",
    "RunWarning",
    "Side",
    "SourceLocation",
    "SpecFact",
    "WarningCode",
    "as_json_value",
    "canonical_json",
]
