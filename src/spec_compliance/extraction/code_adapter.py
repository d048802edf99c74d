"""Normalization of raw code-fact provider records into typed ``CodeFact`` values."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from spec_compliance.domain.models import (
    CodeFact,
    FactKey,
    FactKind,
    RunWarning,
    WarningCode,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = structlog.get_logger(__name__)

_KNOWN_KINDS = frozenset(kind.value for kind in FactKind)
_ALLOWED_FIELDS = frozenset(
    {"module", "kind", "subjectName", "subject_name", "attributes", "origin", "id"}
)


@dataclass(frozen=True, slots=True)
class NormalizationResult:
    facts: tuple[CodeFact, ...]
    warnings: tuple[RunWarning, ...]


def normalize(raw_code_facts: Iterable[object]) -> NormalizationResult:
    """Validate and shape raw provider records; bad records are dropped with a warning.

    Accepts ``subjectName`` (provider wire form) or ``subject_name``. Output is
    sorted by fact key; a repeated key keeps the first record in input order.
    """
    facts: dict[FactKey, CodeFact] = {}
    warnings: list[RunWarning] = []

    for index, record in enumerate(raw_code_facts):
        location = f"record[{index}]"
        if not isinstance(record, Mapping):
            warnings.append(
                _warning(
                    WarningCode.PARTIAL_DATA,
                    f"code fact must be an object, got {type(record).__name__}",
                    None,
                    location,
                )
            )
            continue

        module = record.get("module")
        module_name = module.strip() if isinstance(module, str) and module.strip() else None
        kind = record.get("kind")
        if not isinstance(kind, str) or kind not in _KNOWN_KINDS:
            logger.warning(
                "code_fact_kind_unrecognized",
                kind=kind if isinstance(kind, str) else type(kind).__name__,
                module=module_name,
                location=location,
            )
            warnings.append(
                _warning(
                    WarningCode.UNRECOGNIZED_FACT_KIND,
                    f"unrecognized fact kind {kind!r}; record dropped",
                    module_name,
                    location,
                )
            )
            continue

        unknown = sorted(str(key) for key in record if key not in _ALLOWED_FIELDS)
        if unknown:
            warnings.append(
                _warning(
                    WarningCode.PARTIAL_DATA,
                    f"unexpected fields {unknown} ignored",
                    module_name,
                    location,
                )
            )

        if "attributes" not in record:
            warnings.append(
                _warning(
                    WarningCode.PARTIAL_DATA,
                    "code fact is missing 'attributes'; record dropped",
                    module_name,
                    location,
                )
            )
            continue

        subject = record.get("subjectName", record.get("subject_name"))
        try:
            fact = CodeFact(
                module=module,  # type: ignore[arg-type]
                kind=FactKind(kind),
                subject_name=subject,  # type: ignore[arg-type]
                attributes=record["attributes"],  # type: ignore[arg-type]
                origin=record.get("origin"),  # type: ignore[arg-type]
            )
        except ValueError as exc:
            logger.warning("code_fact_malformed", module=module_name, location=location)
            warnings.append(
                _warning(
                    WarningCode.PARTIAL_DATA,
                    f"malformed code fact dropped: {exc}",
                    module_name,
                    location,
                )
            )
            continue

        if fact.key in facts:
            warnings.append(
                _warning(
                    WarningCode.PARTIAL_DATA,
                    f"duplicate code fact {fact.key}; keeping first",
                    fact.module,
                    location,
                )
            )
            continue
        facts[fact.key] = fact

    return NormalizationResult(
        facts=tuple(facts[key] for key in sorted(facts)),
        warnings=tuple(warnings),
    )


def _warning(code: WarningCode, message: str, module: str | None, location: str) -> RunWarning:
    return RunWarning(code=code, message=message, module=module, location=location)


__all__ = ["NormalizationResult", "normalize"]
