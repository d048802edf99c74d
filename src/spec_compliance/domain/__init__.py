"""
Domain types shared across the engine: facts, findings, gaps, reports and ids.

The domain layer is free of IO side effects. Every model is immutable once
constructed and serializes to canonical JSON.
"""

from spec_compliance.domain.models import (
    CodeFact,
    FactKey,
    FactKind,
    FactPair,
    Finding,
    Gap,
    GapType,
    JSONValue,
    PendingJudgment,
    Priority,
    Report,
    RunStatus,
    RunWarning,
    Side,
    SourceLocation,
    SpecFact,
    WarningCode,
    canonical_json,
)

__all__ = [
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
    "canonical_json",
]
