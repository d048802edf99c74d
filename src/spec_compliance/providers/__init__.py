"""External collaborator boundaries: code-fact providers and judgment sinks."""

from spec_compliance.providers.base import (
    CodeFactProvider,
    JudgmentSink,
    ProviderError,
    ProviderTimeout,
)
from spec_compliance.providers.code_facts import JsonCodeFactProvider, StaticCodeFactProvider
from spec_compliance.providers.judgments import (
    JsonlJudgmentSink,
    NullJudgmentSink,
    judgment_record,
)

__all__ = [
    "CodeFactProvider",
    "JsonCodeFactProvider",
    "JsonlJudgmentSink",
    "JudgmentSink",
    "NullJudgmentSink",
    "ProviderError",
    "ProviderTimeout",
    "StaticCodeFactProvider",
    "judgment_record",
]
