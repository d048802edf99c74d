"""Fact extraction: specification corpus parsing and code-fact normalization."""

from spec_compliance.extraction.code_adapter import NormalizationResult, normalize
from spec_compliance.extraction.spec_extractor import (
    ExtractionResult,
    ParseWarning,
    SpecCorpusError,
    SpecDocument,
    corpus_revision,
    extract,
    load_corpus,
)

__all__ = [
    "ExtractionResult",
    "NormalizationResult",
    "ParseWarning",
    "SpecCorpusError",
    "SpecDocument",
    "corpus_revision",
    "extract",
    "load_corpus",
    "normalize",
]
