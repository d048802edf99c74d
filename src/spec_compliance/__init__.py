"""
spec-compliance: deterministic specification-to-code compliance engine.

Purpose
- Package root. Compares facts extracted from a structured specification corpus
  against facts supplied by an external code-fact provider, classifies the gaps
  and keeps an append-only history of reports.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy subpackages (persistence, control plane, CLI) are imported lazily by callers.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
