"""
Boundary contracts for the external code-fact provider and judgment worker.

Purpose
- Define what the engine expects from collaborators it does not implement.

Functional requirements
- Providers return raw, unvalidated records; shaping happens in the adapter.
- A provider failure is scoped to one module and never aborts the run.
- Judgment submission is fire-and-forget; the engine never awaits an answer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Sequence

    from spec_compliance.domain.models import PendingJudgment


class ProviderError(RuntimeError):
    """The code-fact provider could not return facts for one module."""

    def __init__(self, detail: str, *, provider: str = "provider", module: str | None = None):
        self.provider = provider
        self.module = module
        self.detail = " ".join(str(detail).split()) or "provider error"
        scope = f" module={module}" if module is not None else ""
        super().__init__(f"provider={provider}{scope} detail={self.detail}")


class ProviderTimeout(TimeoutError):
    """Fetching code facts for one module exceeded the configured timeout."""

    def __init__(self, module: str, timeout_seconds: float) -> None:
        self.module = module
        self.timeout_seconds = timeout_seconds
        super().__init__(f"code facts for module {module} not returned within {timeout_seconds}s")


@runtime_checkable
class CodeFactProvider(Protocol):
    """Supplies point-in-time raw code facts per module."""

    name: str

    def modules(self) -> tuple[str, ...]:
        """Modules the provider currently knows facts for, sorted."""
        ...

    async def fetch(self, module: str) -> Sequence[object]:
        """Raw fact records for ``module``; raises ``ProviderError`` on failure."""
        ...

    def revision(self) -> str | None:
        """Opaque revision of the underlying code snapshot, if known."""
        ...


@runtime_checkable
class JudgmentSink(Protocol):
    """Receives deferred rule outcomes for the external judgment worker."""

    def submit(self, pending: Sequence[PendingJudgment], *, run_id: str) -> int:
        """Queue ``pending`` and return how many were accepted."""
        ...


__all__ = [
    "CodeFactProvider",
    "JudgmentSink",
    "ProviderError",
    "ProviderTimeout",
]
