"""
spec-compliance: run orchestration.

Purpose
- Execute one compliance run: extract, fetch, evaluate, classify, score, record.

Functional requirements
- Modules are checked in parallel on a bounded worker pool.
- Code-fact retrieval is the only external suspension point and is time-bounded;
  a timeout or provider failure degrades one module, never the run.
- Cancellation is cooperative: in-flight evaluations finish their current walk,
  unstarted modules are skipped, and the Report is still recorded as ``cancelled``.
- Pending judgments go to the judgment sink without waiting for answers.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from spec_compliance.classification import classify, compute_module_scores
from spec_compliance.domain import ids
from spec_compliance.domain.models import (
    CodeFact,
    Finding,
    PendingJudgment,
    Report,
    RunStatus,
    RunWarning,
    WarningCode,
)
from spec_compliance.extraction import extract, load_corpus, normalize
from spec_compliance.observability import correlation_scope
from spec_compliance.providers import NullJudgmentSink, ProviderError, ProviderTimeout
from spec_compliance.rules import RuleEngine, RuleRegistry, RuleRegistryHandle
from spec_compliance.utils import (
    CancellationError,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)

if TYPE_CHECKING:
    from spec_compliance.extraction import ExtractionResult, SpecDocument
    from spec_compliance.persistence import TrendStore
    from spec_compliance.providers import CodeFactProvider, JudgmentSink

logger = structlog.get_logger(__name__)

CorpusSource = Path | Callable[[], Sequence["SpecDocument"]]

_DEFAULT_MAX_WORKERS: Final[int] = 4
_DEFAULT_PROVIDER_TIMEOUT_SECONDS: Final[float] = 30.0


class ProviderUnavailableError(RuntimeError):
    """Every requested module, or a required module, had no code facts.

    Raised after the Report was built (and recorded), which travels on ``report``.
    """

    def __init__(self, report: Report, modules: Sequence[str]) -> None:
        self.report = report
        self.modules = tuple(modules)
        super().__init__(
            f"code facts unavailable for module(s) {', '.join(self.modules)} "
            f"in run {report.run_id}"
        )


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    max_workers: int = _DEFAULT_MAX_WORKERS
    provider_timeout_seconds: float = _DEFAULT_PROVIDER_TIMEOUT_SECONDS
    required_modules: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.max_workers <= 0:
            raise ValueError("RunnerSettings.max_workers must be > 0")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("RunnerSettings.provider_timeout_seconds must be > 0")
        object.__setattr__(self, "required_modules", tuple(sorted(set(self.required_modules))))

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> RunnerSettings:
        engine = config.get("engine")
        if not isinstance(engine, Mapping):
            return cls()
        required = engine.get("required_modules", ())
        return cls(
            max_workers=int(engine.get("max_workers", _DEFAULT_MAX_WORKERS)),
            provider_timeout_seconds=float(
                engine.get("provider_timeout_seconds", _DEFAULT_PROVIDER_TIMEOUT_SECONDS)
            ),
            required_modules=tuple(required) if isinstance(required, (list, tuple)) else (),
        )


@dataclass(frozen=True, slots=True)
class _ModuleResult:
    module: str
    available: bool
    findings: tuple[Finding, ...] = ()
    pending_judgments: tuple[PendingJudgment, ...] = ()
    warnings: tuple[RunWarning, ...] = ()


class ComplianceRunner:
    """Runs the compliance pipeline over a module scope and returns the Report."""

    def __init__(
        self,
        *,
        spec_corpus: CorpusSource,
        provider: CodeFactProvider,
        registry: RuleRegistryHandle | RuleRegistry,
        trend_store: TrendStore,
        judgment_sink: JudgmentSink | None = None,
        settings: RunnerSettings | None = None,
        engine: RuleEngine | None = None,
        run_id_factory: Callable[[], str] = ids.generate_run_id,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._spec_corpus = spec_corpus
        self._provider = provider
        if not isinstance(registry, RuleRegistryHandle):
            registry = RuleRegistryHandle.static(registry)
        self._registry = registry
        self._trend_store = trend_store
        self._judgment_sink = judgment_sink if judgment_sink is not None else NullJudgmentSink()
        self._settings = settings or RunnerSettings()
        self._engine = engine or RuleEngine()
        self._run_id_factory = run_id_factory
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def registry(self) -> RuleRegistryHandle:
        return self._registry

    @property
    def settings(self) -> RunnerSettings:
        return self._settings

    @property
    def trend_store(self) -> TrendStore:
        return self._trend_store

    def extract_spec(self) -> ExtractionResult:
        """Read and extract the corpus; raises ``SpecCorpusError`` when unreadable."""
        if isinstance(self._spec_corpus, Path):
            documents = load_corpus(self._spec_corpus)
        else:
            documents = tuple(self._spec_corpus())
        return extract(documents)

    def module_universe(self, extraction: ExtractionResult) -> tuple[str, ...]:
        return tuple(sorted({*extraction.modules, *self._provider.modules()}))

    async def run(
        self,
        modules: Iterable[str] | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        record: bool = True,
    ) -> Report:
        """Check ``modules`` (default: every known module) and return the Report.

        Raises ``SpecCorpusError`` when the corpus cannot be read,
        ``DuplicateRunError`` when the run id was already recorded, and
        ``ProviderUnavailableError`` (after recording) when no module, or a
        required module, could be checked.
        """
        registry = self._registry.current
        run_id = self._run_id_factory()
        token = cancel_token or CancellationToken()

        with correlation_scope(run_id=run_id):
            extraction = self.extract_spec()
            scope = (
                tuple(sorted({module.strip() for module in modules if module.strip()}))
                if modules is not None
                else self.module_universe(extraction)
            )
            logger.info(
                "run_started",
                run_id=run_id,
                modules=len(scope),
                rules=len(registry),
                rules_revision=registry.revision,
            )

            warnings: list[RunWarning] = [
                warning.to_run_warning()
                for warning in extraction.warnings
                if warning.module is None or warning.module in scope
            ]
            warnings.extend(error.to_run_warning() for error in registry.errors)

            results: dict[str, _ModuleResult] = {}
            cancelled = False
            pool: WorkerPool[_ModuleResult] = WorkerPool(
                max_concurrency=self._settings.max_workers, cancel_token=token
            )
            try:
                async for result in pool.run(
                    self._check_module(module, extraction, registry, token) for module in scope
                ):
                    results[result.module] = result
            except CancellationError:
                cancelled = True
                logger.info("run_cancelled", run_id=run_id, reason=token.reason)

            findings: list[Finding] = []
            pending: list[PendingJudgment] = []
            unavailable: list[str] = []
            for module in scope:
                result = results.get(module)
                if result is None:
                    unavailable.append(module)
                    warnings.append(
                        RunWarning(
                            code=WarningCode.PARTIAL_DATA,
                            message="module not checked: run cancelled",
                            module=module,
                        )
                    )
                    continue
                warnings.extend(result.warnings)
                if not result.available:
                    unavailable.append(module)
                findings.extend(result.findings)
                pending.extend(result.pending_judgments)

            findings.sort(key=lambda finding: finding.sort_key)
            pending.sort(key=lambda item: item.sort_key)
            gaps = classify(findings, registry)
            scores = compute_module_scores(findings, gaps, registry, scope, unavailable)

            failed: tuple[str, ...] = ()
            if not cancelled:
                failed = self._failed_modules(scope, unavailable)
                warnings.extend(
                    RunWarning(
                        code=WarningCode.MODULE_CHECK_FAILED,
                        message="no code facts available for required module",
                        module=module,
                    )
                    for module in failed
                    if module in self._settings.required_modules
                )

            if cancelled:
                status = RunStatus.CANCELLED
            elif unavailable:
                status = RunStatus.PARTIAL
            else:
                status = RunStatus.COMPLETED

            self._submit_judgments(pending, run_id)

            build = self._trend_store.record if record else self._trend_store.build_report
            report = build(
                run_id,
                gaps,
                scores,
                spec_revision=extraction.revision,
                timestamp=self._clock(),
                status=status,
                modules=scope,
                warnings=sorted(warnings, key=lambda warning: warning.sort_key),
                pending_judgments=pending,
                code_revision=self._provider.revision(),
            )
            logger.info(
                "run_finished",
                run_id=run_id,
                status=status.value,
                gaps=len(report.gaps),
                p1_gaps=len(report.p1_gaps),
                unavailable=len(unavailable),
                recorded=record,
            )

        if failed:
            raise ProviderUnavailableError(report, failed)
        return report

    async def _check_module(
        self,
        module: str,
        extraction: ExtractionResult,
        registry: RuleRegistry,
        token: CancellationToken,
    ) -> _ModuleResult:
        with correlation_scope(module=module):
            timeout = self._settings.provider_timeout_seconds
            try:
                raw = await run_with_timeout(self._provider.fetch(module), timeout, token)
            except TimeoutError:
                logger.warning("provider_timeout", module=module, timeout_seconds=timeout)
                return _ModuleResult(
                    module=module,
                    available=False,
                    warnings=(
                        RunWarning(
                            code=WarningCode.PROVIDER_TIMEOUT,
                            message=str(ProviderTimeout(module, timeout)),
                            module=module,
                        ),
                        RunWarning(
                            code=WarningCode.PARTIAL_DATA,
                            message="code facts unavailable (provider timeout); score unavailable",
                            module=module,
                        ),
                    ),
                )
            except ProviderError as exc:
                logger.warning("provider_error", module=module, error=exc.detail)
                return _ModuleResult(
                    module=module,
                    available=False,
                    warnings=(
                        RunWarning(
                            code=WarningCode.PROVIDER_ERROR,
                            message=exc.detail,
                            module=module,
                        ),
                    ),
                )

            normalized = normalize(raw)
            warnings = list(normalized.warnings)
            facts: list[CodeFact] = []
            for fact in normalized.facts:
                if fact.module != module:
                    warnings.append(
                        RunWarning(
                            code=WarningCode.PARTIAL_DATA,
                            message=f"code fact {fact.key} belongs to another module; dropped",
                            module=module,
                        )
                    )
                    continue
                facts.append(fact)

            outcome = self._engine.evaluate(
                extraction.facts_for([module]),
                facts,
                registry,
                [module],
                cancel_token=token,
            )
            return _ModuleResult(
                module=module,
                available=True,
                findings=outcome.findings,
                pending_judgments=outcome.pending_judgments,
                warnings=tuple(warnings),
            )

    def _failed_modules(self, scope: Sequence[str], unavailable: Sequence[str]) -> tuple[str, ...]:
        if not unavailable:
            return ()
        if scope and len(unavailable) == len(scope):
            return tuple(unavailable)
        return tuple(module for module in unavailable if module in self._settings.required_modules)

    def _submit_judgments(self, pending: Sequence[PendingJudgment], run_id: str) -> None:
        if not pending:
            return
        try:
            self._judgment_sink.submit(pending, run_id=run_id)
        except OSError as exc:
            logger.error("judgment_submit_failed", run_id=run_id, error=str(exc))


__all__ = [
    "ComplianceRunner",
    "CorpusSource",
    "ProviderUnavailableError",
    "RunnerSettings",
]
