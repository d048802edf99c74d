"""Foreground watch loop: poll for changes, debounce per module, recheck, emit."""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections import deque
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from spec_compliance.control_plane.runner import ProviderUnavailableError
from spec_compliance.domain.models import RunStatus, canonical_json
from spec_compliance.extraction import SpecCorpusError, SpecDocument, extract
from spec_compliance.reporting import ReportSinkError
from spec_compliance.rules import RuleRegistryLoadError
from spec_compliance.utils import CancellationToken

if TYPE_CHECKING:
    from spec_compliance.control_plane.runner import ComplianceRunner
    from spec_compliance.control_plane.scheduler import IncrementalScheduler
    from spec_compliance.domain.models import Report
    from spec_compliance.reporting import ReportSink

logger = structlog.get_logger(__name__)

_Stamp = tuple[int, int]


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    module: str
    path: str


class PollingChangeSource:
    """Detects changed spec documents and code-fact exports by polling file stamps.

    A spec document maps to every module it defines facts for, before and after
    the change. A code-fact directory maps ``<module>.json`` to ``module``; a
    single code-fact file maps to each module whose records changed. Rule files
    under ``rules_dir`` map to no module; they set ``rules_changed`` for that poll.
    """

    def __init__(
        self, spec_corpus: Path, code_facts: Path, rules_dir: Path | None = None
    ) -> None:
        self._spec_corpus = Path(spec_corpus)
        self._code_facts = Path(code_facts)
        self._rules_dir = Path(rules_dir) if rules_dir is not None else None
        self.rules_changed = False
        self._stamps: dict[Path, _Stamp] = {}
        self._spec_modules: dict[Path, frozenset[str]] = {}
        self._record_digests: dict[str, str] = {}
        self._primed = False

    def poll(self) -> tuple[ChangeEvent, ...]:
        """Return change events since the previous poll; the first poll only primes."""
        current = self._scan()
        changed = sorted(
            path
            for path in {*current, *self._stamps}
            if current.get(path) != self._stamps.get(path)
        )
        self._stamps = current

        self.rules_changed = self._primed and any(path.suffix == ".yaml" for path in changed)
        events: set[ChangeEvent] = set()
        for path in changed:
            if path.suffix == ".yaml":
                continue
            events.update(self._events_for(path, exists=path in current))
        if not self._primed:
            self._primed = True
            return ()
        ordered = tuple(sorted(events, key=lambda event: (event.module, event.path)))
        if ordered:
            logger.debug("watch_changes_detected", events=len(ordered), files=len(changed))
        return ordered

    def _scan(self) -> dict[Path, _Stamp]:
        stamps: dict[Path, _Stamp] = {}
        roots = [(self._spec_corpus, "**/*.md"), (self._code_facts, "**/*.json")]
        if self._rules_dir is not None:
            # The registry only loads top-level rule files.
            roots.append((self._rules_dir, "*.yaml"))
        for root, pattern in roots:
            candidates = [root] if root.is_file() else sorted(root.glob(pattern))
            for path in candidates:
                try:
                    stat = path.stat()
                except OSError:
                    continue
                stamps[path] = (stat.st_mtime_ns, stat.st_size)
        return stamps

    def _events_for(self, path: Path, *, exists: bool) -> set[ChangeEvent]:
        if path.suffix == ".md":
            return self._spec_events(path, exists=exists)
        if self._code_facts.is_dir() or not exists:
            return {ChangeEvent(module=path.stem, path=path.as_posix())}
        return self._code_file_events(path)

    def _spec_events(self, path: Path, *, exists: bool) -> set[ChangeEvent]:
        before = self._spec_modules.get(path, frozenset())
        after: frozenset[str] = frozenset()
        if exists:
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("watch_spec_unreadable", path=path.as_posix(), error=str(exc))
            else:
                result = extract([SpecDocument(path=path.name, text=text)])
                after = frozenset(result.modules)
        self._spec_modules[path] = after
        return {ChangeEvent(module=module, path=path.as_posix()) for module in before | after}

    def _code_file_events(self, path: Path) -> set[ChangeEvent]:
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("watch_code_facts_unreadable", path=path.as_posix(), error=str(exc))
            return set()
        if isinstance(loaded, Mapping):
            loaded = loaded.get("facts", [])
        grouped: dict[str, list[object]] = {}
        for record in loaded if isinstance(loaded, list) else []:
            module = record.get("module") if isinstance(record, Mapping) else None
            if isinstance(module, str) and module.strip():
                grouped.setdefault(module.strip(), []).append(record)

        digests = {
            module: hashlib.sha256(canonical_json(records).encode("utf-8")).hexdigest()
            for module, records in grouped.items()
        }
        changed = {
            module
            for module in {*digests, *self._record_digests}
            if digests.get(module) != self._record_digests.get(module)
        }
        self._record_digests = digests
        return {ChangeEvent(module=module, path=path.as_posix()) for module in changed}


class WatchService:
    """Drives the scheduler from a change source and emits one Report per recheck.

    A rule-file change reloads the registry between checks and marks every module
    dirty. A reload that fails keeps the previous snapshot. Only the last
    ``report_history`` reports are kept in memory; the trend store and the sink
    hold the full record.
    """

    def __init__(
        self,
        runner: ComplianceRunner,
        scheduler: IncrementalScheduler,
        source: PollingChangeSource,
        sink: ReportSink,
        *,
        poll_interval_ms: int = 200,
        max_rechecks: int | None = None,
        initial_full_check: bool = True,
        report_history: int = 16,
    ) -> None:
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be > 0")
        if max_rechecks is not None and max_rechecks <= 0:
            raise ValueError("max_rechecks must be > 0")
        if report_history <= 0:
            raise ValueError("report_history must be > 0")
        self._runner = runner
        self._scheduler = scheduler
        self._source = source
        self._sink = sink
        self._poll_seconds = poll_interval_ms / 1000.0
        self._max_rechecks = max_rechecks
        self._initial_full_check = initial_full_check
        self.reports: deque[Report] = deque(maxlen=report_history)

    async def run(self, cancel_token: CancellationToken | None = None) -> int:
        """Watch until cancelled or ``max_rechecks`` reports were emitted; returns the count."""
        token = cancel_token or CancellationToken()
        await asyncio.to_thread(self._source.poll)
        if self._initial_full_check:
            extraction = await asyncio.to_thread(self._runner.extract_spec)
            self._scheduler.request_full_check(self._runner.module_universe(extraction))
        logger.info("watch_started", debounce_ms=self._scheduler.debounce_ms)

        emitted = 0
        while not token.is_cancelled:
            for event in await asyncio.to_thread(self._source.poll):
                self._scheduler.signal(event.module, event.path)
            if self._source.rules_changed:
                await self._reload_rules()

            acquired = self._scheduler.begin_check(self._scheduler.due_modules())
            if acquired:
                report = await self._recheck(acquired, token)
                if report is not None:
                    await self._emit(report)
                    emitted += 1
                    if report.status is RunStatus.CANCELLED:
                        break
                    if self._max_rechecks is not None and emitted >= self._max_rechecks:
                        break
                continue

            with suppress(TimeoutError):
                await asyncio.wait_for(token.wait(), timeout=self._poll_seconds)

        logger.info("watch_stopped", rechecks=emitted, cancelled=token.is_cancelled)
        return emitted

    async def _reload_rules(self) -> None:
        try:
            registry = await asyncio.to_thread(self._runner.registry.reload)
        except (RuleRegistryLoadError, OSError) as exc:
            logger.error("rule_registry_reload_failed", error=str(exc))
            return
        try:
            extraction = await asyncio.to_thread(self._runner.extract_spec)
        except SpecCorpusError as exc:
            logger.error("watch_spec_corpus_unreadable", error=str(exc))
            return
        modules = self._scheduler.request_full_check(self._runner.module_universe(extraction))
        logger.info("watch_rules_reloaded", rules=len(registry), modules=list(modules))

    async def _recheck(
        self, modules: tuple[str, ...], token: CancellationToken
    ) -> Report | None:
        try:
            return await self._runner.run(modules, cancel_token=token)
        except ProviderUnavailableError as exc:
            logger.warning("watch_modules_unavailable", modules=list(exc.modules))
            return exc.report
        except SpecCorpusError as exc:
            logger.error("watch_spec_corpus_unreadable", error=str(exc))
            return None
        finally:
            for module in modules:
                self._scheduler.complete_check(module)

    async def _emit(self, report: Report) -> None:
        self.reports.append(report)
        try:
            await self._sink.emit(report)
        except ReportSinkError as exc:
            logger.error("report_sink_failed", run_id=report.run_id, error=str(exc))


__all__ = ["ChangeEvent", "PollingChangeSource", "WatchService"]
