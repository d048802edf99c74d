"""
spec-compliance: unit tests for the watch loop

Purpose
- Validate change detection and the debounce-recheck-emit cycle.

What this test file should cover
- The first poll primes file stamps without emitting events.
- Spec edits map to the modules they define; code-fact edits map to their module.
- The watch service emits one Report per recheck and stops on cancel or max_rechecks.
- Rule-file edits reload the registry and recheck every module; a broken reload is ignored.
- Only the most recent reports stay in memory.
"""

from __future__ import annotations

import asyncio
import io
import json
from datetime import datetime
from pathlib import Path

import pytest

from spec_compliance.control_plane import (
    ChangeEvent,
    ComplianceRunner,
    IncrementalScheduler,
    PollingChangeSource,
    WatchService,
)
from spec_compliance.domain.models import Report
from spec_compliance.persistence import TrendStore
from spec_compliance.providers import StaticCodeFactProvider
from spec_compliance.reporting import ReportSinkError, StdoutReportSink
from spec_compliance.rules import RuleRegistry, RuleRegistryHandle
from spec_compliance.utils import CancellationToken

BILLING_SPEC = "## Module: Billing\n\n### Entity: Invoice\n@tenant-scoped\n- fields: [id]\n"
ACCOUNTS_SPEC = "## Module: Accounts\n\n### Entity: User\n- fields: [id]\n"


class FailingSink:
    def __init__(self) -> None:
        self.attempts = 0

    async def emit(self, report: Report) -> None:
        self.attempts += 1
        raise ReportSinkError("webhook down")

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def workspace(tmp_path: Path) -> tuple[Path, Path]:
    spec_dir = tmp_path / "spec"
    facts_dir = tmp_path / "facts"
    spec_dir.mkdir()
    facts_dir.mkdir()
    (spec_dir / "billing.md").write_text(BILLING_SPEC, encoding="utf-8")
    (spec_dir / "accounts.md").write_text(ACCOUNTS_SPEC, encoding="utf-8")
    (facts_dir / "Billing.json").write_text("[]", encoding="utf-8")
    return spec_dir, facts_dir


def _append(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def test_first_poll_primes_then_spec_edits_map_to_modules(
    workspace: tuple[Path, Path],
) -> None:
    spec_dir, facts_dir = workspace
    source = PollingChangeSource(spec_dir, facts_dir)

    assert source.poll() == ()
    assert source.poll() == ()

    _append(spec_dir / "billing.md", "\n### Entity: Payment\n- fields: [id]\n")
    events = source.poll()

    assert events == (ChangeEvent("Billing", (spec_dir / "billing.md").as_posix()),)


def test_moving_a_section_signals_old_and_new_module(workspace: tuple[Path, Path]) -> None:
    spec_dir, facts_dir = workspace
    source = PollingChangeSource(spec_dir, facts_dir)
    source.poll()

    (spec_dir / "billing.md").write_text(
        "## Module: Ledger\n\n### Entity: Invoice\n- fields: [id, total]\n", encoding="utf-8"
    )

    assert {event.module for event in source.poll()} == {"Billing", "Ledger"}


def test_code_fact_directory_maps_file_stem_to_module(workspace: tuple[Path, Path]) -> None:
    spec_dir, facts_dir = workspace
    source = PollingChangeSource(spec_dir, facts_dir)
    source.poll()

    (facts_dir / "Accounts.json").write_text("[]", encoding="utf-8")
    (facts_dir / "Billing.json").unlink()

    assert {event.module for event in source.poll()} == {"Accounts", "Billing"}


def test_single_code_fact_file_signals_only_changed_modules(tmp_path: Path) -> None:
    spec_dir = tmp_path / "spec"
    spec_dir.mkdir()
    export = tmp_path / "facts.json"
    records = [
        {"module": "Billing", "kind": "EntityDef", "subjectName": "Invoice", "attributes": {}},
        {"module": "Accounts", "kind": "EntityDef", "subjectName": "User", "attributes": {}},
    ]
    export.write_text(json.dumps(records), encoding="utf-8")
    source = PollingChangeSource(spec_dir, export)
    source.poll()

    records[1]["attributes"] = {"fields": ["id", "email"]}
    export.write_text(json.dumps({"facts": records}), encoding="utf-8")

    assert [event.module for event in source.poll()] == ["Accounts"]


def _service(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    registry: RuleRegistry | RuleRegistryHandle,
    fixed_now: datetime,
    sink: object,
    rules_dir: Path | None = None,
    **kwargs: object,
) -> WatchService:
    spec_dir, facts_dir = workspace
    runner = ComplianceRunner(
        spec_corpus=spec_dir,
        provider=StaticCodeFactProvider({"Billing": [], "Accounts": []}),
        registry=registry,
        trend_store=TrendStore(tmp_path / "trend.sqlite"),
        clock=lambda: fixed_now,
    )
    return WatchService(
        runner,
        IncrementalScheduler(debounce_ms=0),
        PollingChangeSource(spec_dir, facts_dir, rules_dir=rules_dir),
        sink,  # type: ignore[arg-type]
        poll_interval_ms=10,
        **kwargs,  # type: ignore[arg-type]
    )


async def test_initial_full_check_emits_one_report(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    stream = io.StringIO()
    service = _service(
        workspace, tmp_path, packaged_registry, fixed_now, StdoutReportSink(stream),
        max_rechecks=1,
    )

    emitted = await asyncio.wait_for(service.run(), timeout=5.0)

    assert emitted == 1
    assert service.reports[0].modules == ("Accounts", "Billing")
    assert json.loads(stream.getvalue())["run_id"] == service.reports[0].run_id


async def test_edit_triggers_recheck_of_affected_module_only(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    spec_dir, _ = workspace
    service = _service(
        workspace,
        tmp_path,
        packaged_registry,
        fixed_now,
        StdoutReportSink(io.StringIO()),
        max_rechecks=1,
        initial_full_check=False,
    )

    async def edit_later() -> None:
        await asyncio.sleep(0.05)
        _append(spec_dir / "billing.md", "\n### Entity: Payment\n- fields: [id]\n")

    editor = asyncio.create_task(edit_later())
    emitted = await asyncio.wait_for(service.run(), timeout=5.0)
    await editor

    assert emitted == 1
    assert service.reports[0].modules == ("Billing",)


async def test_sink_failure_is_logged_and_loop_continues(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    sink = FailingSink()
    service = _service(workspace, tmp_path, packaged_registry, fixed_now, sink, max_rechecks=1)

    assert await asyncio.wait_for(service.run(), timeout=5.0) == 1
    assert sink.attempts == 1


async def test_cancel_token_stops_the_loop(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    token = CancellationToken()
    service = _service(
        workspace,
        tmp_path,
        packaged_registry,
        fixed_now,
        StdoutReportSink(io.StringIO()),
        initial_full_check=False,
    )

    async def cancel_later() -> None:
        await asyncio.sleep(0.05)
        token.cancel("stop watching")

    canceller = asyncio.create_task(cancel_later())
    emitted = await asyncio.wait_for(service.run(token), timeout=5.0)
    await canceller

    assert emitted == 0


def test_watch_service_validates_arguments(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    with pytest.raises(ValueError, match="max_rechecks"):
        _service(workspace, tmp_path, packaged_registry, fixed_now, FailingSink(), max_rechecks=0)


BASE_RULES = """\
- id: RULE-NOP-0001
  version: 1
  applies_to: EntityDef
  gap_type: Spec-Code Delta
  default_priority: P4
  description: Placeholder that never fires
  nodes:
    - id: spec-present
      predicate: {op: present, side: spec}
      taken: {leaf: {violated: false}}
      not_taken: {leaf: {violated: false}}
"""

SUMMARY_RULE = """\
- id: RULE-DOC-0001
  version: 1
  applies_to: EntityDef
  gap_type: Documentation Drift
  default_priority: P4
  description: Specified entities carry a summary
  nodes:
    - id: has-summary
      predicate: {op: attr_present, side: spec, attribute: summary}
      taken: {leaf: {violated: false}}
      not_taken: {leaf: {violated: true, reason: no summary}}
"""


@pytest.fixture()
def rules_dir(tmp_path: Path) -> Path:
    path = tmp_path / "rules"
    path.mkdir()
    (path / "base.yaml").write_text(BASE_RULES, encoding="utf-8")
    return path


def test_rule_file_edits_set_rules_changed_without_module_events(
    workspace: tuple[Path, Path], rules_dir: Path
) -> None:
    spec_dir, facts_dir = workspace
    source = PollingChangeSource(spec_dir, facts_dir, rules_dir=rules_dir)

    assert source.poll() == ()
    assert source.rules_changed is False

    (rules_dir / "docs.yaml").write_text(SUMMARY_RULE, encoding="utf-8")
    assert source.poll() == ()
    assert source.rules_changed is True

    assert source.poll() == ()
    assert source.rules_changed is False


async def test_rule_change_reloads_registry_and_rechecks_every_module(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    rules_dir: Path,
    fixed_now: datetime,
) -> None:
    handle = RuleRegistryHandle.from_directory(rules_dir)
    service = _service(
        workspace,
        tmp_path,
        handle,
        fixed_now,
        StdoutReportSink(io.StringIO()),
        rules_dir=rules_dir,
        max_rechecks=2,
    )

    async def add_rule_later() -> None:
        await asyncio.sleep(0.2)
        (rules_dir / "docs.yaml").write_text(SUMMARY_RULE, encoding="utf-8")

    editor = asyncio.create_task(add_rule_later())
    emitted = await asyncio.wait_for(service.run(), timeout=5.0)
    await editor

    assert emitted == 2
    first, second = service.reports
    assert first.gaps == ()
    assert second.modules == ("Accounts", "Billing")
    assert [(gap.module, gap.rule_id) for gap in second.gaps] == [
        ("Accounts", "RULE-DOC-0001"),
        ("Billing", "RULE-DOC-0001"),
    ]
    assert "RULE-DOC-0001" in handle.current


async def test_broken_rule_file_keeps_previous_snapshot(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    rules_dir: Path,
    fixed_now: datetime,
) -> None:
    handle = RuleRegistryHandle.from_directory(rules_dir)
    original = handle.current
    token = CancellationToken()
    service = _service(
        workspace,
        tmp_path,
        handle,
        fixed_now,
        StdoutReportSink(io.StringIO()),
        rules_dir=rules_dir,
    )

    async def break_rules_then_stop() -> None:
        await asyncio.sleep(0.2)
        (rules_dir / "broken.yaml").write_text("- id: [unclosed\n", encoding="utf-8")
        await asyncio.sleep(0.2)
        token.cancel("stop watching")

    editor = asyncio.create_task(break_rules_then_stop())
    emitted = await asyncio.wait_for(service.run(token), timeout=5.0)
    await editor

    assert emitted == 1
    assert handle.current is original


async def test_only_recent_reports_are_kept(
    workspace: tuple[Path, Path],
    tmp_path: Path,
    packaged_registry: RuleRegistry,
    fixed_now: datetime,
) -> None:
    spec_dir, _ = workspace
    service = _service(
        workspace,
        tmp_path,
        packaged_registry,
        fixed_now,
        StdoutReportSink(io.StringIO()),
        max_rechecks=3,
        report_history=2,
    )

    async def edit_twice() -> None:
        for entity in ("Payment", "Refund"):
            await asyncio.sleep(0.1)
            _append(spec_dir / "billing.md", f"\n### Entity: {entity}\n- fields: [id]\n")

    editor = asyncio.create_task(edit_twice())
    emitted = await asyncio.wait_for(service.run(), timeout=5.0)
    await editor

    assert emitted == 3
    assert len(service.reports) == 2
    assert [report.modules for report in service.reports] == [("Billing",), ("Billing",)]
