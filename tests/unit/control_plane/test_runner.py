"""
spec-compliance: unit tests for the compliance runner

Purpose
- Validate one end-to-end run over in-memory spec documents and code facts.

What this test file should cover
- Findings become classified gaps, scores and a recorded Report.
- Provider timeouts and errors degrade one module, not the run.
- Losing every module (or a required one) raises after recording.
- Cancellation records a ``cancelled`` Report without raising.
- Pending judgments reach the judgment sink.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import pytest

from spec_compliance.control_plane import (
    ComplianceRunner,
    ProviderUnavailableError,
    RunnerSettings,
)
from spec_compliance.domain.models import (
    PendingJudgment,
    Priority,
    RunStatus,
    WarningCode,
)
from spec_compliance.extraction import SpecDocument
from spec_compliance.persistence import TrendStore
from spec_compliance.providers import ProviderError, StaticCodeFactProvider
from spec_compliance.rules import RuleRegistry
from spec_compliance.utils import CancellationToken

SPEC_TEXT = """\
## Module: Billing

### Entity: Invoice
@tenant-scoped
- fields: [id, amount]

## Module: Accounts

### Entity: User
- fields: [id, email]
"""

BILLING_FACTS = [
    {
        "module": "Billing",
        "kind": "EntityDef",
        "subjectName": "Invoice",
        "attributes": {"tenantScoped": False, "fields": ["id", "amount"]},
    }
]
ACCOUNTS_FACTS = [
    {
        "module": "Accounts",
        "kind": "EntityDef",
        "subjectName": "User",
        "attributes": {"fields": ["id", "email"]},
    }
]


class RecordingJudgmentSink:
    def __init__(self) -> None:
        self.batches: list[tuple[str, tuple[PendingJudgment, ...]]] = []

    def submit(self, pending: Sequence[PendingJudgment], *, run_id: str) -> int:
        self.batches.append((run_id, tuple(pending)))
        return len(pending)


def _documents() -> list[SpecDocument]:
    return [SpecDocument(path="product.md", text=SPEC_TEXT)]


@pytest.fixture()
def store(tmp_path: Path) -> TrendStore:
    return TrendStore(tmp_path / "trend.sqlite")


def _runner(
    store: TrendStore,
    registry: RuleRegistry,
    provider: StaticCodeFactProvider,
    fixed_now: datetime,
    **kwargs: object,
) -> ComplianceRunner:
    return ComplianceRunner(
        spec_corpus=_documents,
        provider=provider,
        registry=registry,
        trend_store=store,
        clock=lambda: fixed_now,
        **kwargs,  # type: ignore[arg-type]
    )


async def test_run_classifies_scores_and_records(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider(
        {"Billing": BILLING_FACTS, "Accounts": ACCOUNTS_FACTS}, revision="code-rev"
    )
    runner = _runner(store, packaged_registry, provider, fixed_now)

    report = await runner.run()

    assert report.status is RunStatus.COMPLETED
    assert report.modules == ("Accounts", "Billing")
    assert [(gap.priority, gap.rule_id, gap.subject_name) for gap in report.gaps] == [
        (Priority.P1, "RULE-TEN-0001", "Invoice")
    ]
    assert dict(report.module_scores) == {"Accounts": 1.0, "Billing": 0.5}
    assert report.code_revision == "code-rev"
    assert report.timestamp == fixed_now
    assert report.warnings == ()
    stored = store.get(report.run_id)
    assert stored is not None
    assert stored.to_json() == report.to_json()


async def test_provider_timeout_degrades_only_that_module(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider(
        {"Billing": BILLING_FACTS, "Accounts": ACCOUNTS_FACTS},
        delays={"Accounts": 5.0},
    )
    runner = _runner(
        store,
        packaged_registry,
        provider,
        fixed_now,
        settings=RunnerSettings(provider_timeout_seconds=0.05),
    )

    report = await runner.run()

    assert report.status is RunStatus.PARTIAL
    assert report.module_scores["Accounts"] is None
    assert report.module_scores["Billing"] == 0.5
    codes = [(warning.module, warning.code) for warning in report.warnings]
    assert ("Accounts", WarningCode.PROVIDER_TIMEOUT) in codes
    assert ("Accounts", WarningCode.PARTIAL_DATA) in codes
    partial = next(
        warning
        for warning in report.warnings
        if warning.module == "Accounts" and warning.code is WarningCode.PARTIAL_DATA
    )
    assert partial.message == "code facts unavailable (provider timeout); score unavailable"
    assert report.gaps_for("Accounts") == ()


async def test_all_modules_unavailable_raises_after_recording(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider(
        {"Billing": [], "Accounts": []},
        failures={
            "Billing": ProviderError("connection refused", module="Billing"),
            "Accounts": ProviderError("connection refused", module="Accounts"),
        },
    )
    runner = _runner(store, packaged_registry, provider, fixed_now)

    with pytest.raises(ProviderUnavailableError) as excinfo:
        await runner.run()

    report = excinfo.value.report
    assert excinfo.value.modules == ("Accounts", "Billing")
    assert report.status is RunStatus.PARTIAL
    assert store.get(report.run_id) is not None
    assert {warning.code for warning in report.warnings} == {WarningCode.PROVIDER_ERROR}


async def test_required_module_failure_raises(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider(
        {"Billing": BILLING_FACTS, "Accounts": []},
        failures={"Accounts": ProviderError("boom", module="Accounts")},
    )
    runner = _runner(
        store,
        packaged_registry,
        provider,
        fixed_now,
        settings=RunnerSettings(required_modules=("Accounts",)),
    )

    with pytest.raises(ProviderUnavailableError, match="Accounts"):
        await runner.run()

    latest = store.latest()
    assert latest is not None
    assert any(warning.code is WarningCode.MODULE_CHECK_FAILED for warning in latest.warnings)


async def test_cancelled_run_is_recorded_without_raising(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider({"Billing": BILLING_FACTS, "Accounts": ACCOUNTS_FACTS})
    runner = _runner(store, packaged_registry, provider, fixed_now)
    token = CancellationToken()
    token.cancel("user requested stop")

    report = await runner.run(cancel_token=token)

    assert report.status is RunStatus.CANCELLED
    assert dict(report.module_scores) == {"Accounts": None, "Billing": None}
    assert [warning.message for warning in report.warnings] == [
        "module not checked: run cancelled",
        "module not checked: run cancelled",
    ]
    assert provider.calls == []
    assert store.count() == 1


async def test_module_scope_and_no_record(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider({"Billing": BILLING_FACTS, "Accounts": ACCOUNTS_FACTS})
    runner = _runner(store, packaged_registry, provider, fixed_now)

    report = await runner.run(["Billing", " "], record=False)

    assert report.modules == ("Billing",)
    assert provider.calls == ["Billing"]
    assert store.count() == 0


async def test_foreign_module_facts_are_dropped(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    provider = StaticCodeFactProvider({"Billing": [*BILLING_FACTS, *ACCOUNTS_FACTS]})
    runner = _runner(store, packaged_registry, provider, fixed_now)

    report = await runner.run(["Billing"])

    messages = [warning.message for warning in report.warnings]
    assert any("belongs to another module" in message for message in messages)


async def test_pending_judgments_reach_the_sink(
    store: TrendStore, packaged_registry: RuleRegistry, fixed_now: datetime
) -> None:
    sink = RecordingJudgmentSink()
    provider = StaticCodeFactProvider(
        {
            "Billing": [
                *BILLING_FACTS,
                {
                    "module": "Billing",
                    "kind": "Permission",
                    "subjectName": "Refund",
                    "attributes": {"roles": ["admin"]},
                },
            ]
        }
    )
    runner = _runner(store, packaged_registry, provider, fixed_now, judgment_sink=sink)

    report = await runner.run(["Billing"])

    assert [item.rule_id for item in report.pending_judgments] == ["RULE-SEC-0001"]
    assert len(sink.batches) == 1
    assert sink.batches[0][0] == report.run_id


def test_runner_settings_from_config() -> None:
    settings = RunnerSettings.from_config(
        {
            "engine": {
                "max_workers": 8,
                "provider_timeout_seconds": 2,
                "required_modules": ["Billing", "Accounts", "Billing"],
            }
        }
    )

    assert settings.max_workers == 8
    assert settings.provider_timeout_seconds == 2.0
    assert settings.required_modules == ("Accounts", "Billing")
    assert RunnerSettings.from_config({}) == RunnerSettings()
    with pytest.raises(ValueError, match="max_workers"):
        RunnerSettings(max_workers=0)
