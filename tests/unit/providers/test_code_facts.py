"""Unit tests for the JSON and in-memory code-fact providers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from spec_compliance.providers import (
    CodeFactProvider,
    JsonCodeFactProvider,
    ProviderError,
    ProviderTimeout,
    StaticCodeFactProvider,
)


def _write(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


async def test_directory_mode_defaults_module_from_file_name(tmp_path: Path) -> None:
    _write(
        tmp_path / "Billing.json",
        [
            {"kind": "EntityDef", "subjectName": "Invoice", "attributes": {}},
            {"module": "Other", "kind": "EntityDef", "subjectName": "X", "attributes": {}},
        ],
    )
    _write(tmp_path / "Accounts.json", {"facts": []})
    provider = JsonCodeFactProvider(tmp_path)

    records = await provider.fetch("Billing")

    assert provider.modules() == ("Accounts", "Billing")
    assert records[0] == {
        "module": "Billing",
        "kind": "EntityDef",
        "subjectName": "Invoice",
        "attributes": {},
    }
    assert records[1]["module"] == "Other"  # type: ignore[index]
    assert await provider.fetch("Shipping") == []


async def test_file_mode_filters_by_module(tmp_path: Path) -> None:
    export = tmp_path / "facts.json"
    _write(
        export,
        {
            "facts": [
                {"module": "Billing", "kind": "EntityDef", "subjectName": "A", "attributes": {}},
                {"module": "Accounts", "kind": "EntityDef", "subjectName": "B", "attributes": {}},
                "junk",
            ]
        },
    )
    provider = JsonCodeFactProvider(export)

    records = await provider.fetch("Accounts")

    assert [record["subjectName"] for record in records] == ["B"]  # type: ignore[index]
    assert provider.modules() == ("Accounts", "Billing")


async def test_missing_path_raises_provider_error(tmp_path: Path) -> None:
    provider = JsonCodeFactProvider(tmp_path / "absent.json")

    with pytest.raises(ProviderError, match="does not exist") as excinfo:
        await provider.fetch("Billing")

    assert excinfo.value.module == "Billing"
    assert excinfo.value.provider == "json"
    assert provider.modules() == ()
    assert provider.revision() is None


async def test_invalid_json_and_wrong_shape_raise(tmp_path: Path) -> None:
    (tmp_path / "Billing.json").write_text("{not json", encoding="utf-8")
    _write(tmp_path / "Accounts.json", {"records": []})
    provider = JsonCodeFactProvider(tmp_path)

    with pytest.raises(ProviderError, match="invalid JSON"):
        await provider.fetch("Billing")
    with pytest.raises(ProviderError, match="must hold a JSON array"):
        await provider.fetch("Accounts")


def test_revision_changes_when_exports_change(tmp_path: Path) -> None:
    _write(tmp_path / "Billing.json", [])
    provider = JsonCodeFactProvider(tmp_path)
    before = provider.revision()

    _write(tmp_path / "Billing.json", [{"kind": "EntityDef"}])

    assert before is not None
    assert provider.revision() != before


async def test_static_provider_records_calls_and_injected_failures() -> None:
    provider = StaticCodeFactProvider(
        {"Billing": [{"kind": "EntityDef"}], "Accounts": []},
        failures={"Accounts": ProviderTimeout("Accounts", 1.5)},
        revision="abc123",
    )

    assert isinstance(provider, CodeFactProvider)
    assert await provider.fetch("Billing") == [{"kind": "EntityDef"}]
    with pytest.raises(ProviderTimeout, match="within 1.5s"):
        await provider.fetch("Accounts")
    assert provider.calls == ["Billing", "Accounts"]
    assert provider.modules() == ("Accounts", "Billing")
    assert provider.revision() == "abc123"


def test_provider_error_message_is_single_line() -> None:
    error = ProviderError("socket\n   closed", provider="grpc", module="Billing")

    assert str(error) == "provider=grpc module=Billing detail=socket closed"
