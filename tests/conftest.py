"""Shared fixtures for the spec-compliance test suite."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from spec_compliance.observability import shutdown_logging
from spec_compliance.rules import PACKAGED_RULES_DIR, RuleRegistry

FIXED_NOW = datetime(2026, 3, 2, 9, 30, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _shutdown_logging_after_test() -> Iterator[None]:
    yield
    shutdown_logging()


@pytest.fixture(scope="session")
def packaged_registry() -> RuleRegistry:
    return RuleRegistry.load(PACKAGED_RULES_DIR)


@pytest.fixture()
def fixed_now() -> datetime:
    return FIXED_NOW


PRODUCT_SPEC = """\
## Module: Billing

### Entity: Invoice
@tenant-scoped
- fields: [id, amount]

## Module: Accounts

### Entity: User
- fields: [id, email]
"""


def _entity(module: str, name: str, **attributes: object) -> dict[str, object]:
    return {"module": module, "kind": "EntityDef", "subjectName": name, "attributes": attributes}


@pytest.fixture()
def make_repo(tmp_path: Path) -> Callable[..., Path]:
    """Build a repository with a spec corpus and per-module code-fact exports."""

    def _make(*, tenant_scoped: bool = True, with_code_facts: bool = True) -> Path:
        root = tmp_path / "repo"
        spec_dir = root / "docs" / "spec"
        spec_dir.mkdir(parents=True)
        (spec_dir / "product.md").write_text(PRODUCT_SPEC, encoding="utf-8")
        if with_code_facts:
            facts_dir = root / ".compliance" / "code_facts"
            facts_dir.mkdir(parents=True)
            billing = _entity(
                "Billing", "Invoice", tenantScoped=tenant_scoped, fields=["id", "amount"]
            )
            accounts = _entity("Accounts", "User", fields=["id", "email"])
            (facts_dir / "Billing.json").write_text(json.dumps([billing]), encoding="utf-8")
            (facts_dir / "Accounts.json").write_text(json.dumps([accounts]), encoding="utf-8")
        return root

    return _make
