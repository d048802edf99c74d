"""Executable CLI entrypoint for ``spec_compliance``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from spec_compliance.config import ConfigLoadError, ConfigValidationError
from spec_compliance.control_plane import ProviderUnavailableError
from spec_compliance.extraction import SpecCorpusError
from spec_compliance.persistence import DuplicateRunError, TrendDBError
from spec_compliance.reporting import ReportSinkError
from spec_compliance.rules import RuleRegistryLoadError

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    P1_GAPS_FOUND = 1
    FAILURE = 2


_EXPECTED_FAILURES: tuple[type[BaseException], ...] = (
    ConfigLoadError,
    ConfigValidationError,
    SpecCorpusError,
    RuleRegistryLoadError,
    ProviderUnavailableError,
    DuplicateRunError,
    TrendDBError,
    ReportSinkError,
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m spec_compliance`` and the ``compliance`` script."""

    try:
        from spec_compliance.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits 2 on usage errors and 0 for --help.
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.FAILURE)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        expected = _route_exception(exc)
        _emit_failure(exc, expected=expected)
        return int(ExitCode.FAILURE)


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {0, 1, 2}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.FAILURE)


def _route_exception(exc: BaseException) -> bool:
    """True when ``exc`` (or anything in its cause chain) is an expected failure."""

    return any(isinstance(item, _EXPECTED_FAILURES) for item in _iter_exception_chain(exc))


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, *, expected: bool) -> None:
    if not expected:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
