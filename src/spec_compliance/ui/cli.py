"""Command-line interface router for spec-compliance."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Callable, Coroutine, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Final, TextIO, TypeVar

import structlog

from spec_compliance.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from spec_compliance.control_plane import (
    ComplianceRunner,
    IncrementalScheduler,
    PollingChangeSource,
    ProviderUnavailableError,
    RunnerSettings,
    WatchService,
)
from spec_compliance.domain import ids
from spec_compliance.domain.models import Report, RunStatus
from spec_compliance.observability import StructuredLoggingHandle, setup_logging
from spec_compliance.persistence import SprintCalendar, TrendStore
from spec_compliance.providers import JsonCodeFactProvider, JsonlJudgmentSink
from spec_compliance.reporting import (
    FileReportSink,
    ReportSink,
    ReportSinkError,
    StdoutReportSink,
    WebhookReportSink,
    render_json,
    render_markdown,
)
from spec_compliance.rules import (
    PACKAGED_RULES_DIR,
    RuleRegistry,
    RuleRegistryHandle,
    RuleRegistryLoadError,
    rule_summary,
)
from spec_compliance.ui.render import CLIRenderer, create_renderer, format_score
from spec_compliance.utils import CancellationToken

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REPORT_FORMATS: Final[tuple[str, ...]] = ("json", "markdown")
SINK_CHOICES: Final[tuple[str, ...]] = ("stdout", "file", "webhook")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class _Runtime:
    runner: ComplianceRunner
    trend_store: TrendStore
    spec_corpus: Path
    code_facts: Path


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="compliance",
        description=(
            "spec-compliance: deterministic specification-to-code gap analysis.\n\n"
            "Common workflows:\n"
            "  compliance check                 One-shot check of every module\n"
            "  compliance watch                 Re-check modules as files change\n"
            "  compliance report history ...    Per-sprint score history of a module\n"
            "  compliance rules validate        Validate the rule registry\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to compliance TOML config (default: ./compliance.toml if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name (strict, fast, or a custom profile).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output and mirror logs to stderr.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # check ---------------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Run one compliance check and print the report",
        description=(
            "Extract spec facts, fetch code facts, evaluate every rule, record the report.\n\n"
            "Exit codes: 0 no P1 gaps, 1 P1 gaps found, 2 failure.\n\n"
            "Examples:\n"
            "  compliance check\n"
            "  compliance check --module Billing --format markdown\n"
            "  compliance check --no-record\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    check_parser.add_argument(
        "--module",
        dest="modules",
        action="append",
        default=None,
        help="Restrict the check to a module (repeatable).",
    )
    check_parser.add_argument(
        "--format", choices=REPORT_FORMATS, default="json", help="Report output format"
    )
    check_parser.add_argument(
        "--no-record",
        action="store_true",
        default=False,
        help="Do not persist the report in the trend store",
    )
    check_parser.set_defaults(handler=_cmd_check)

    # watch ---------------------------------------------------------------
    watch_parser = subparsers.add_parser(
        "watch",
        parents=[common],
        help="Watch spec and code facts, re-checking affected modules",
        description=(
            "Poll the spec corpus and code-fact exports; every change marks its modules dirty\n"
            "and each module is re-checked once its debounce window elapses.\n\n"
            "Examples:\n"
            "  compliance watch\n"
            "  compliance watch --debounce 500 --sink file --sink-target reports.jsonl\n"
            "  compliance watch --sink webhook --sink-target MY_WEBHOOK_URL_VAR\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    watch_parser.add_argument(
        "--debounce", type=_non_negative_int_arg, default=None, help="Debounce window in ms"
    )
    watch_parser.add_argument(
        "--sink", choices=SINK_CHOICES, default=None, help="Report sink (default from config)"
    )
    watch_parser.add_argument(
        "--sink-target",
        default=None,
        help="File path for the file sink, or env var holding the URL for the webhook sink",
    )
    watch_parser.add_argument(
        "--max-rechecks",
        type=_positive_int_arg,
        default=None,
        help="Stop after emitting this many reports",
    )
    watch_parser.add_argument(
        "--format",
        choices=REPORT_FORMATS,
        default="json",
        help="Report format for the stdout sink",
    )
    watch_parser.set_defaults(handler=_cmd_watch)

    # report --------------------------------------------------------------
    report_parser = subparsers.add_parser("report", help="Query the trend store")
    report_subparsers = report_parser.add_subparsers(dest="report_command", required=True)
    history_parser = report_subparsers.add_parser(
        "history",
        parents=[common],
        help="Per-sprint score history of one module",
        description=(
            "Average module score, gap and P1 counts per sprint.\n\n"
            "Examples:\n"
            "  compliance report history --module Billing\n"
            "  compliance report history --module Billing --since 12 --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    history_parser.add_argument("--module", required=True, help="Module name")
    history_parser.add_argument(
        "--since", type=_positive_int_arg, default=None, help="First sprint to include"
    )
    history_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON")
    history_parser.set_defaults(handler=_cmd_report_history)

    # rules ---------------------------------------------------------------
    rules_parser = subparsers.add_parser("rules", help="Inspect the rule registry")
    rules_subparsers = rules_parser.add_subparsers(dest="rules_command", required=True)
    validate_parser = rules_subparsers.add_parser(
        "validate",
        parents=[common],
        help="Load every rule and list per-rule errors (exit 2 on any error)",
    )
    validate_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON")
    validate_parser.set_defaults(handler=_cmd_rules_validate)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    run_id = ids.generate_run_id()
    handle = _start_logging(args, config, run_id)
    try:
        runtime = _build_runtime(config, run_id_factory=lambda: run_id)
        modules = _string_sequence(getattr(args, "modules", None))
        token = CancellationToken()
        failure: ProviderUnavailableError | None = None
        try:
            report = asyncio.run(
                _interruptible(
                    token,
                    runtime.runner.run(
                        modules or None,
                        cancel_token=token,
                        record=not _flag(args, "no_record"),
                    ),
                )
            )
        except ProviderUnavailableError as exc:
            report, failure = exc.report, exc

        _print_report(report, str(getattr(args, "format", "json")))
        if _flag(args, "verbose"):
            _get_renderer(args, stream=sys.stderr).report_summary(report)
        if failure is not None:
            raise CLIError(str(failure), exit_code=2) from failure
        if report.status is RunStatus.CANCELLED:
            raise CLIError(f"run {report.run_id} cancelled", exit_code=2)
        return 1 if report.p1_gaps else 0
    finally:
        handle.shutdown()


def _cmd_watch(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {}
    debounce = getattr(args, "debounce", None)
    if debounce is not None:
        overrides["scheduler.debounce_ms"] = debounce
    config = _load_effective_config(args, overrides)
    handle = _start_logging(args, config, ids.generate_run_id())
    try:
        runtime = _build_runtime(config)
        scheduler_config = _section(config, "scheduler")
        sink = _build_sink(
            config,
            repo_root=_repo_root(args),
            kind=_optional_str(getattr(args, "sink", None)),
            target=_optional_str(getattr(args, "sink_target", None)),
            fmt=str(getattr(args, "format", "json")),
        )
        service = WatchService(
            runtime.runner,
            IncrementalScheduler(debounce_ms=int(scheduler_config.get("debounce_ms", 250))),
            PollingChangeSource(
                runtime.spec_corpus,
                runtime.code_facts,
                rules_dir=runtime.runner.registry.current.registry_dir,
            ),
            sink,
            poll_interval_ms=int(scheduler_config.get("poll_interval_ms", 200)),
            max_rechecks=getattr(args, "max_rechecks", None),
        )
        token = CancellationToken()
        rechecks = asyncio.run(_watch(service, sink, token))
        print(f"watch stopped after {rechecks} recheck(s)", file=sys.stderr)
        return 0
    finally:
        handle.shutdown()


def _cmd_report_history(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    module = _require_str(getattr(args, "module", None), "module")
    since = getattr(args, "since", None)
    scores = _trend_store(config).sprint_scores(module, since)

    payload: dict[str, object] = {
        "command": "report history",
        "module": module,
        "since_sprint": since,
        "sprints": [
            {
                "sprint": item.sprint,
                "runs": item.runs,
                "average_score": item.average_score,
                "gap_count": item.gap_count,
                "p1_count": item.p1_count,
                "latest_run_id": item.latest_run_id,
            }
            for item in scores
        ],
    }
    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Module", module)
    if not scores:
        renderer.text("No reports recorded for this module.")
        return 0
    renderer.table(
        ("Sprint", "Runs", "Avg score", "Gaps", "P1", "Latest run"),
        [
            (
                str(item.sprint),
                str(item.runs),
                format_score(item.average_score),
                str(item.gap_count),
                str(item.p1_count),
                item.latest_run_id,
            )
            for item in scores
        ],
    )
    return 0


def _cmd_rules_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    registry_dir = _registry_dir(config)
    try:
        registry = RuleRegistry.load(registry_dir)
    except RuleRegistryLoadError as exc:
        raise CLIError(f"rule registry unreadable: {exc}", exit_code=2) from exc

    errors = registry.errors
    payload: dict[str, object] = {
        "command": "rules validate",
        "registry_dir": registry_dir.as_posix(),
        "revision": registry.revision,
        "rules": [rule_summary(rule) for rule in registry.rules],
        "errors": [
            {"location": error.location, "rule_id": error.rule_id, "message": error.message}
            for error in errors
        ],
    }
    exit_code = 2 if errors else 0

    if _flag(args, "json"):
        _emit_json(payload)
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Registry", registry_dir.as_posix())
    renderer.kv("Revision", registry.revision)
    renderer.section(f"Rules ({len(registry)}):")
    for rule in registry.rules:
        renderer.ok(f"{rule.id} v{rule.version} [{rule.applies_to.value}] {rule.gap_type.value}")
    for error in errors:
        renderer.fail(str(error))
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    payload: dict[str, object] = {
        "command": "config",
        "active_profile": profile,
        "config": redacted,
    }

    if _flag(args, "json"):
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers: async execution
# ---------------------------------------------------------------------------


async def _interruptible(token: CancellationToken, work: Coroutine[object, object, T]) -> T:
    """Await ``work`` with SIGINT mapped onto cooperative cancellation of ``token``."""

    loop = asyncio.get_running_loop()
    installed = False
    with suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        installed = True
    try:
        return await work
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _watch(service: WatchService, sink: ReportSink, token: CancellationToken) -> int:
    try:
        return await _interruptible(token, service.run(token))
    finally:
        await sink.aclose()


# ---------------------------------------------------------------------------
# Helpers: runtime assembly
# ---------------------------------------------------------------------------


def _build_runtime(
    config: Mapping[str, object],
    *,
    run_id_factory: Callable[[], str] = ids.generate_run_id,
) -> _Runtime:
    spec_corpus = _config_path(config, "spec_corpus")
    code_facts = _config_path(config, "code_facts")
    trend_store = _trend_store(config)
    runner = ComplianceRunner(
        spec_corpus=spec_corpus,
        provider=JsonCodeFactProvider(code_facts),
        registry=RuleRegistryHandle.from_directory(_registry_dir(config)),
        trend_store=trend_store,
        judgment_sink=JsonlJudgmentSink(_config_path(config, "judgment_queue")),
        settings=RunnerSettings.from_config(config),
        run_id_factory=run_id_factory,
    )
    return _Runtime(
        runner=runner,
        trend_store=trend_store,
        spec_corpus=spec_corpus,
        code_facts=code_facts,
    )


def _trend_store(config: Mapping[str, object]) -> TrendStore:
    trend = _section(config, "trend")
    epoch = trend.get("sprint_epoch")
    calendar = SprintCalendar(
        length_days=int(trend.get("sprint_length_days", 14)),
        epoch=epoch if isinstance(epoch, date) else date.fromisoformat(str(epoch)),
    )
    return TrendStore(_config_path(config, "trend_store"), calendar=calendar)


def _registry_dir(config: Mapping[str, object]) -> Path:
    configured = _config_path(config, "rule_registry")
    if configured.is_dir():
        return configured
    logger.info(
        "rule_registry_packaged_defaults",
        configured=configured.as_posix(),
        packaged=PACKAGED_RULES_DIR.as_posix(),
    )
    return PACKAGED_RULES_DIR


def _build_sink(
    config: Mapping[str, object],
    *,
    repo_root: Path,
    kind: str | None,
    target: str | None,
    fmt: str,
) -> ReportSink:
    sinks = _section(config, "sinks")
    selected = kind or str(sinks.get("default", "stdout"))
    if selected == "stdout":
        return StdoutReportSink(fmt="markdown" if fmt == "markdown" else "json")
    if selected == "file":
        if target is None:
            if sinks.get("file_path") is None:
                raise CLIError("missing config path: sinks.file_path", exit_code=2)
            target = _require_str(sinks.get("file_path"), "sinks.file_path")
        return FileReportSink(_resolve_optional_path(target, repo_root))
    if selected == "webhook":
        env_var = target or str(sinks.get("webhook_url_env", ""))
        try:
            return WebhookReportSink.from_env(
                env_var,
                timeout_seconds=float(sinks.get("webhook_timeout_seconds", 10.0)),
            )
        except (ReportSinkError, ValueError) as exc:
            raise CLIError(f"webhook sink unavailable: {exc}", exit_code=2) from exc
    raise CLIError(f"unsupported sink: {selected}", exit_code=2)


def _start_logging(
    args: argparse.Namespace, config: Mapping[str, object], run_id: str
) -> StructuredLoggingHandle:
    verbose = _flag(args, "verbose")
    return setup_logging(
        _section(config, "observability"),
        run_id=run_id,
        log_to_console=True if verbose else None,
        level="DEBUG" if verbose else None,
    )


# ---------------------------------------------------------------------------
# Helpers: output
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _print_report(report: Report, fmt: str) -> None:
    if fmt == "markdown":
        sys.stdout.write(render_markdown(report))
    else:
        sys.stdout.write(render_json(report) + "\n")
    sys.stdout.flush()


def _get_renderer(args: argparse.Namespace, *, stream: TextIO | None = None) -> CLIRenderer:
    return create_renderer(
        no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"), stream=stream
    )


# ---------------------------------------------------------------------------
# Helpers: config, paths, argument coercion
# ---------------------------------------------------------------------------


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "repo_root", None), "repo_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(
    args: argparse.Namespace, cli_overrides: Mapping[str, object] | None = None
) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    repo_root = _repo_root(args)

    resolved_config: Path | None = None
    if config_path is not None:
        resolved_config = _resolve_optional_path(config_path, repo_root)

    try:
        loaded = load_config(
            resolved_config,
            repo_root=repo_root,
            profile=profile,
            cli_overrides=cli_overrides,
        )
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc

    return {key: value for key, value in loaded.items()}


def _section(config: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _config_path(config: Mapping[str, object], field: str) -> Path:
    value = _section(config, "paths").get(field)
    if not isinstance(value, str) or not value.strip():
        raise CLIError(f"missing config path: paths.{field}", exit_code=2)
    return Path(value.strip()).expanduser()


def _resolve_optional_path(path_arg: str, repo_root: Path) -> Path:
    candidate = Path(path_arg).expanduser()
    return candidate.resolve() if candidate.is_absolute() else (repo_root / candidate).resolve()


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    if not isinstance(value, Sequence):
        raise CLIError("invalid sequence argument", exit_code=2)

    parsed: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise CLIError("invalid sequence argument", exit_code=2)
        cleaned = item.strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


def _positive_int_arg(raw: str) -> int:
    value = _non_negative_int_arg(raw)
    if value == 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return value


def _non_negative_int_arg(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return value


__all__ = [
    "CLIError",
    "build_parser",
    "main",
    "run_cli",
]


if __name__ == "__main__":
    raise SystemExit(run_cli())
