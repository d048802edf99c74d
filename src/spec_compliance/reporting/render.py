"""Report rendering: canonical JSON and a Jinja2 markdown summary."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Final

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from spec_compliance.domain.models import Priority, canonical_json

if TYPE_CHECKING:
    from spec_compliance.domain.models import Report

_TEMPLATE_DIR: Final[Path] = Path(__file__).resolve().parent / "templates"
_MARKDOWN_TEMPLATE: Final[str] = "report.md.j2"


def render_json(report: Report, *, indent: int | None = None) -> str:
    """Canonical JSON (sorted keys); ``indent`` only changes whitespace."""
    if indent is None:
        return canonical_json(report.to_dict())
    return json.dumps(report.to_dict(), sort_keys=True, indent=indent, ensure_ascii=False)


def render_markdown(report: Report) -> str:
    template = _environment().get_template(_MARKDOWN_TEMPLATE)
    rendered = template.render(**_markdown_context(report))
    return rendered.replace("\r\n", "\n").rstrip("\n") + "\n"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(_TEMPLATE_DIR)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        newline_sequence="\n",
        keep_trailing_newline=True,
    )


def _markdown_context(report: Report) -> dict[str, object]:
    payload = report.to_dict()
    modules = []
    for module in report.modules:
        module_gaps = report.gaps_for(module)
        score = report.module_scores.get(module)
        modules.append(
            {
                "module": _cell(module),
                "score": "unavailable" if score is None else f"{score:.2f}",
                "gaps": len(module_gaps),
                "p1": sum(1 for gap in module_gaps if gap.priority is Priority.P1),
            }
        )

    gaps = []
    for gap in report.gaps:
        reason = gap.evidence.get("reason")
        source = gap.evidence.get("spec_source")
        gaps.append(
            {
                "priority": gap.priority.value,
                "gap_type": gap.gap_type.value,
                "module": gap.module,
                "subject": gap.subject_name,
                "kind": gap.kind.value,
                "rule_id": gap.rule_id,
                "description": gap.description,
                "reason": reason if isinstance(reason, str) and reason else None,
                "source": source if isinstance(source, str) else None,
                "options": list(gap.suggested_decision_options),
            }
        )

    pending = [
        {
            "rule_id": item.rule_id,
            "module": item.key.module,
            "subject": item.key.subject_name,
            "question": str(item.prompt.get("question", "")),
        }
        for item in report.pending_judgments
    ]
    warnings = [
        {
            "code": warning.code.value,
            "module": warning.module,
            "location": warning.location,
            "message": warning.message,
        }
        for warning in sorted(report.warnings, key=lambda warning: warning.sort_key)
    ]
    return {
        "run_id": report.run_id,
        "timestamp": payload["timestamp"],
        "sprint": report.sprint,
        "status": report.status.value,
        "spec_revision": report.spec_revision,
        "code_revision": report.code_revision,
        "gap_total": len(report.gaps),
        "p1_total": len(report.p1_gaps),
        "modules": modules,
        "gaps": gaps,
        "pending": pending,
        "warnings": warnings,
    }


def _cell(value: str) -> str:
    return value.replace("|", "\\|")


__all__ = ["render_json", "render_markdown"]
