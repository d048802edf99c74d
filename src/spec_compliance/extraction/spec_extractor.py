"""
spec-compliance: specification fact extractor

Purpose
- Parses a corpus of structured markdown documents into typed ``SpecFact`` records.

Recognized schema
- ``Module: <Name>`` heading (any level) opens a module context.
- ``Entity: <Name>`` heading followed by ``key: value`` bullets and optional
  ``@annotation`` lines (``@tenant-scoped``, ``@tenant: <key>``, ``@persisted``).
- ``State Machine: <Name>`` heading followed by a ``| From | Event | To |`` table.
- ``Permissions: <Resource>`` heading followed by a ``| Role | Actions |`` table.
- ``API: <METHOD> <path>`` heading followed by ``key: value`` bullets.
- ``Tenancy`` heading followed by a ``| Subject | Scoped | Key |`` table.

Functional requirements
- Best effort: malformed sections yield ``ParseWarning`` records, never exceptions.
- Idempotent: identical corpus content yields bit-identical fact sequences,
  ordered by source location.
- Fenced code blocks and HTML comments are treated as non-semantic.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog
import yaml

from spec_compliance.domain.models import (
    FactKey,
    FactKind,
    JSONValue,
    RunWarning,
    SourceLocation,
    SpecFact,
    WarningCode,
    canonical_json,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = structlog.get_logger(__name__)

_ATX_HEADING_RE: Final[re.Pattern[str]] = re.compile(r"^\s{0,3}#{1,6}\s*(?P<text>.*?)\s*#*\s*$")
_SETEXT_UNDERLINE_RE: Final[re.Pattern[str]] = re.compile(r"^\s{0,3}(?:=+|-+)\s*$")
_LIST_ITEM_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<indent>\s*)(?P<marker>[-*+]|\d+[.)])\s+(?P<text>\S.*)$"
)
_FENCE_START_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<indent>[ ]{0,3})(?P<marker>`{3,}|~{3,}).*$"
)
_FENCE_CLOSE_RE: Final[re.Pattern[str]] = re.compile(r"^[ ]{0,3}(?P<marker>`{3,}|~{3,})\s*$")
_LABELED_HEADING_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<label>module|entity|state[ -]?machine|permissions?|api|tenancy)"
    r"\s*(?::\s*(?P<name>.*))?$",
    flags=re.IGNORECASE,
)
_KEY_VALUE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<key>[A-Za-z_][A-Za-z0-9_ -]*?)\s*:\s*(?P<value>.*)$"
)
_ANNOTATION_RE: Final[re.Pattern[str]] = re.compile(
    r"^@(?P<name>[A-Za-z][A-Za-z0-9_-]*)\s*(?::\s*(?P<value>\S.*))?$"
)
_TABLE_SEPARATOR_RE: Final[re.Pattern[str]] = re.compile(
    r"^\|?\s*:?-{3,}:?\s*(?:\|\s*:?-{3,}:?\s*)*\|?$"
)
_API_SUBJECT_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<method>GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)\s+(?P<path>/\S*)$",
    flags=re.IGNORECASE,
)

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"yes", "y", "true", "scoped", "x"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"no", "n", "false", "unscoped", "-", ""})

_LABEL_KINDS: Final[dict[str, FactKind]] = {
    "entity": FactKind.ENTITY_DEF,
    "statemachine": FactKind.STATE_MACHINE,
    "permission": FactKind.PERMISSION,
    "permissions": FactKind.PERMISSION,
    "api": FactKind.API_CONTRACT,
    "tenancy": FactKind.TENANCY_RULE,
}

_TABLE_COLUMNS: Final[dict[FactKind, tuple[str, ...]]] = {
    FactKind.STATE_MACHINE: ("from", "event", "to"),
    FactKind.PERMISSION: ("role", "actions"),
    FactKind.TENANCY_RULE: ("subject", "scoped"),
}


class SpecCorpusError(Exception):
    """The specification corpus could not be read at all."""


@dataclass(frozen=True, slots=True)
class SpecDocument:
    path: str
    text: str


@dataclass(frozen=True, slots=True)
class ParseWarning:
    """Recoverable extraction issue anchored to a source location."""

    message: str
    location: SourceLocation
    module: str | None = None

    def to_run_warning(self) -> RunWarning:
        return RunWarning(
            code=WarningCode.PARSE_WARNING,
            message=self.message,
            module=self.module,
            location=str(self.location),
        )


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    facts: tuple[SpecFact, ...]
    warnings: tuple[ParseWarning, ...]
    revision: str

    @property
    def modules(self) -> tuple[str, ...]:
        return tuple(sorted({fact.module for fact in self.facts}))

    def modules_for_path(self, path: str) -> tuple[str, ...]:
        return tuple(sorted({fact.module for fact in self.facts if fact.source.path == path}))

    def facts_for(self, modules: Iterable[str] | None) -> tuple[SpecFact, ...]:
        if modules is None:
            return self.facts
        wanted = set(modules)
        return tuple(fact for fact in self.facts if fact.module in wanted)


@dataclass(slots=True)
class _FenceState:
    marker_char: str
    marker_length: int


@dataclass(slots=True)
class _VisibleLine:
    line_number: int
    text: str


@dataclass(slots=True)
class _Block:
    kind: FactKind
    name: str
    module: str
    line: int
    section: str
    attributes: dict[str, JSONValue] = field(default_factory=dict)
    table_header: list[str] | None = None
    table_rows: list[tuple[int, list[str]]] = field(default_factory=list)


@dataclass(slots=True)
class _DocumentState:
    path: str
    module: str | None = None
    block: _Block | None = None
    facts: list[SpecFact] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)

    def warn(self, line: int, message: str, *, section: str | None = None) -> None:
        self.warnings.append(
            ParseWarning(
                message=message,
                location=SourceLocation(path=self.path, line=line, section=section),
                module=self.module,
            )
        )


def load_corpus(root: Path) -> tuple[SpecDocument, ...]:
    """Read ``root`` (a markdown file or a directory of them) into documents.

    Document paths are POSIX paths relative to ``root`` so the same corpus
    yields the same fact ids on every machine.
    """
    resolved = root.resolve()
    if resolved.is_file():
        candidates = [resolved]
        base = resolved.parent
    elif resolved.is_dir():
        candidates = sorted(path for path in resolved.rglob("*.md") if path.is_file())
        base = resolved
    else:
        raise SpecCorpusError(f"specification corpus not found: {root}")

    documents: list[SpecDocument] = []
    for path in candidates:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SpecCorpusError(f"failed to read specification document {path}: {exc}") from exc
        documents.append(SpecDocument(path=path.relative_to(base).as_posix(), text=text))
    return tuple(sorted(documents, key=lambda document: document.path))


def corpus_revision(corpus: Sequence[SpecDocument]) -> str:
    """SHA-256 over the ordered ``(path, content digest)`` pairs of ``corpus``."""
    entries = [
        [document.path, hashlib.sha256(document.text.encode("utf-8")).hexdigest()]
        for document in sorted(corpus, key=lambda document: document.path)
    ]
    return hashlib.sha256(canonical_json(entries).encode("utf-8")).hexdigest()


def extract(corpus: Sequence[SpecDocument]) -> ExtractionResult:
    """Extract spec facts and parse warnings from every document in ``corpus``."""
    ordered = sorted(corpus, key=lambda document: document.path)
    facts: list[SpecFact] = []
    warnings: list[ParseWarning] = []
    seen: dict[FactKey, SourceLocation] = {}

    for document in ordered:
        state = _parse_document(document)
        warnings.extend(state.warnings)
        for fact in state.facts:
            first = seen.get(fact.key)
            if first is not None:
                warnings.append(
                    ParseWarning(
                        message=f"duplicate definition of {fact.key}; first defined at {first}",
                        location=fact.source,
                        module=fact.module,
                    )
                )
                continue
            seen[fact.key] = fact.source
            facts.append(fact)

    facts.sort(key=lambda fact: fact.source.sort_key)
    warnings.sort(key=lambda warning: (warning.location.sort_key, warning.message))
    for warning in warnings:
        logger.debug(
            "spec_parse_warning",
            location=str(warning.location),
            message=warning.message,
        )
    return ExtractionResult(
        facts=tuple(facts),
        warnings=tuple(warnings),
        revision=corpus_revision(ordered),
    )


# ---------------------------------------------------------------------------
# Document parsing
# ---------------------------------------------------------------------------


def _parse_document(document: SpecDocument) -> _DocumentState:
    state = _DocumentState(path=document.path)
    visible_lines = _strip_non_semantic_lines(document.text.splitlines())
    index = 0

    while index < len(visible_lines):
        line = visible_lines[index]
        heading = _parse_heading(visible_lines, index)
        if heading is not None:
            heading_text, consumed = heading
            _close_block(state)
            _open_heading(state, heading_text, line.line_number)
            index += consumed
            continue

        stripped = line.text.strip()
        if stripped and state.block is not None:
            _consume_block_line(state, state.block, line.line_number, stripped)
        index += 1

    _close_block(state)
    return state


def _open_heading(state: _DocumentState, heading_text: str, line: int) -> None:
    match = _LABELED_HEADING_RE.match(heading_text)
    if match is None:
        return

    label = re.sub(r"[ -]", "", match.group("label").lower())
    name = (match.group("name") or "").strip().strip("`").strip()

    if label == "module":
        if not name:
            state.warn(line, "module heading is missing a name", section=heading_text)
            state.module = None
            return
        state.module = name
        return

    kind = _LABEL_KINDS[label]
    if kind is not FactKind.TENANCY_RULE and not name:
        state.warn(
            line, f"{heading_text!r} heading is missing a subject name", section=heading_text
        )
        return
    if state.module is None:
        state.warn(
            line,
            f"{heading_text!r} appears outside a 'Module:' section; section skipped",
            section=heading_text,
        )
        return

    if kind is FactKind.API_CONTRACT:
        api_match = _API_SUBJECT_RE.match(name)
        if api_match is None:
            state.warn(
                line,
                f"API heading {name!r} must look like '<METHOD> /path'",
                section=heading_text,
            )
            return
        name = f"{api_match.group('method').upper()} {api_match.group('path')}"

    state.block = _Block(
        kind=kind,
        name=name,
        module=state.module,
        line=line,
        section=heading_text,
    )
    if kind is FactKind.API_CONTRACT:
        method, _, path = name.partition(" ")
        state.block.attributes.update({"method": method, "path": path})


def _consume_block_line(state: _DocumentState, block: _Block, line: int, text: str) -> None:
    if text.startswith("|"):
        _consume_table_line(state, block, line, text)
        return

    if text.startswith("@"):
        _consume_annotation(state, block, line, text)
        return

    list_item = _parse_list_item(text)
    if list_item is None:
        # Prose between structured lines is documentation, not a fact.
        return

    _, item_text = list_item
    kv_match = _KEY_VALUE_RE.match(item_text)
    if kv_match is None:
        state.warn(
            line,
            f"expected 'key: value' bullet in {block.section!r}, got {item_text!r}",
            section=block.section,
        )
        return

    key = kv_match.group("key").strip()
    if key in block.attributes:
        state.warn(line, f"attribute {key!r} repeated; keeping first value", section=block.section)
        return
    block.attributes[key] = _parse_value(kv_match.group("value"))


def _consume_annotation(state: _DocumentState, block: _Block, line: int, text: str) -> None:
    match = _ANNOTATION_RE.match(text)
    if match is None:
        state.warn(line, f"malformed annotation {text!r}", section=block.section)
        return

    name = match.group("name").lower()
    value = match.group("value")
    if name in {"tenant", "tenant-scoped", "tenant_scoped"}:
        block.attributes["tenantScoped"] = True
        if value is not None:
            block.attributes["tenantKey"] = value.strip()
        return
    if name in {"global", "not-tenant-scoped"}:
        block.attributes["tenantScoped"] = False
        return

    attribute = _camel_case(name)
    block.attributes[attribute] = True if value is None else _parse_value(value)


def _consume_table_line(state: _DocumentState, block: _Block, line: int, text: str) -> None:
    expected = _TABLE_COLUMNS.get(block.kind)
    if expected is None:
        state.warn(line, f"tables are not recognized in {block.section!r}", section=block.section)
        return
    if _TABLE_SEPARATOR_RE.match(text) is not None:
        return

    cells = _split_table_row(text)
    if block.table_header is None:
        header = [cell.lower() for cell in cells]
        missing = [column for column in expected if column not in header]
        if missing:
            state.warn(
                line,
                f"table in {block.section!r} is missing columns {missing}",
                section=block.section,
            )
            block.table_header = []
            return
        block.table_header = header
        return

    if not block.table_header:
        return
    if len(cells) != len(block.table_header):
        state.warn(
            line,
            f"table row has {len(cells)} cells, expected {len(block.table_header)}",
            section=block.section,
        )
        return
    block.table_rows.append((line, cells))


def _close_block(state: _DocumentState) -> None:
    block = state.block
    state.block = None
    if block is None:
        return

    if block.kind is FactKind.STATE_MACHINE:
        _emit_state_machine(state, block)
    elif block.kind is FactKind.PERMISSION:
        _emit_permissions(state, block)
    elif block.kind is FactKind.TENANCY_RULE:
        _emit_tenancy_rules(state, block)
    else:
        _emit(state, block, block.name, block.attributes, block.line)


def _emit(
    state: _DocumentState,
    block: _Block,
    subject_name: str,
    attributes: dict[str, JSONValue],
    line: int,
) -> None:
    try:
        fact = SpecFact(
            module=block.module,
            kind=block.kind,
            subject_name=subject_name,
            attributes=attributes,
            source=SourceLocation(path=state.path, line=line, section=block.section),
        )
    except ValueError as exc:
        state.warn(line, f"invalid fact: {exc}", section=block.section)
        return
    state.facts.append(fact)


def _emit_state_machine(state: _DocumentState, block: _Block) -> None:
    if not block.table_rows:
        state.warn(block.line, f"{block.section!r} has no transition rows", section=block.section)
        return

    header = block.table_header or []
    col_from, col_event, col_to = (header.index(name) for name in ("from", "event", "to"))
    states: set[str] = set()
    transitions: set[str] = set()
    for line, cells in block.table_rows:
        source, event, target = cells[col_from], cells[col_event], cells[col_to]
        if not source or not event or not target:
            state.warn(line, "transition row has an empty cell", section=block.section)
            continue
        states.update((source, target))
        transitions.add(f"{source} -{event}-> {target}")

    attributes = dict(block.attributes)
    attributes["states"] = sorted(states)
    attributes["transitions"] = sorted(transitions)
    _emit(state, block, block.name, attributes, block.line)


def _emit_permissions(state: _DocumentState, block: _Block) -> None:
    if not block.table_rows:
        state.warn(block.line, f"{block.section!r} has no role rows", section=block.section)
        return

    header = block.table_header or []
    col_role, col_actions = header.index("role"), header.index("actions")
    grants: dict[str, JSONValue] = {}
    for line, cells in block.table_rows:
        role = cells[col_role]
        if not role:
            state.warn(line, "permission row has an empty role", section=block.section)
            continue
        if role in grants:
            state.warn(line, f"role {role!r} listed twice; keeping first", section=block.section)
            continue
        grants[role] = sorted(
            {action.strip() for action in cells[col_actions].split(",") if action.strip()}
        )

    attributes = dict(block.attributes)
    attributes["roles"] = sorted(grants)
    attributes["grants"] = dict(sorted(grants.items()))
    _emit(state, block, block.name, attributes, block.line)


def _emit_tenancy_rules(state: _DocumentState, block: _Block) -> None:
    header = block.table_header or []
    if not block.table_rows:
        state.warn(block.line, "tenancy section has no rows", section=block.section)
        return

    col_subject, col_scoped = header.index("subject"), header.index("scoped")
    col_key = header.index("key") if "key" in header else None
    for line, cells in block.table_rows:
        subject = cells[col_subject].strip("`").strip()
        scoped_text = cells[col_scoped].strip().lower()
        if not subject:
            state.warn(line, "tenancy row has an empty subject", section=block.section)
            continue
        if scoped_text in _TRUE_WORDS:
            scoped = True
        elif scoped_text in _FALSE_WORDS:
            scoped = False
        else:
            state.warn(
                line,
                f"unrecognized tenancy scope {cells[col_scoped]!r}",
                section=block.section,
            )
            continue
        attributes: dict[str, JSONValue] = {"tenantScoped": scoped}
        if col_key is not None and cells[col_key]:
            attributes["tenantKey"] = cells[col_key]
        _emit(state, block, subject, attributes, line)


# ---------------------------------------------------------------------------
# Line helpers
# ---------------------------------------------------------------------------


def _strip_non_semantic_lines(lines: Sequence[str]) -> list[_VisibleLine]:
    visible: list[_VisibleLine] = []
    fence_state: _FenceState | None = None
    in_comment = False

    for index, raw_line in enumerate(lines, start=1):
        if fence_state is not None:
            if _is_fence_close(raw_line, fence_state):
                fence_state = None
            continue

        fence_state = _parse_fence_start(raw_line)
        if fence_state is not None:
            continue

        sanitized_line, in_comment = _strip_html_comments(raw_line, in_comment)
        visible.append(_VisibleLine(line_number=index, text=sanitized_line))

    return visible


def _parse_fence_start(line: str) -> _FenceState | None:
    match = _FENCE_START_RE.match(line)
    if match is None:
        return None
    marker = match.group("marker")
    return _FenceState(marker_char=marker[0], marker_length=len(marker))


def _is_fence_close(line: str, state: _FenceState) -> bool:
    match = _FENCE_CLOSE_RE.match(line)
    if match is None:
        return False
    marker = match.group("marker")
    return marker[0] == state.marker_char and len(marker) >= state.marker_length


def _strip_html_comments(line: str, in_comment: bool) -> tuple[str, bool]:
    output: list[str] = []
    cursor = 0

    while cursor < len(line):
        if in_comment:
            end = line.find("-->", cursor)
            if end < 0:
                return ("".join(output), True)
            cursor = end + 3
            in_comment = False
            continue

        start = line.find("<!--", cursor)
        if start < 0:
            output.append(line[cursor:])
            break
        output.append(line[cursor:start])
        cursor = start + 4
        in_comment = True

    return ("".join(output), in_comment)


def _parse_heading(lines: Sequence[_VisibleLine], index: int) -> tuple[str, int] | None:
    current = lines[index].text
    atx_match = _ATX_HEADING_RE.match(current)
    if atx_match is not None:
        heading_text = atx_match.group("text").strip()
        if heading_text:
            return (heading_text, 1)

    if index + 1 < len(lines):
        next_line = lines[index + 1].text
        if (
            current.strip()
            and not current.lstrip().startswith("|")
            and _parse_list_item(current) is None
            and _SETEXT_UNDERLINE_RE.match(next_line) is not None
        ):
            return (current.strip(), 2)
    return None


def _parse_list_item(line: str) -> tuple[int, str] | None:
    match = _LIST_ITEM_RE.match(line)
    if match is None:
        return None
    indent = len(match.group("indent").expandtabs(4))
    return (indent, match.group("text").strip())


def _split_table_row(text: str) -> list[str]:
    body = text.strip()
    if body.startswith("|"):
        body = body[1:]
    if body.endswith("|"):
        body = body[:-1]
    return [cell.strip() for cell in body.split("|")]


def _parse_value(raw: str) -> JSONValue:
    text = raw.strip()
    if not text:
        return ""
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError:
        return text
    if parsed is None or isinstance(parsed, (bool, int, float, str)):
        return text if parsed is None else parsed
    if isinstance(parsed, list) and all(
        isinstance(item, (bool, int, float, str)) for item in parsed
    ):
        return list(parsed)
    return text


def _camel_case(name: str) -> str:
    head, *rest = re.split(r"[-_]", name)
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


__all__ = [
    "ExtractionResult",
    "ParseWarning",
    "SpecCorpusError",
    "SpecDocument",
    "corpus_revision",
    "extract",
    "load_corpus",
]
