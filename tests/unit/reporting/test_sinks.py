"""Unit tests for report sinks (stdout, JSON-lines file, webhook)."""

from __future__ import annotations

import io
import json
from datetime import datetime
from pathlib import Path

import httpx
import pytest

from spec_compliance.domain import ids
from spec_compliance.domain.models import Report, RunStatus
from spec_compliance.reporting import (
    FileReportSink,
    ReportSink,
    ReportSinkError,
    StdoutReportSink,
    WebhookReportSink,
    render_json,
)


def _report(fixed_now: datetime) -> Report:
    return Report(
        run_id=ids.generate_run_id(),
        timestamp=fixed_now,
        sprint=1,
        status=RunStatus.COMPLETED,
        spec_revision="abc",
        modules=("Billing",),
        module_scores={"Billing": 1.0},
    )


async def test_stdout_sink_writes_json_line(fixed_now: datetime) -> None:
    stream = io.StringIO()
    sink = StdoutReportSink(stream)
    report = _report(fixed_now)

    await sink.emit(report)
    await sink.aclose()

    assert isinstance(sink, ReportSink)
    assert stream.getvalue() == render_json(report) + "\n"


async def test_stdout_sink_markdown_format(fixed_now: datetime) -> None:
    stream = io.StringIO()

    await StdoutReportSink(stream, fmt="markdown").emit(_report(fixed_now))

    assert stream.getvalue().startswith("# Compliance report")


async def test_file_sink_appends_lines(tmp_path: Path, fixed_now: datetime) -> None:
    sink = FileReportSink(tmp_path / "out" / "reports.jsonl")
    first = _report(fixed_now)
    second = _report(fixed_now)

    await sink.emit(first)
    await sink.emit(second)

    lines = sink.path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["run_id"] for line in lines] == [first.run_id, second.run_id]


async def test_webhook_sink_posts_canonical_json(fixed_now: datetime) -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(202)

    report = _report(fixed_now)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sink = WebhookReportSink("https://hooks.example.test/compliance", client=client)
        await sink.emit(report)
        await sink.aclose()
        assert not client.is_closed

    assert len(received) == 1
    assert received[0].method == "POST"
    assert received[0].headers["content-type"] == "application/json"
    assert received[0].content.decode("utf-8") == render_json(report)


async def test_webhook_http_error_becomes_sink_error(fixed_now: datetime) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    async with httpx.AsyncClient(transport=transport) as client:
        sink = WebhookReportSink("http://hooks.example.test/", client=client)
        with pytest.raises(ReportSinkError, match="webhook delivery failed"):
            await sink.emit(_report(fixed_now))


def test_webhook_requires_http_url() -> None:
    with pytest.raises(ValueError, match="http"):
        WebhookReportSink("ftp://example.test/")


def test_webhook_from_env_requires_variable() -> None:
    with pytest.raises(ReportSinkError, match="COMPLIANCE_WEBHOOK_URL is not set"):
        WebhookReportSink.from_env("COMPLIANCE_WEBHOOK_URL", environ={})


async def test_webhook_from_env_builds_owned_client() -> None:
    sink = WebhookReportSink.from_env(
        "HOOK", environ={"HOOK": "https://hooks.example.test/x"}
    )

    await sink.aclose()
