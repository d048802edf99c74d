"""Report rendering and delivery."""

from spec_compliance.reporting.render import render_json, render_markdown
from spec_compliance.reporting.sinks import (
    FileReportSink,
    ReportSink,
    ReportSinkError,
    StdoutReportSink,
    WebhookReportSink,
)

__all__ = [
    "FileReportSink",
    "ReportSink",
    "ReportSinkError",
    "StdoutReportSink",
    "WebhookReportSink",
    "render_json",
    "render_markdown",
]
