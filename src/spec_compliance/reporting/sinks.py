"""Report sinks used by the watch loop: stdout stream, JSON-lines file, webhook."""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol, TextIO, runtime_checkable

import httpx
import structlog

from spec_compliance.reporting.render import render_json, render_markdown

if TYPE_CHECKING:
    from spec_compliance.domain.models import Report

logger = structlog.get_logger(__name__)

ReportFormat = Literal["json", "markdown"]


class ReportSinkError(RuntimeError):
    """A sink could not deliver a report."""


@runtime_checkable
class ReportSink(Protocol):
    async def emit(self, report: Report) -> None: ...

    async def aclose(self) -> None: ...


class StdoutReportSink:
    """Writes each report to a text stream (stdout by default)."""

    def __init__(self, stream: TextIO | None = None, *, fmt: ReportFormat = "json") -> None:
        self._stream = stream
        self._format = fmt

    async def emit(self, report: Report) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        text = render_json(report) + "\n" if self._format == "json" else render_markdown(report)
        stream.write(text)
        stream.flush()

    async def aclose(self) -> None:
        return None


class FileReportSink:
    """Appends one canonical JSON line per report."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def emit(self, report: Report) -> None:
        await asyncio.to_thread(self._append, render_json(report))

    def _append(self, line: str) -> None:
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            raise ReportSinkError(f"failed to append report to {self._path}: {exc}") from exc

    async def aclose(self) -> None:
        return None


class WebhookReportSink:
    """POSTs each report as JSON; the URL itself never lives in config files."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError("webhook url must be http(s)")
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_env(
        cls,
        env_var: str,
        *,
        timeout_seconds: float = 10.0,
        environ: dict[str, str] | None = None,
    ) -> WebhookReportSink:
        source = environ if environ is not None else os.environ
        url = source.get(env_var, "").strip()
        if not url:
            raise ReportSinkError(f"environment variable {env_var} is not set")
        return cls(url, timeout_seconds=timeout_seconds)

    async def emit(self, report: Report) -> None:
        try:
            response = await self._client.post(
                self._url,
                content=render_json(report).encode("utf-8"),
                headers={"content-type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ReportSinkError(f"webhook delivery failed for {report.run_id}: {exc}") from exc
        logger.debug("report_webhook_delivered", run_id=report.run_id, status=response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "FileReportSink",
    "ReportFormat",
    "ReportSink",
    "ReportSinkError",
    "StdoutReportSink",
    "WebhookReportSink",
]
