"""Code-fact provider implementations backed by JSON exports or in-memory records."""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import structlog

from spec_compliance.providers.base import ProviderError

logger = structlog.get_logger(__name__)


class JsonCodeFactProvider:
    """Reads records exported by an external code analyzer.

    ``path`` is either a JSON file holding one list of records for every
    module, or a directory of ``<module>.json`` files each holding the records
    of one module. Files are re-read on every fetch so watch mode sees edits.
    """

    name = "json"

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def modules(self) -> tuple[str, ...]:
        if self._path.is_dir():
            return tuple(sorted(item.stem for item in self._path.glob("*.json")))
        if not self._path.is_file():
            return ()
        try:
            records = self._read_records(self._path)
        except ProviderError:
            return ()
        return tuple(
            sorted(
                {
                    record["module"].strip()
                    for record in records
                    if isinstance(record, Mapping)
                    and isinstance(record.get("module"), str)
                    and record["module"].strip()
                }
            )
        )

    async def fetch(self, module: str) -> Sequence[object]:
        return await asyncio.to_thread(self._fetch_sync, module)

    def revision(self) -> str | None:
        files = self._files()
        if not files:
            return None
        digest = hashlib.sha256()
        for file_path in files:
            digest.update(file_path.name.encode("utf-8"))
            digest.update(b"\0")
            try:
                digest.update(file_path.read_bytes())
            except OSError:
                return None
            digest.update(b"\0")
        return digest.hexdigest()

    def _files(self) -> list[Path]:
        if self._path.is_dir():
            return sorted(self._path.glob("*.json"))
        if self._path.is_file():
            return [self._path]
        return []

    def _fetch_sync(self, module: str) -> list[object]:
        if self._path.is_dir():
            module_file = self._path / f"{module}.json"
            if not module_file.exists():
                logger.debug("code_facts_module_file_missing", module=module)
                return []
            records = self._read_records(module_file, module=module)
            # Records in a module file default to that module.
            return [
                {"module": module, **record}
                if isinstance(record, Mapping) and "module" not in record
                else record
                for record in records
            ]

        if not self._path.is_file():
            raise ProviderError(
                f"code facts path {self._path.as_posix()} does not exist",
                provider=self.name,
                module=module,
            )
        records = self._read_records(self._path, module=module)
        return [
            record
            for record in records
            if isinstance(record, Mapping)
            and isinstance(record.get("module"), str)
            and record["module"].strip() == module
        ]

    def _read_records(self, file_path: Path, *, module: str | None = None) -> list[object]:
        try:
            loaded = json.loads(file_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ProviderError(
                f"unreadable code facts file {file_path.name}: {exc}",
                provider=self.name,
                module=module,
            ) from exc
        except json.JSONDecodeError as exc:
            raise ProviderError(
                f"invalid JSON in {file_path.name}: {exc}", provider=self.name, module=module
            ) from exc
        if isinstance(loaded, Mapping) and isinstance(loaded.get("facts"), list):
            loaded = loaded["facts"]
        if not isinstance(loaded, list):
            raise ProviderError(
                f"{file_path.name} must hold a JSON array of fact records",
                provider=self.name,
                module=module,
            )
        return list(loaded)


class StaticCodeFactProvider:
    """In-memory provider with optional per-module delays and failures."""

    name = "static"

    def __init__(
        self,
        records: Mapping[str, Sequence[object]],
        *,
        delays: Mapping[str, float] | None = None,
        failures: Mapping[str, BaseException] | None = None,
        revision: str | None = None,
    ) -> None:
        self._records = {module: list(items) for module, items in records.items()}
        self._delays = dict(delays or {})
        self._failures = dict(failures or {})
        self._revision = revision
        self.calls: list[str] = []

    def modules(self) -> tuple[str, ...]:
        return tuple(sorted(self._records))

    async def fetch(self, module: str) -> Sequence[object]:
        self.calls.append(module)
        delay = self._delays.get(module)
        if delay:
            await asyncio.sleep(delay)
        failure = self._failures.get(module)
        if failure is not None:
            raise failure
        return list(self._records.get(module, ()))

    def revision(self) -> str | None:
        return self._revision


__all__ = ["JsonCodeFactProvider", "StaticCodeFactProvider"]
