"""Module entrypoint for ``python -m spec_compliance``."""

from __future__ import annotations

from spec_compliance.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
