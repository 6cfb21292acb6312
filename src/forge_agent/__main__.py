"""Module entrypoint for ``python -m forge_agent``."""

from __future__ import annotations

from forge_agent.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
