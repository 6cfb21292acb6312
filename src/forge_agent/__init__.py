"""
forge-agent — package root

File: src/forge_agent/__init__.py
Last updated: 2026-10-19

Purpose
- Instruction-driven code-editing agent: classify an instruction, resolve target files,
  request full-file rewrites from a model under a JSON contract, apply them, and loop
  validation/auto-fix until the change is accepted or the budget is spent.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
