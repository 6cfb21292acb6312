"""
forge-agent — integration test package

File: tests/integration/__init__.py
Last updated: 2026-10-19

Purpose
- Test package marker for tests that touch real files, subprocesses and git.

Functional requirements
- Must not trigger provider calls or network access; the model is always scripted.
"""
