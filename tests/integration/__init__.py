"""
wark — integration test package

File: tests/integration/__init__.py

Purpose
- Test package marker for subprocess-level CLI contracts.

Functional requirements
- Must not import heavy modules at import time; keep test collection fast.
- Must not touch the user's real store; every test works under ``tmp_path``.
"""
