"""
wark — package root

File: src/wark/__init__.py

Purpose
- Package root for the wark ticket lifecycle tracker.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
