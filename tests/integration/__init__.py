"""Integration tests.

These drive several manifests through load, apply and the CLI against the
in-memory modeling service from ``tests/conftest.py``.  Run only the fast
per-module tests with ``pytest tests/unit/``.
"""
