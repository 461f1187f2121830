"""bomkit CLI package."""
from __future__ import annotations

from bomkit.cli.main import cli

__all__ = ["cli"]
