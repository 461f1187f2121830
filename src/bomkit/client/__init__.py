"""HTTP client for the remote modeling service."""
from __future__ import annotations

from bomkit.client.api import ModelApiClient

__all__ = ["ModelApiClient"]
