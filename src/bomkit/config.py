"""Runtime settings read from the environment.

=========================  =======================  ==================
Variable                   Default                  Accepted range
=========================  =======================  ==================
``BOMKIT_BASE_URL``        ``http://127.0.0.1:8765``  any http(s) URL
``BOMKIT_TIMEOUT_MS``      30000                    1000 – 120000
``BOMKIT_CHUNK_SIZE``      8                        1 – 1000
``BOMKIT_POLL_INTERVAL_MS``  500                    50 – 60000
``BOMKIT_POLL_TIMEOUT_MS``   120000                 1000 – 3600000
=========================  =======================  ==================

Values that are missing, unparseable or out of range fall back to the
default with a logged warning.  Command-line options override these.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8765"
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_CHUNK_SIZE = 8
DEFAULT_POLL_INTERVAL_MS = 500
DEFAULT_POLL_TIMEOUT_MS = 120_000


@dataclass(frozen=True)
class Settings:
    """Resolved runtime settings."""

    base_url: str = DEFAULT_BASE_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


def _int_setting(env: Mapping[str, str], name: str, default: int, low: int, high: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer; using %d", name, raw, default)
        return default
    if not low <= value <= high:
        logger.warning("Ignoring %s=%d: outside %d..%d; using %d", name, value, low, high, default)
        return default
    return value


def _base_url(env: Mapping[str, str]) -> str:
    raw = (env.get("BOMKIT_BASE_URL") or "").strip()
    if not raw:
        return DEFAULT_BASE_URL
    if not raw.startswith(("http://", "https://")):
        logger.warning("Ignoring BOMKIT_BASE_URL=%r: not an http(s) URL", raw)
        return DEFAULT_BASE_URL
    return raw.rstrip("/")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build ``Settings`` from ``environ`` (defaults to ``os.environ``)."""
    env = os.environ if environ is None else environ
    return Settings(
        base_url=_base_url(env),
        timeout_ms=_int_setting(env, "BOMKIT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS, 1_000, 120_000),
        chunk_size=_int_setting(env, "BOMKIT_CHUNK_SIZE", DEFAULT_CHUNK_SIZE, 1, 1_000),
        poll_interval_ms=_int_setting(
            env, "BOMKIT_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS, 50, 60_000
        ),
        poll_timeout_ms=_int_setting(
            env, "BOMKIT_POLL_TIMEOUT_MS", DEFAULT_POLL_TIMEOUT_MS, 1_000, 3_600_000
        ),
    )
