"""Per-chunk idempotency keys and duplicate strategy.

A base key ``K`` applied in ``T`` chunks yields ``K:chunk:1:of:T`` …
``K:chunk:T:of:T``.  The derivation is deterministic, so re-running the
same manifest with the same key replays chunks the service has already
executed.  Derived keys longer than the service limit keep a prefix of the
base key and a digest of the full derived key.

The request-level strategy goes on every chunk.  An operation's own
``onDuplicate`` stays in its fields and the service gives it precedence.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass

from bomkit.manifest.nodes import DuplicateStrategy
from bomkit.manifest.schema import IDEMPOTENCY_KEY_MAX_LENGTH

_DIGEST_LENGTH = 16


def chunk_idempotency_key(base: str, index: int, total: int) -> str:
    """Derive the key for chunk ``index`` (1-based) of ``total``."""
    suffix = f":chunk:{index}:of:{total}"
    key = f"{base}{suffix}"
    if len(key) <= IDEMPOTENCY_KEY_MAX_LENGTH:
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    room = IDEMPOTENCY_KEY_MAX_LENGTH - len(suffix) - len(digest) - 1
    return f"{base[:room]}-{digest}{suffix}"


@dataclass(frozen=True)
class IdempotencyCoordinator:
    """Attach idempotency keys and the duplicate strategy to chunks.

    Parameters
    ----------
    base_key:
        Base idempotency key, or ``None`` to send no key.
    duplicate_strategy:
        Request-level duplicate strategy, or ``None`` for the service default.
    """

    base_key: str | None = None
    duplicate_strategy: DuplicateStrategy | None = None

    def key_for_chunk(self, index: int, total: int) -> str | None:
        if self.base_key is None:
            return None
        return chunk_idempotency_key(self.base_key, index, total)

    def strategy_for_chunk(self) -> str | None:
        return self.duplicate_strategy.value if self.duplicate_strategy else None
