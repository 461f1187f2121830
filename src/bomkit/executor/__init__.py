"""Chunk planning, polling, idempotency and sequential execution."""
from __future__ import annotations

from bomkit.executor.executor import (
    MAX_CHUNK_SIZE,
    RELIABLE_BATCH_SIZE,
    ApplyOptions,
    ChunkedExecutor,
    apply_manifest,
    plan_chunks,
    plan_execution,
)
from bomkit.executor.idempotency import IdempotencyCoordinator, chunk_idempotency_key
from bomkit.executor.polling import OperationPoller, PollOutcome, PollState
from bomkit.executor.results import (
    ApplyResult,
    ChunkResult,
    ChunkStatus,
    ExecutionPlan,
    OperationResult,
    RecoverySnapshot,
)

__all__ = [
    "MAX_CHUNK_SIZE",
    "RELIABLE_BATCH_SIZE",
    "ApplyOptions",
    "ApplyResult",
    "ChunkResult",
    "ChunkStatus",
    "ChunkedExecutor",
    "ExecutionPlan",
    "IdempotencyCoordinator",
    "OperationPoller",
    "OperationResult",
    "PollOutcome",
    "PollState",
    "RecoverySnapshot",
    "apply_manifest",
    "chunk_idempotency_key",
    "plan_chunks",
    "plan_execution",
]
