"""Result types produced by the chunked executor."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bomkit.crossval.validator import CrossValidationSummary


class ChunkStatus(Enum):
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class OperationResult:
    """One row of a completed chunk's result."""

    op: str | None
    temp_id: str | None = None
    real_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op}
        if self.temp_id is not None:
            data["tempId"] = self.temp_id
        if self.real_id is not None:
            data["realId"] = self.real_id
        return data


@dataclass
class ChunkResult:
    """Outcome of one chunk.

    Parameters
    ----------
    index:
        1-based chunk number.
    size:
        Number of operations in the chunk.
    status:
        Terminal status of the chunk.
    operation_id:
        Remote asynchronous operation ID, once the chunk was accepted.
    idempotency_key:
        Key sent with the chunk, if any.
    rows:
        Result rows of a completed chunk.
    error:
        ``{code, message, details?}`` for a failed chunk.
    replayed:
        ``True`` when the service reported an idempotent replay.
    new_symbols:
        Number of symbol mappings this chunk added.
    cross_validation:
        Connection checks run before submission.
    poll_attempts:
        Number of status requests made.
    """

    index: int
    size: int
    status: ChunkStatus
    operation_id: str | None = None
    idempotency_key: str | None = None
    rows: list[OperationResult] = field(default_factory=list)
    error: dict[str, Any] | None = None
    replayed: bool = False
    new_symbols: int = 0
    cross_validation: CrossValidationSummary | None = None
    poll_attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status is ChunkStatus.COMPLETE

    @property
    def failed(self) -> bool:
        return self.status in (ChunkStatus.ERROR, ChunkStatus.TIMEOUT)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "size": self.size,
            "status": self.status.value,
        }
        if self.operation_id is not None:
            data["operationId"] = self.operation_id
        if self.idempotency_key is not None:
            data["idempotencyKey"] = self.idempotency_key
        if self.status is not ChunkStatus.NOT_ATTEMPTED:
            data["replayed"] = self.replayed
            data["newSymbols"] = self.new_symbols
            data["pollAttempts"] = self.poll_attempts
            data["rows"] = [r.to_dict() for r in self.rows]
        if self.error is not None:
            data["error"] = self.error
        if self.cross_validation is not None and self.cross_validation.checks:
            data["crossValidation"] = self.cross_validation.to_dict()
        return data


NEXT_STEP_HINT = (
    "Re-read model state, reconcile expected vs actual deltas, "
    "and resume with minimal targeted batches."
)


@dataclass
class RecoverySnapshot:
    """Diagnostic bundle captured at the first failing chunk."""

    failed_chunk: int
    error: str
    chunks_completed: int
    resolved_symbols: int
    total_operations: int
    operation_id: str | None = None
    error_code: str | None = None
    error_details: Any = None
    model: dict[str, Any] | None = None
    model_read_error: str | None = None
    diagnostics: dict[str, Any] | None = None
    diagnostics_read_error: str | None = None
    next_step: str = NEXT_STEP_HINT

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mode": "targeted_recovery",
            "failedChunk": self.failed_chunk,
            "operationId": self.operation_id,
            "error": self.error,
            "errorCode": self.error_code,
            "chunksCompleted": self.chunks_completed,
            "resolvedTempIds": self.resolved_symbols,
            "totalOperations": self.total_operations,
            "nextStep": self.next_step,
        }
        if self.error_details is not None:
            data["errorDetails"] = self.error_details
        if self.model is not None:
            data["model"] = self.model
        if self.model_read_error is not None:
            data["modelReadError"] = self.model_read_error
        if self.diagnostics is not None:
            data["diagnostics"] = self.diagnostics
        if self.diagnostics_read_error is not None:
            data["diagnosticsReadError"] = self.diagnostics_read_error
        return data


@dataclass
class ApplyResult:
    """Everything an apply produced."""

    status: str
    total_operations: int
    chunk_size: int
    chunks: list[ChunkResult] = field(default_factory=list)
    symbols: dict[str, str] = field(default_factory=dict)
    recovery: RecoverySnapshot | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed: float = 0.0
    sidecar_path: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "complete"

    def _count(self, *statuses: ChunkStatus) -> int:
        return sum(1 for c in self.chunks if c.status in statuses)

    @property
    def chunks_submitted(self) -> int:
        return sum(1 for c in self.chunks if c.operation_id is not None)

    @property
    def chunks_completed(self) -> int:
        return self._count(ChunkStatus.COMPLETE)

    @property
    def chunks_failed(self) -> int:
        return self._count(ChunkStatus.ERROR, ChunkStatus.TIMEOUT)

    @property
    def chunks_not_attempted(self) -> int:
        return self._count(ChunkStatus.NOT_ATTEMPTED)

    @property
    def new_symbols(self) -> int:
        return sum(c.new_symbols for c in self.chunks)

    @property
    def rows(self) -> list[OperationResult]:
        return [row for c in self.chunks for row in c.rows]

    @property
    def cross_validation(self) -> list[CrossValidationSummary]:
        return [
            c.cross_validation
            for c in self.chunks
            if c.cross_validation is not None and c.cross_validation.checks
        ]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "totalOperations": self.total_operations,
            "chunkSize": self.chunk_size,
            "totalChunks": len(self.chunks),
            "chunksSubmitted": self.chunks_submitted,
            "chunksCompleted": self.chunks_completed,
            "chunksFailed": self.chunks_failed,
            "chunksNotAttempted": self.chunks_not_attempted,
            "newSymbols": self.new_symbols,
            "symbols": dict(self.symbols),
            "results": [r.to_dict() for r in self.rows],
            "chunks": [c.to_dict() for c in self.chunks],
            "crossValidation": [s.to_dict() for s in self.cross_validation],
            "elapsedSeconds": round(self.elapsed, 3),
        }
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if self.recovery is not None:
            data["recovery"] = self.recovery.to_dict()
        if self.sidecar_path is not None:
            data["sidecar"] = self.sidecar_path
        return data


@dataclass
class ExecutionPlan:
    """What an apply would submit, without touching the network."""

    total_operations: int
    chunk_size: int
    chunks: list[list[str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dryRun": True,
            "totalOperations": self.total_operations,
            "chunkSize": self.chunk_size,
            "totalChunks": len(self.chunks),
            "chunks": [
                {"index": i, "size": len(ops), "ops": ops}
                for i, ops in enumerate(self.chunks, start=1)
            ],
        }
