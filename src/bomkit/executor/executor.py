"""Chunked, sequential execution of a validated manifest.

The operation list is cut into ordered chunks of at most ``chunk_size``
operations.  For each chunk in turn the executor:

1. substitutes every symbol the table already resolves,
2. cross-validates view connections (swapping reversed endpoints),
3. submits the chunk with its derived idempotency key,
4. polls the remote operation until it settles,
5. records the new symbol mappings from the result rows.

The first chunk that fails or times out stops the run: the remaining
chunks are reported as not attempted and a ``RecoverySnapshot`` is
captured.  Completed chunks are never rolled back.

Usage
-----
::

    from bomkit.executor import ApplyOptions, ChunkedExecutor

    executor = ChunkedExecutor(client, ApplyOptions(chunk_size=4))
    result = executor.execute(composed.operations, composed.symbols.copy())
    result.status            # "complete" or "partial_error"
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from bomkit.client.api import ModelApiClient
from bomkit.crossval.validator import (
    ConnectionCrossValidator,
    CrossValidationSummary,
    RelationshipCache,
    build_visual_bindings,
)
from bomkit.errors import (
    CHUNK_FAILED,
    CHUNK_SUBMIT_FAILED,
    CHUNK_TIMEOUT,
    IDEMPOTENCY_CONFLICT,
    MALFORMED_RESPONSE,
    ApiError,
    BomError,
    IdempotencyConflictError,
    SymbolConflictError,
)
from bomkit.executor.idempotency import IdempotencyCoordinator
from bomkit.executor.polling import OperationPoller, PollState
from bomkit.executor.results import (
    ApplyResult,
    ChunkResult,
    ChunkStatus,
    ExecutionPlan,
    OperationResult,
    RecoverySnapshot,
)
from bomkit.manifest.nodes import DuplicateStrategy, Operation
from bomkit.resolver.sidecar import default_sidecar_path, save_sidecar
from bomkit.resolver.substitution import extract_mappings, realized_id, substitute_all
from bomkit.resolver.symbols import SymbolTable
from bomkit.validator.validator import Validator

if TYPE_CHECKING:
    from bomkit.config import Settings
    from bomkit.manifest.loader import ComposedManifest

logger = logging.getLogger(__name__)

RELIABLE_BATCH_SIZE = 8
MAX_CHUNK_SIZE = 1000

_REMOTE_IDEMPOTENCY_CODES = frozenset({IDEMPOTENCY_CONFLICT, "IDEMPOTENCY_KEY_CONFLICT", "IDEMPOTENCY_MISMATCH"})

ProgressCallback = Callable[[int, int, str, int], None]


def plan_chunks(operations: Sequence[Operation], chunk_size: int) -> list[list[Operation]]:
    """Cut ``operations`` into ordered chunks of at most ``chunk_size``.

    Raises
    ------
    ValueError
        If ``chunk_size`` is outside ``1..MAX_CHUNK_SIZE``.
    """
    if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {chunk_size}")
    return [list(operations[i:i + chunk_size]) for i in range(0, len(operations), chunk_size)]


def plan_execution(operations: Sequence[Operation], chunk_size: int = RELIABLE_BATCH_SIZE) -> ExecutionPlan:
    """Describe the chunks an apply would submit, for dry runs."""
    chunks = plan_chunks(operations, chunk_size)
    return ExecutionPlan(
        total_operations=len(operations),
        chunk_size=chunk_size,
        chunks=[[op.op for op in chunk] for chunk in chunks],
    )


@dataclass(frozen=True)
class ApplyOptions:
    """Knobs for one apply.

    Parameters
    ----------
    chunk_size:
        Maximum operations per chunk.
    poll_interval:
        Seconds between status polls.
    poll_timeout:
        Seconds to wait for one chunk before giving up.
    idempotency_key:
        Base idempotency key; overrides the manifest's.
    duplicate_strategy:
        Request-level duplicate strategy; overrides the manifest's.
    cross_validate:
        Run connection cross-validation before each submission.
    save_ids:
        Write the side-car symbol file after the apply.
    sidecar_path:
        Explicit side-car path; defaults to ``<manifest stem>.ids.json``.
    on_progress:
        Optional ``(chunk, total, status, attempt)`` callback.
    """

    chunk_size: int = RELIABLE_BATCH_SIZE
    poll_interval: float = 0.5
    poll_timeout: float = 120.0
    idempotency_key: str | None = None
    duplicate_strategy: DuplicateStrategy | None = None
    cross_validate: bool = True
    save_ids: bool = True
    sidecar_path: Path | None = None
    on_progress: ProgressCallback | None = None

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> "ApplyOptions":
        """Build options from environment ``Settings``; ``None`` overrides are ignored."""
        options = cls(
            chunk_size=settings.chunk_size,
            poll_interval=settings.poll_interval_ms / 1000,
            poll_timeout=settings.poll_timeout_ms / 1000,
        )
        given = {k: v for k, v in overrides.items() if v is not None}
        return replace(options, **given) if given else options


class ChunkedExecutor:
    """Submit operations chunk by chunk and track symbol resolution.

    Parameters
    ----------
    client:
        The modeling service client.
    options:
        Apply options.
    clock:
        Monotonic clock, injected for tests.
    sleep:
        Sleep function, injected for tests.
    """

    def __init__(
        self,
        client: ModelApiClient,
        options: ApplyOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._options = options or ApplyOptions()
        self._clock = clock
        self._sleep = sleep

    @property
    def options(self) -> ApplyOptions:
        return self._options

    def plan(self, operations: Sequence[Operation]) -> ExecutionPlan:
        """Return the chunk layout without contacting the service."""
        return plan_execution(operations, self._options.chunk_size)

    def execute(self, operations: Sequence[Operation], symbols: SymbolTable) -> ApplyResult:
        """Apply ``operations`` in order, growing ``symbols`` as chunks complete.

        Parameters
        ----------
        operations:
            Validated operations in composition order.
        symbols:
            Symbol table to resolve against; it is updated in place.

        Returns
        -------
        ApplyResult
            Per-chunk results, the final symbol table and, on failure, a
            recovery snapshot.
        """
        options = self._options
        start = self._clock()
        ops = list(operations)
        result = ApplyResult(
            status="complete", total_operations=len(ops), chunk_size=options.chunk_size
        )
        if not ops:
            message = "Manifest has no operations; nothing to apply"
            logger.warning("%s", message)
            result.warnings.append(message)
            result.symbols = symbols.as_dict()
            return result

        chunks = plan_chunks(ops, options.chunk_size)
        total = len(chunks)
        cache = RelationshipCache(self._client.get_element)
        crossval = ConnectionCrossValidator(cache, build_visual_bindings(ops))
        coordinator = IdempotencyCoordinator(options.idempotency_key, options.duplicate_strategy)
        logger.debug("Applying %d operations in %d chunks of up to %d", len(ops), total, options.chunk_size)

        offset = 0
        for number, chunk in enumerate(chunks, start=1):
            positions = list(range(offset, offset + len(chunk)))
            offset += len(chunk)
            chunk_result = self._run_chunk(
                number, total, chunk, positions, symbols, crossval, coordinator
            )
            result.chunks.append(chunk_result)
            if chunk_result.succeeded:
                continue

            result.status = "partial_error"
            for later in range(number + 1, total + 1):
                result.chunks.append(
                    ChunkResult(
                        index=later,
                        size=len(chunks[later - 1]),
                        status=ChunkStatus.NOT_ATTEMPTED,
                        idempotency_key=coordinator.key_for_chunk(later, total),
                    )
                )
            result.recovery = self._recovery_snapshot(chunk_result, result, symbols)
            break

        cache.clear()
        result.symbols = symbols.as_dict()
        result.elapsed = self._clock() - start
        return result

    # ------------------------------------------------------------------
    # One chunk
    # ------------------------------------------------------------------

    def _progress(self, number: int, total: int, status: str, attempt: int) -> None:
        if self._options.on_progress is not None:
            self._options.on_progress(number, total, status, attempt)

    def _run_chunk(
        self,
        number: int,
        total: int,
        chunk: list[Operation],
        positions: list[int],
        symbols: SymbolTable,
        crossval: ConnectionCrossValidator,
        coordinator: IdempotencyCoordinator,
    ) -> ChunkResult:
        options = self._options
        key = coordinator.key_for_chunk(number, total)
        outcome = ChunkResult(index=number, size=len(chunk), status=ChunkStatus.ERROR, idempotency_key=key)

        def _fail(code: str, message: str, details: Any = None, status=ChunkStatus.ERROR) -> ChunkResult:
            logger.warning("Chunk %d/%d failed [%s]: %s", number, total, code, message)
            outcome.status = status
            outcome.error = {"code": code, "message": message}
            if details is not None:
                outcome.error["details"] = details
            self._progress(number, total, status.value, outcome.poll_attempts)
            return outcome

        submitted = substitute_all(chunk, symbols)
        if options.cross_validate:
            submitted, summary = crossval.validate_chunk(chunk, submitted, symbols, number, positions)
        else:
            summary = CrossValidationSummary(chunk=number)
        outcome.cross_validation = summary

        self._progress(number, total, "submitting", 0)
        try:
            accepted = self._client.apply(
                [op.to_dict() for op in submitted],
                idempotency_key=key,
                duplicate_strategy=coordinator.strategy_for_chunk(),
            )
        except IdempotencyConflictError as exc:
            return _fail(IDEMPOTENCY_CONFLICT, exc.message, exc.details)
        except ApiError as exc:
            return _fail(
                CHUNK_SUBMIT_FAILED,
                f"Chunk {number}/{total} submission failed: {exc.message}",
                exc.to_dict(),
            )

        operation_id = accepted.get("operationId")
        if not isinstance(operation_id, str) or not operation_id:
            return _fail(
                CHUNK_SUBMIT_FAILED,
                f"Chunk {number}/{total} was not accepted: response has no operationId",
                {"code": MALFORMED_RESPONSE, "response": accepted},
            )
        outcome.operation_id = operation_id
        outcome.replayed = _is_replay(accepted)

        poller = OperationPoller(
            self._client.operation_status,
            interval=options.poll_interval,
            timeout=options.poll_timeout,
            clock=self._clock,
            sleep=self._sleep,
            on_progress=lambda _op, status, attempt: self._progress(number, total, status, attempt),
        )
        try:
            polled = poller.wait(operation_id)
        except ApiError as exc:
            return _fail(
                CHUNK_FAILED,
                f"Polling chunk {number}/{total} failed: {exc.message}",
                exc.to_dict(),
            )
        outcome.poll_attempts = polled.attempts

        if polled.state is PollState.TIMED_OUT:
            return _fail(CHUNK_TIMEOUT, polled.error or "timed out", status=ChunkStatus.TIMEOUT)
        if polled.state is PollState.ERROR:
            code = (
                IDEMPOTENCY_CONFLICT
                if polled.error_code in _REMOTE_IDEMPOTENCY_CODES
                else CHUNK_FAILED
            )
            return _fail(code, polled.error or f"Chunk {number}/{total} failed", polled.error_details)

        rows = polled.rows
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            return _fail(
                CHUNK_FAILED,
                f"Chunk {number}/{total} completed with a malformed result",
                {"code": MALFORMED_RESPONSE, "result": rows},
            )
        outcome.replayed = outcome.replayed or _is_replay(polled.body or {})
        outcome.rows = [_row(row, submitted, i) for i, row in enumerate(rows)]

        try:
            for temp_id, real_id in extract_mappings(rows):
                if symbols.define(temp_id, real_id, origin=f"chunk {number}"):
                    outcome.new_symbols += 1
        except SymbolConflictError as exc:
            return _fail(exc.code, exc.message, exc.details)

        unresolved = [
            op.temp_id
            for op in chunk
            if op.creates is not None and op.temp_id and op.temp_id not in symbols
        ]
        if unresolved:
            logger.warning(
                "Chunk %d/%d returned no real ID for: %s", number, total, ", ".join(unresolved)
            )

        outcome.status = ChunkStatus.COMPLETE
        logger.info(
            "Chunk %d/%d complete (%d operations, %d new symbols%s)",
            number,
            total,
            len(chunk),
            outcome.new_symbols,
            ", replayed" if outcome.replayed else "",
        )
        self._progress(number, total, ChunkStatus.COMPLETE.value, outcome.poll_attempts)
        return outcome

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _recovery_snapshot(
        self, failed: ChunkResult, result: ApplyResult, symbols: SymbolTable
    ) -> RecoverySnapshot:
        error = failed.error or {}
        snapshot = RecoverySnapshot(
            failed_chunk=failed.index,
            operation_id=failed.operation_id,
            error=str(error.get("message", "")),
            error_code=error.get("code"),
            error_details=error.get("details"),
            chunks_completed=result.chunks_completed,
            resolved_symbols=len(symbols),
            total_operations=result.total_operations,
        )
        snapshot.model, snapshot.model_read_error = self._best_effort(self._client.query_model)
        snapshot.diagnostics, snapshot.diagnostics_read_error = self._best_effort(
            self._client.diagnostics
        )
        return snapshot

    @staticmethod
    def _best_effort(read: Callable[[], dict[str, Any]]) -> tuple[dict[str, Any] | None, str | None]:
        try:
            return read(), None
        except BomError as exc:
            logger.warning("Recovery snapshot read failed: %s", exc.message)
            return None, exc.message
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while collecting the recovery snapshot")
            return None, str(exc)


def _is_replay(body: dict[str, Any]) -> bool:
    marker = body.get("idempotency")
    if isinstance(marker, dict):
        return bool(marker.get("replayed"))
    return bool(body.get("replayed"))


def _row(row: dict[str, Any], submitted: list[Operation], index: int) -> OperationResult:
    op = row.get("op")
    if not isinstance(op, str):
        op = submitted[index].op if index < len(submitted) else None
    temp_id = row.get("tempId")
    return OperationResult(
        op=op,
        temp_id=temp_id if isinstance(temp_id, str) else None,
        real_id=realized_id(row),
    )


# ---------------------------------------------------------------------------
# Whole-manifest entry point
# ---------------------------------------------------------------------------


def apply_manifest(
    composed: "ComposedManifest",
    client: ModelApiClient,
    options: ApplyOptions | None = None,
    *,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ApplyResult:
    """Validate ``composed`` and apply it.

    The manifest's ``idempotencyKey`` and ``duplicateStrategy`` are used
    unless ``options`` sets its own.  The seeded symbol table of
    ``composed`` is copied, not modified.

    Raises
    ------
    InvalidManifestError
        If static validation finds any error.  Nothing is submitted.
    """
    Validator().check(composed)
    options = options or ApplyOptions()
    options = replace(
        options,
        idempotency_key=options.idempotency_key or composed.idempotency_key,
        duplicate_strategy=options.duplicate_strategy or composed.duplicate_strategy,
    )
    executor = ChunkedExecutor(client, options, clock=clock, sleep=sleep)
    result = executor.execute(composed.operations, composed.symbols.copy())
    result.warnings[:0] = composed.warnings

    if options.save_ids and result.new_symbols > 0:
        path = options.sidecar_path or default_sidecar_path(composed.root)
        save_sidecar(path, result.symbols)
        result.sidecar_path = str(path)
    return result
