"""Exception hierarchy and machine-readable error codes for bomkit.

Static problems with a manifest (bad schema, ordering, namespaces) are
reported as ``Diagnostic`` lists and never raised one at a time.  The
exceptions below are reserved for conditions that stop a command:
composition failures, fatal remote failures, and malformed responses.

Every exception carries a ``code`` from the fixed taxonomy so that the CLI
can render a stable ``{code, message, details}`` error envelope.
"""
from __future__ import annotations

from typing import Any

INVALID_BOM = "INVALID_BOM"
CIRCULAR_INCLUDE = "CIRCULAR_INCLUDE"
DUPLICATE_SYMBOL = "DUPLICATE_SYMBOL"
IDFILES_INCOMPLETE = "IDFILES_INCOMPLETE"
NAMESPACE_MISMATCH = "NAMESPACE_MISMATCH"
CHUNK_SUBMIT_FAILED = "CHUNK_SUBMIT_FAILED"
CHUNK_FAILED = "CHUNK_FAILED"
CHUNK_TIMEOUT = "CHUNK_TIMEOUT"
CROSS_VALIDATION_MISMATCH = "CROSS_VALIDATION_MISMATCH"
IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
API_ERROR = "API_ERROR"
API_UNREACHABLE = "API_UNREACHABLE"
RATE_LIMITED = "RATE_LIMITED"
MALFORMED_RESPONSE = "MALFORMED_RESPONSE"


class BomError(Exception):
    """Base class for every error raised by bomkit.

    Parameters
    ----------
    message:
        Human-readable description of the failure.
    code:
        Overrides the class-level machine-readable code.
    details:
        Optional JSON-compatible payload with extra context.
    """

    code: str = INVALID_BOM

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        self.message = message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Return the ``{code, message, details?}`` error payload."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# Composition / static errors
# ---------------------------------------------------------------------------


class ManifestLoadError(BomError):
    """Raised when a manifest file cannot be read or parsed."""

    code = INVALID_BOM


class CircularIncludeError(ManifestLoadError):
    """Raised when the include graph of a manifest contains a cycle."""

    code = CIRCULAR_INCLUDE

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(
            f"Include cycle detected: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )


class IdFilesIncompleteError(ManifestLoadError):
    """Raised when declared idFiles are missing or malformed and no override is set."""

    code = IDFILES_INCOMPLETE

    def __init__(self, missing: list[str], malformed: list[str], next_steps: list[str]) -> None:
        self.missing = missing
        self.malformed = malformed
        parts = []
        if missing:
            parts.append(f"{len(missing)} missing")
        if malformed:
            parts.append(f"{len(malformed)} malformed")
        super().__init__(
            f"Declared idFiles are incomplete ({', '.join(parts)})",
            details={"missing": missing, "malformed": malformed, "nextSteps": next_steps},
        )


class InvalidManifestError(BomError):
    """Raised with the aggregated diagnostics of a manifest that failed validation."""

    code = INVALID_BOM

    def __init__(self, message: str, diagnostics: list[Any]) -> None:
        self.diagnostics = diagnostics
        super().__init__(
            message,
            details={"errors": [d.to_dict() for d in diagnostics]},
        )


class SymbolConflictError(BomError):
    """Raised when a symbol would be re-bound to a different real ID."""

    code = DUPLICATE_SYMBOL

    def __init__(self, symbol: str, existing: str, new: str, origin: str | None = None) -> None:
        self.symbol = symbol
        self.existing = existing
        self.new = new
        where = f" (first bound by {origin})" if origin else ""
        super().__init__(
            f"Symbol {symbol!r} is already bound to {existing!r}{where}; "
            f"refusing to re-bind it to {new!r}",
            details={"symbol": symbol, "existing": existing, "new": new, "origin": origin},
        )


# ---------------------------------------------------------------------------
# Remote service errors
# ---------------------------------------------------------------------------


class ApiError(BomError):
    """Raised when the remote modeling service answers with an error.

    Parameters
    ----------
    status_code:
        HTTP status code, or ``None`` when no response was received.
    """

    code = API_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, code=code, details=details)


class ApiConnectionError(ApiError):
    """Raised when the remote service cannot be reached at all."""

    code = API_UNREACHABLE


class RateLimitError(ApiError):
    """Raised on HTTP 429; ``retry_after`` is the server hint in seconds, if any."""

    code = RATE_LIMITED

    def __init__(self, retry_after: float | None = None, *, status_code: int = 429) -> None:
        self.retry_after = retry_after
        hint = f" (retry after {retry_after}s)" if retry_after is not None else ""
        super().__init__(f"Rate limited by the modeling service{hint}", status_code=status_code)


class IdempotencyConflictError(ApiError):
    """Raised when an idempotency key is reused with a different payload."""

    code = IDEMPOTENCY_CONFLICT


class MalformedResponseError(ApiError):
    """Raised when the remote service returns a body of an unexpected shape."""

    code = MALFORMED_RESPONSE


__all__ = [
    "INVALID_BOM",
    "CIRCULAR_INCLUDE",
    "DUPLICATE_SYMBOL",
    "IDFILES_INCOMPLETE",
    "NAMESPACE_MISMATCH",
    "CHUNK_SUBMIT_FAILED",
    "CHUNK_FAILED",
    "CHUNK_TIMEOUT",
    "CROSS_VALIDATION_MISMATCH",
    "IDEMPOTENCY_CONFLICT",
    "API_ERROR",
    "API_UNREACHABLE",
    "RATE_LIMITED",
    "MALFORMED_RESPONSE",
    "BomError",
    "ManifestLoadError",
    "CircularIncludeError",
    "IdFilesIncompleteError",
    "InvalidManifestError",
    "SymbolConflictError",
    "ApiError",
    "ApiConnectionError",
    "RateLimitError",
    "IdempotencyConflictError",
    "MalformedResponseError",
]
