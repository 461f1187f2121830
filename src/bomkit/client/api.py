"""HTTP client for the remote modeling service.

``ModelApiClient`` wraps a synchronous ``httpx.Client`` and maps every
response onto either a decoded JSON object or one of the ``bomkit.errors``
exceptions:

- transport failures (connection refused, read timeout) → ``ApiConnectionError``
- HTTP 429 → ``RateLimitError``, retried with exponential backoff
- HTTP 409 with an idempotency error code → ``IdempotencyConflictError``
- any other 4xx/5xx → ``ApiError`` carrying the server's ``{error: {code, message}}``
- a 2xx body that is not a JSON object → ``MalformedResponseError``

Usage
-----
::

    from bomkit.client import ModelApiClient

    with ModelApiClient("http://127.0.0.1:8765") as client:
        accepted = client.apply([{"op": "createElement", "type": "business-actor", "name": "A"}])
        status = client.operation_status(accepted["operationId"])
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from bomkit.errors import (
    IDEMPOTENCY_CONFLICT,
    ApiConnectionError,
    ApiError,
    IdempotencyConflictError,
    MalformedResponseError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_BASE = 0.5
MAX_BACKOFF = 30.0

_IDEMPOTENCY_CODES = frozenset({IDEMPOTENCY_CONFLICT, "IDEMPOTENCY_KEY_CONFLICT", "IDEMPOTENCY_MISMATCH"})


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ModelApiClient:
    """Client for the modeling service's HTTP API.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``http://127.0.0.1:8765``.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport; tests pass an ``httpx.MockTransport``.
    max_retries:
        How many times a rate-limited request is retried before
        ``RateLimitError`` propagates.
    backoff_base:
        Base delay in seconds; attempt *n* waits ``backoff_base * 2**n``
        unless the server sent ``Retry-After``.
    sleep:
        Sleep function used between retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "ModelApiClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def apply(
        self,
        changes: list[dict[str, Any]],
        *,
        idempotency_key: str | None = None,
        duplicate_strategy: str | None = None,
    ) -> dict[str, Any]:
        """Submit a batch of changes; returns ``{operationId, status, ...}``."""
        body: dict[str, Any] = {"changes": changes}
        if idempotency_key:
            body["idempotencyKey"] = idempotency_key
        if duplicate_strategy:
            body["duplicateStrategy"] = duplicate_strategy
        return self._request("POST", "/model/apply", json=body)

    def operation_status(self, operation_id: str) -> dict[str, Any]:
        """Return ``{status, result?, error?, errorDetails?}`` for an async operation."""
        return self._request("GET", "/ops/status", params={"opId": operation_id})

    def get_element(self, element_id: str) -> dict[str, Any]:
        """Return details of an element or relationship, including ``source``/``target``."""
        return self._request("GET", f"/model/element/{element_id}")

    def query_model(self, limit: int = 10) -> dict[str, Any]:
        """Return the service's model summary."""
        return self._request("POST", "/model/query", json={"limit": limit})

    def diagnostics(self) -> dict[str, Any]:
        """Return the service's model integrity diagnostics."""
        return self._request("GET", "/model/diagnostics")

    def search(self, name_pattern: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Return ``[{id, name, type}]`` for concepts whose name matches ``name_pattern``."""
        data = self._request("POST", "/model/search", json={"namePattern": name_pattern, "limit": limit})
        results = data.get("results", [])
        if not isinstance(results, list):
            raise MalformedResponseError("Search response 'results' is not a list")
        return [r for r in results if isinstance(r, dict)]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        retry_count = 0
        while True:
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TransportError as err:
                raise ApiConnectionError(
                    f"Cannot reach modeling service at {self.base_url}: {err}"
                ) from err
            try:
                return self._handle_response(response)
            except RateLimitError as err:
                retry_count += 1
                if retry_count > self._max_retries:
                    raise
                delay = err.retry_after
                if delay is None:
                    delay = min(self._backoff_base * (2 ** retry_count), MAX_BACKOFF)
                logger.warning(
                    "Rate limited on %s %s; retrying in %.2fs (attempt %d/%d)",
                    method,
                    path,
                    delay,
                    retry_count,
                    self._max_retries,
                )
                self._sleep(delay)

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 429:
            raise RateLimitError(retry_after=_parse_retry_after(response.headers.get("Retry-After")))

        if response.status_code >= 400:
            code, message, details = self._error_payload(response)
            if response.status_code == 409 and code in _IDEMPOTENCY_CODES:
                raise IdempotencyConflictError(
                    message, status_code=409, details=details
                )
            raise ApiError(
                message,
                status_code=response.status_code,
                details={"code": code, **({"details": details} if details is not None else {})},
            )

        try:
            data = response.json()
        except ValueError as err:
            raise MalformedResponseError(
                f"Invalid JSON from {response.request.url.path}", status_code=response.status_code
            ) from err
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected a JSON object from {response.request.url.path}",
                status_code=response.status_code,
            )
        return data

    @staticmethod
    def _error_payload(response: httpx.Response) -> tuple[str | None, str, Any]:
        fallback = f"API error: {response.status_code}"
        try:
            data = response.json()
        except ValueError:
            return None, fallback, None
        if not isinstance(data, dict):
            return None, fallback, None
        error = data.get("error")
        if isinstance(error, dict):
            return (
                error.get("code") if isinstance(error.get("code"), str) else None,
                str(error.get("message") or fallback),
                error.get("details"),
            )
        if isinstance(error, str):
            return data.get("code") if isinstance(data.get("code"), str) else None, error, None
        message = data.get("message")
        return None, str(message) if message else fallback, None
