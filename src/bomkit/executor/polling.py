"""Polling an asynchronous remote operation until it settles.

``OperationPoller`` is a small state machine::

    PENDING ──> POLLING ──> COMPLETE
                   │  └───> ERROR
                   └──────> TIMED_OUT

Each step fetches the status once; non-terminal statuses sleep for the
poll interval (never past the deadline) and poll again.  The clock and
sleep functions are injected so tests run without waiting.

Usage
-----
::

    poller = OperationPoller(client.operation_status, interval=0.5, timeout=120)
    outcome = poller.wait("op-123")
    if outcome.state is PollState.COMPLETE:
        rows = outcome.rows
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from bomkit.errors import MalformedResponseError

logger = logging.getLogger(__name__)

COMPLETE_STATUSES = frozenset({"complete", "completed", "success"})
ERROR_STATUSES = frozenset({"error", "failed"})
RUNNING_STATUSES = frozenset({"queued", "pending", "processing", "running"})


class PollState(Enum):
    """States of one poll."""

    PENDING = auto()
    POLLING = auto()
    COMPLETE = auto()
    ERROR = auto()
    TIMED_OUT = auto()

    @property
    def terminal(self) -> bool:
        return self in (PollState.COMPLETE, PollState.ERROR, PollState.TIMED_OUT)


@dataclass
class PollOutcome:
    """The end state of a poll.

    Parameters
    ----------
    state:
        ``COMPLETE``, ``ERROR`` or ``TIMED_OUT``.
    operation_id:
        The polled remote operation.
    body:
        The last status body received, if any.
    attempts:
        Number of status requests made.
    elapsed:
        Seconds between the first request and the terminal state.
    history:
        States visited, in order.
    """

    state: PollState
    operation_id: str
    body: dict[str, Any] | None = None
    attempts: int = 0
    elapsed: float = 0.0
    history: list[PollState] = field(default_factory=list)

    @property
    def rows(self) -> Any:
        return (self.body or {}).get("result", [])

    @property
    def error(self) -> str | None:
        if self.state is PollState.TIMED_OUT:
            return f"Operation {self.operation_id} did not finish within {self.elapsed:.1f}s"
        value = (self.body or {}).get("error")
        if value is None:
            return None
        if isinstance(value, dict):
            return str(value.get("message") or value)
        return str(value)

    @property
    def error_code(self) -> str | None:
        value = (self.body or {}).get("error")
        if isinstance(value, dict) and isinstance(value.get("code"), str):
            return value["code"]
        code = (self.body or {}).get("code")
        return code if isinstance(code, str) else None

    @property
    def error_details(self) -> Any:
        return (self.body or {}).get("errorDetails")


class OperationPoller:
    """Poll a remote operation at a fixed interval until it settles.

    Parameters
    ----------
    fetch_status:
        Callable returning the status body for an operation ID.  Errors it
        raises propagate unchanged.
    interval:
        Seconds between polls.
    timeout:
        Seconds after the first poll at which the wait gives up.
    clock:
        Monotonic clock.
    sleep:
        Sleep function.
    on_progress:
        Optional ``(operation_id, status, attempt)`` callback after each poll.
    """

    def __init__(
        self,
        fetch_status: Callable[[str], dict[str, Any]],
        *,
        interval: float = 0.5,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Callable[[str, str, int], None] | None = None,
    ) -> None:
        self._fetch = fetch_status
        self._interval = interval
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._on_progress = on_progress

    def wait(self, operation_id: str) -> PollOutcome:
        """Block until ``operation_id`` is complete, errored, or the timeout elapses.

        Raises
        ------
        MalformedResponseError
            If a status body has no string ``status`` or an unknown one.
        """
        outcome = PollOutcome(state=PollState.PENDING, operation_id=operation_id)
        outcome.history.append(PollState.PENDING)
        start = self._clock()
        deadline = start + self._timeout
        self._enter(outcome, PollState.POLLING)

        while True:
            outcome.attempts += 1
            body = self._fetch(operation_id)
            outcome.body = body
            status = body.get("status")
            if not isinstance(status, str):
                raise MalformedResponseError(
                    f"Status response for {operation_id} has no string 'status'",
                    details={"body": body},
                )
            status = status.lower()
            logger.debug("Poll %d for %s: %s", outcome.attempts, operation_id, status)
            if self._on_progress is not None:
                self._on_progress(operation_id, status, outcome.attempts)

            if status in COMPLETE_STATUSES:
                return self._finish(outcome, PollState.COMPLETE, start)
            if status in ERROR_STATUSES:
                return self._finish(outcome, PollState.ERROR, start)
            if status not in RUNNING_STATUSES:
                raise MalformedResponseError(
                    f"Unknown status {status!r} for operation {operation_id}",
                    details={"body": body},
                )

            now = self._clock()
            if now >= deadline:
                return self._finish(outcome, PollState.TIMED_OUT, start)
            self._sleep(min(self._interval, deadline - now))

    def _enter(self, outcome: PollOutcome, state: PollState) -> None:
        outcome.state = state
        outcome.history.append(state)

    def _finish(self, outcome: PollOutcome, state: PollState, start: float) -> PollOutcome:
        self._enter(outcome, state)
        outcome.elapsed = self._clock() - start
        return outcome
