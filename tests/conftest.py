"""Shared test fixtures for bomkit.

Fixtures defined here are available to all tests in the suite without
needing an explicit import.  The ``FakeModelingService`` plays the remote
service behind an ``httpx.MockTransport`` so that client, executor and CLI
tests never open a socket.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from bomkit.client.api import ModelApiClient
from bomkit.manifest.nodes import OPERATION_TYPES

FAKE_BASE_URL = "http://modeling.test"


def rid(n: int) -> str:
    """Return a well-formed real ID built from ``n``."""
    return f"id-{n:032x}"


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Fake modeling service
# ---------------------------------------------------------------------------

_CREATED_ID_FIELD = {
    "addToView": "visualId",
    "createNote": "noteId",
    "createGroup": "groupId",
    "addConnectionToView": "connectionId",
}


class FakeModelingService:
    """In-memory stand-in for the modeling service HTTP API.

    Parameters
    ----------
    pending_polls:
        How many status polls answer ``processing`` before the final state.
    fail_apply_call:
        1-based apply call whose operation ends in ``error``.
    reject_apply_call:
        1-based apply call answered with HTTP 500.
    rate_limit_first:
        How many initial apply calls are answered with HTTP 429.
    """

    def __init__(
        self,
        *,
        pending_polls: int = 0,
        fail_apply_call: int | None = None,
        reject_apply_call: int | None = None,
        rate_limit_first: int = 0,
    ) -> None:
        self.pending_polls = pending_polls
        self.fail_apply_call = fail_apply_call
        self.reject_apply_call = reject_apply_call
        self.rate_limit_first = rate_limit_first
        self.objects: dict[str, dict[str, Any]] = {}
        self.operations: dict[str, dict[str, Any]] = {}
        self.polls: dict[str, int] = {}
        self.idempotency: dict[str, tuple[str, str]] = {}
        self.apply_bodies: list[dict[str, Any]] = []
        self.events: list[tuple[str, ...]] = []
        self.element_lookups: list[str] = []
        self.fail_queries = False
        self._counter = 0
        self._apply_calls = 0

    # -- helpers -----------------------------------------------------------

    def _new_id(self) -> str:
        self._counter += 1
        return rid(0xF000 + self._counter)

    def add_element(self, name: str, type_: str = "business-actor") -> str:
        real_id = self._new_id()
        self.objects[real_id] = {"id": real_id, "name": name, "type": type_}
        return real_id

    def add_relationship(self, source: str, target: str, type_: str = "serving-relationship") -> str:
        real_id = self._new_id()
        self.objects[real_id] = {
            "id": real_id,
            "name": "",
            "type": type_,
            "source": {"id": source},
            "target": {"id": target},
        }
        return real_id

    def client(self, **kwargs: Any) -> ModelApiClient:
        kwargs.setdefault("sleep", lambda _s: None)
        return ModelApiClient(FAKE_BASE_URL, transport=httpx.MockTransport(self.handler), **kwargs)

    def concept_count(self) -> int:
        return sum(1 for o in self.objects.values() if "type" in o)

    # -- request handling --------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/model/apply":
            return self._apply(json.loads(request.content))
        if request.method == "GET" and path == "/ops/status":
            return self._status(request.url.params["opId"])
        if request.method == "GET" and path.startswith("/model/element/"):
            element_id = path.rsplit("/", 1)[-1]
            self.element_lookups.append(element_id)
            if element_id not in self.objects:
                return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": "no such element"}})
            return httpx.Response(200, json=self.objects[element_id])
        if request.method == "POST" and path == "/model/query":
            if self.fail_queries:
                return httpx.Response(500, json={"error": {"code": "INTERNAL", "message": "query broke"}})
            return httpx.Response(200, json={"summary": {"objects": len(self.objects)}})
        if request.method == "GET" and path == "/model/diagnostics":
            if self.fail_queries:
                return httpx.Response(500, json={"error": {"code": "INTERNAL", "message": "diagnostics broke"}})
            return httpx.Response(200, json={"orphans": [], "warnings": []})
        if request.method == "POST" and path == "/model/search":
            pattern = re.compile(json.loads(request.content)["namePattern"])
            results = [
                {"id": o["id"], "name": o["name"], "type": o["type"]}
                for o in self.objects.values()
                if "name" in o and pattern.search(o["name"])
            ]
            return httpx.Response(200, json={"results": results})
        return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": path}})

    def _apply(self, body: dict[str, Any]) -> httpx.Response:
        self._apply_calls += 1
        call = self._apply_calls
        if call <= self.rate_limit_first:
            return httpx.Response(429, headers={"Retry-After": "0"})
        self.apply_bodies.append(body)
        self.events.append(("apply", str(len(self.apply_bodies))))

        if call == self.reject_apply_call:
            return httpx.Response(500, json={"error": {"code": "INTERNAL", "message": "apply exploded"}})

        key = body.get("idempotencyKey")
        fingerprint = json.dumps(body["changes"], sort_keys=True)
        if key is not None and key in self.idempotency:
            stored_fingerprint, operation_id = self.idempotency[key]
            if stored_fingerprint != fingerprint:
                return httpx.Response(
                    409,
                    json={
                        "error": {
                            "code": "IDEMPOTENCY_CONFLICT",
                            "message": f"idempotency key {key} was used with a different payload",
                        }
                    },
                )
            return httpx.Response(
                200,
                json={"operationId": operation_id, "status": "queued", "idempotency": {"replayed": True}},
            )

        operation_id = f"op-{len(self.operations) + 1}"
        if call == self.fail_apply_call:
            final = {
                "status": "error",
                "error": "Element type not allowed",
                "errorDetails": {"opIndex": 0},
            }
        else:
            final = self._execute(body["changes"])
        self.operations[operation_id] = final
        self.polls[operation_id] = 0
        if key is not None:
            self.idempotency[key] = (fingerprint, operation_id)
        return httpx.Response(200, json={"operationId": operation_id, "status": "queued"})

    def _status(self, operation_id: str) -> httpx.Response:
        if operation_id not in self.operations:
            return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": operation_id}})
        self.polls[operation_id] += 1
        if self.polls[operation_id] <= self.pending_polls:
            self.events.append(("status", operation_id, "processing"))
            return httpx.Response(200, json={"status": "processing"})
        final = self.operations[operation_id]
        self.events.append(("status", operation_id, final["status"]))
        return httpx.Response(200, json=final)

    def _execute(self, changes: list[dict[str, Any]]) -> dict[str, Any]:
        batch: dict[str, str] = {}
        rows: list[dict[str, Any]] = []

        def _resolve(value: str) -> str | None:
            if value in self.objects:
                return value
            return batch.get(value)

        for index, change in enumerate(changes):
            op = change["op"]
            resolved: dict[str, str] = {}
            for ref in OPERATION_TYPES[op].references:
                value = change.get(ref.field)
                if value is None:
                    continue
                real = _resolve(value)
                if real is None:
                    return {
                        "status": "error",
                        "error": f"Unknown reference {value!r} in {ref.field}",
                        "errorDetails": {"opIndex": index},
                    }
                resolved[ref.field] = real

            row: dict[str, Any] = {"op": op}
            if OPERATION_TYPES[op].creates is not None:
                new_id = self._new_id()
                record: dict[str, Any] = {"id": new_id}
                if op in ("createRelationship", "createOrGetRelationship"):
                    record.update(
                        name=change.get("name", ""),
                        type=change["type"],
                        source={"id": resolved["sourceId"]},
                        target={"id": resolved["targetId"]},
                    )
                elif op in _CREATED_ID_FIELD:
                    record.update(kind=op, refs=resolved)
                else:
                    record.update(name=change.get("name", ""), type=change.get("type", op))
                self.objects[new_id] = record
                if change.get("tempId"):
                    batch[change["tempId"]] = new_id
                    row["tempId"] = change["tempId"]
                row[_CREATED_ID_FIELD.get(op, "realId")] = new_id
            rows.append(row)
        return {"status": "complete", "result": rows}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def service() -> FakeModelingService:
    return FakeModelingService()


@pytest.fixture()
def write_manifest(tmp_path: Path) -> Callable[..., Path]:
    """Return a function that writes a JSON manifest under ``tmp_path``."""

    def _write(name: str, changes: list[dict[str, Any]] | None = None, **header: Any) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, Any] = {"version": "1.0", **header}
        data["changes"] = changes if changes is not None else []
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture(autouse=True)
def _reset_bomkit_logger():
    """Undo the handler and level the CLI installs on the ``bomkit`` logger."""
    yield
    package_logger = logging.getLogger("bomkit")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture()
def expected_version() -> str:
    """Return the current expected version string."""
    return "0.1.0"
