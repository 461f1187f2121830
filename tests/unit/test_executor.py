"""Unit tests for bomkit.executor.executor."""
from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest

from bomkit.client import ModelApiClient
from bomkit.config import Settings
from bomkit.errors import InvalidManifestError
from bomkit.executor import (
    ApplyOptions,
    ChunkedExecutor,
    ChunkStatus,
    apply_manifest,
    plan_chunks,
    plan_execution,
)
from bomkit.manifest.loader import load_manifest
from bomkit.manifest.nodes import CreateElement, CreateView, DuplicateStrategy
from bomkit.resolver import SymbolTable

from conftest import FAKE_BASE_URL, FakeClock, FakeModelingService, rid


def _element(temp_id: str, name: str | None = None) -> dict:
    return {"op": "createElement", "type": "business-actor", "name": name or temp_id, "tempId": temp_id}


def _relationship(temp_id: str, source: str, target: str) -> dict:
    return {
        "op": "createRelationship",
        "type": "serving-relationship",
        "sourceId": source,
        "targetId": target,
        "tempId": temp_id,
    }


def _apply(service, composed, clock: FakeClock | None = None, **options):
    clock = clock or FakeClock()
    options.setdefault("save_ids", False)
    with service.client() as client:
        return apply_manifest(
            composed, client, ApplyOptions(**options), clock=clock, sleep=clock.sleep
        )


def _elements(n: int) -> list[dict]:
    return [_element(f"e-{i}") for i in range(n)]


# ===========================================================================
# Planning
# ===========================================================================


class TestPlanning:
    @pytest.mark.parametrize(("count", "size", "expected"), [(10, 4, [4, 4, 2]), (8, 8, [8]), (3, 1, [1, 1, 1]), (0, 5, [])])
    def test_plan_chunks(self, count: int, size: int, expected: list[int]) -> None:
        ops = [CreateView(fields={"name": f"V{i}"}) for i in range(count)]
        chunks = plan_chunks(ops, size)
        assert [len(c) for c in chunks] == expected
        assert [op for c in chunks for op in c] == ops

    @pytest.mark.parametrize("size", [0, 1001, -3])
    def test_chunk_size_out_of_range(self, size: int) -> None:
        with pytest.raises(ValueError, match="chunk_size"):
            plan_chunks([], size)

    def test_plan_execution(self) -> None:
        ops = [CreateView(fields={"name": "V"}), CreateElement(fields={"type": "t", "name": "A"})]
        plan = plan_execution(ops, 1)
        data = plan.to_dict()
        assert data["dryRun"] is True
        assert data["totalChunks"] == 2
        assert data["chunks"][1] == {"index": 2, "size": 1, "ops": ["createElement"]}

    def test_options_from_settings(self) -> None:
        settings = Settings(chunk_size=3, poll_interval_ms=250, poll_timeout_ms=9000)
        options = ApplyOptions.from_settings(settings, chunk_size=None, idempotency_key="k")
        assert options.chunk_size == 3
        assert options.poll_interval == 0.25
        assert options.poll_timeout == 9.0
        assert options.idempotency_key == "k"


# ===========================================================================
# Happy path
# ===========================================================================


class TestChunkedApply:
    def test_chunks_are_submitted_in_order(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _elements(10)))
        result = _apply(service, composed, chunk_size=4)
        assert result.status == "complete"
        assert [len(body["changes"]) for body in service.apply_bodies] == [4, 4, 2]
        names = [c["name"] for body in service.apply_bodies for c in body["changes"]]
        assert names == [f"e-{i}" for i in range(10)]
        assert result.chunks_completed == 3
        assert len(result.symbols) == 10
        assert result.new_symbols == 10

    def test_next_chunk_waits_for_terminal_status(self, write_manifest) -> None:
        service = FakeModelingService(pending_polls=1)
        composed = load_manifest(write_manifest("main.json", _elements(2)))
        _apply(service, composed, chunk_size=1)
        assert service.events == [
            ("apply", "1"),
            ("status", "op-1", "processing"),
            ("status", "op-1", "complete"),
            ("apply", "2"),
            ("status", "op-2", "processing"),
            ("status", "op-2", "complete"),
        ]

    def test_symbols_flow_into_later_chunks(self, service, write_manifest) -> None:
        changes = [_element("e-a"), _element("e-b"), _relationship("r-ab", "e-a", "e-b")]
        composed = load_manifest(write_manifest("main.json", changes))
        result = _apply(service, composed, chunk_size=1)
        assert result.success
        submitted = service.apply_bodies[2]["changes"][0]
        assert submitted["sourceId"] == result.symbols["e-a"]
        assert submitted["targetId"] == result.symbols["e-b"]
        assert submitted["tempId"] == "r-ab"
        relationship = service.objects[result.symbols["r-ab"]]
        assert relationship["source"] == {"id": result.symbols["e-a"]}

    def test_in_chunk_references_are_left_for_the_service(self, service, write_manifest) -> None:
        changes = [_element("e-a"), _element("e-b"), _relationship("r-ab", "e-a", "e-b")]
        composed = load_manifest(write_manifest("main.json", changes))
        result = _apply(service, composed, chunk_size=8)
        assert result.success
        assert service.apply_bodies[0]["changes"][2]["sourceId"] == "e-a"

    def test_parallel_relationships_get_distinct_ids(self, service, write_manifest) -> None:
        changes = [
            _element("e-a"),
            _element("e-b"),
            _relationship("r-1", "e-a", "e-b"),
            _relationship("r-2", "e-a", "e-b"),
        ]
        result = _apply(service, load_manifest(write_manifest("main.json", changes)), chunk_size=2)
        assert result.symbols["r-1"] != result.symbols["r-2"]

    def test_visual_ids_are_extracted(self, service, write_manifest) -> None:
        changes = [
            _element("e-a"),
            {"op": "createView", "name": "Main", "tempId": "v-main"},
            {"op": "addToView", "viewId": "v-main", "elementId": "e-a", "tempId": "vis-a"},
            {"op": "createNote", "viewId": "v-main", "content": "hello", "tempId": "n-1"},
            {"op": "createGroup", "viewId": "v-main", "name": "G", "tempId": "g-1"},
        ]
        result = _apply(service, load_manifest(write_manifest("main.json", changes)), chunk_size=2)
        assert set(result.symbols) == {"e-a", "v-main", "vis-a", "n-1", "g-1"}
        assert [r.real_id for r in result.rows] == [result.symbols[s] for s in ("e-a", "v-main", "vis-a", "n-1", "g-1")]

    def test_id_file_symbols_are_substituted(self, service, tmp_path: Path, write_manifest) -> None:
        existing = service.add_element("Legacy")
        (tmp_path / "base.ids.json").write_text(json.dumps({"e-legacy": existing}), encoding="utf-8")
        changes = [_element("e-new"), _relationship("r", "e-legacy", "e-new")]
        composed = load_manifest(write_manifest("main.json", changes, idFiles=["base.ids.json"]))
        result = _apply(service, composed, chunk_size=1)
        assert service.apply_bodies[1]["changes"][0]["sourceId"] == existing
        assert result.symbols["e-legacy"] == existing
        assert "e-legacy" not in [r.temp_id for r in result.rows]

    def test_empty_manifest(self, service, write_manifest) -> None:
        result = _apply(service, load_manifest(write_manifest("main.json", [])))
        assert result.status == "complete"
        assert result.chunks == []
        assert service.apply_bodies == []
        assert "nothing to apply" in result.warnings[0]

    def test_invalid_manifest_is_not_submitted(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", [_relationship("r", "e-x", "e-y")]))
        with pytest.raises(InvalidManifestError):
            _apply(service, composed)
        assert service.apply_bodies == []

    def test_composed_symbols_are_not_modified(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _elements(2)))
        _apply(service, composed)
        assert len(composed.symbols) == 0

    def test_progress_callback(self, service, write_manifest) -> None:
        seen: list[tuple] = []
        composed = load_manifest(write_manifest("main.json", _elements(2)))
        _apply(service, composed, chunk_size=1, on_progress=lambda *a: seen.append(a))
        assert seen == [
            (1, 2, "submitting", 0),
            (1, 2, "complete", 1),
            (1, 2, "complete", 1),
            (2, 2, "submitting", 0),
            (2, 2, "complete", 1),
            (2, 2, "complete", 1),
        ]


# ===========================================================================
# Idempotency
# ===========================================================================


class TestIdempotency:
    def test_keys_and_strategy_are_sent(self, service, write_manifest) -> None:
        composed = load_manifest(
            write_manifest("main.json", _elements(3), idempotencyKey="run-1", duplicateStrategy="reuse")
        )
        result = _apply(service, composed, chunk_size=2)
        assert [b["idempotencyKey"] for b in service.apply_bodies] == ["run-1:chunk:1:of:2", "run-1:chunk:2:of:2"]
        assert {b["duplicateStrategy"] for b in service.apply_bodies} == {"reuse"}
        assert [c.idempotency_key for c in result.chunks] == ["run-1:chunk:1:of:2", "run-1:chunk:2:of:2"]

    def test_option_overrides_manifest(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _elements(1), idempotencyKey="from-file"))
        _apply(service, composed, idempotency_key="from-cli", duplicate_strategy=DuplicateStrategy.RENAME)
        assert service.apply_bodies[0]["idempotencyKey"] == "from-cli:chunk:1:of:1"
        assert service.apply_bodies[0]["duplicateStrategy"] == "rename"

    def test_operation_override_travels_with_the_operation(self, service, write_manifest) -> None:
        changes = [_element("e-0"), {**_element("e-1"), "onDuplicate": "rename"}]
        composed = load_manifest(write_manifest("main.json", changes, duplicateStrategy="error"))
        _apply(service, composed)
        body = service.apply_bodies[0]
        assert body["duplicateStrategy"] == "error"
        assert "onDuplicate" not in body["changes"][0]
        assert body["changes"][1]["onDuplicate"] == "rename"

    def test_no_key_sends_none(self, service, write_manifest) -> None:
        _apply(service, load_manifest(write_manifest("main.json", _elements(1))))
        assert "idempotencyKey" not in service.apply_bodies[0]

    def test_rerun_with_same_key_replays(self, service, write_manifest) -> None:
        path = write_manifest("main.json", _elements(3), idempotencyKey="run-1")
        first = _apply(service, load_manifest(path), chunk_size=2)
        concepts = service.concept_count()
        second = _apply(service, load_manifest(path), chunk_size=2)
        assert second.success
        assert [c.replayed for c in second.chunks] == [True, True]
        assert second.symbols == first.symbols
        assert service.concept_count() == concepts

    def test_changed_payload_with_same_key_conflicts(self, service, write_manifest) -> None:
        _apply(service, load_manifest(write_manifest("main.json", _elements(2), idempotencyKey="run-1")))
        changed = write_manifest("main.json", [_element("e-0", "Renamed"), _element("e-1")], idempotencyKey="run-1")
        result = _apply(service, load_manifest(changed))
        assert result.status == "partial_error"
        assert result.chunks[0].error["code"] == "IDEMPOTENCY_CONFLICT"
        assert result.recovery is not None


# ===========================================================================
# Failures and recovery
# ===========================================================================


class TestFailures:
    def test_remote_error_stops_the_run(self, write_manifest) -> None:
        service = FakeModelingService(fail_apply_call=2)
        composed = load_manifest(write_manifest("main.json", _elements(5), idempotencyKey="k"))
        result = _apply(service, composed, chunk_size=2)
        assert result.status == "partial_error"
        assert [c.status for c in result.chunks] == [
            ChunkStatus.COMPLETE,
            ChunkStatus.ERROR,
            ChunkStatus.NOT_ATTEMPTED,
        ]
        failed = result.chunks[1]
        assert failed.error == {
            "code": "CHUNK_FAILED",
            "message": "Element type not allowed",
            "details": {"opIndex": 0},
        }
        assert result.chunks[2].idempotency_key == "k:chunk:3:of:3"
        assert len(service.apply_bodies) == 2
        assert set(result.symbols) == {"e-0", "e-1"}

    def test_recovery_snapshot(self, write_manifest) -> None:
        service = FakeModelingService(fail_apply_call=2)
        composed = load_manifest(write_manifest("main.json", _elements(5)))
        snapshot = _apply(service, composed, chunk_size=2).recovery.to_dict()
        assert snapshot["mode"] == "targeted_recovery"
        assert snapshot["failedChunk"] == 2
        assert snapshot["operationId"] == "op-2"
        assert snapshot["chunksCompleted"] == 1
        assert snapshot["resolvedTempIds"] == 2
        assert snapshot["totalOperations"] == 5
        assert snapshot["errorDetails"] == {"opIndex": 0}
        assert "model" in snapshot and "diagnostics" in snapshot
        assert snapshot["nextStep"].startswith("Re-read model state")

    def test_recovery_read_errors_are_recorded(self, write_manifest) -> None:
        service = FakeModelingService(fail_apply_call=1)
        service.fail_queries = True
        snapshot = _apply(service, load_manifest(write_manifest("main.json", _elements(1)))).recovery
        assert snapshot.model is None
        assert snapshot.model_read_error == "query broke"
        assert snapshot.diagnostics_read_error == "diagnostics broke"

    def test_timeout(self, write_manifest) -> None:
        service = FakeModelingService(pending_polls=1000)
        clock = FakeClock()
        composed = load_manifest(write_manifest("main.json", _elements(3)))
        result = _apply(service, composed, clock=clock, chunk_size=2, poll_interval=0.5, poll_timeout=1.0)
        assert result.chunks[0].status is ChunkStatus.TIMEOUT
        assert result.chunks[0].error["code"] == "CHUNK_TIMEOUT"
        assert result.chunks[0].poll_attempts == 3
        assert result.chunks[1].status is ChunkStatus.NOT_ATTEMPTED
        assert result.recovery.failed_chunk == 1
        assert clock.now == pytest.approx(1.0)

    def test_submission_rejected(self, write_manifest) -> None:
        service = FakeModelingService(reject_apply_call=1)
        result = _apply(service, load_manifest(write_manifest("main.json", _elements(1))))
        error = result.chunks[0].error
        assert error["code"] == "CHUNK_SUBMIT_FAILED"
        assert "apply exploded" in error["message"]
        assert error["details"]["details"]["code"] == "INTERNAL"
        assert result.chunks_submitted == 0

    def test_rate_limited_submission_is_retried(self, write_manifest) -> None:
        service = FakeModelingService(rate_limit_first=2)
        result = _apply(service, load_manifest(write_manifest("main.json", _elements(1))))
        assert result.success

    def test_missing_operation_id(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "queued"})

        client = ModelApiClient(FAKE_BASE_URL, transport=httpx.MockTransport(handler))
        result = ChunkedExecutor(client).execute([CreateView(fields={"name": "V"})], SymbolTable())
        assert result.chunks[0].error["code"] == "CHUNK_SUBMIT_FAILED"
        assert result.chunks[0].error["details"]["code"] == "MALFORMED_RESPONSE"

    def test_malformed_result_rows(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/model/apply":
                return httpx.Response(200, json={"operationId": "op-1"})
            if request.url.path == "/ops/status":
                return httpx.Response(200, json={"status": "complete", "result": "nope"})
            return httpx.Response(200, json={})

        client = ModelApiClient(FAKE_BASE_URL, transport=httpx.MockTransport(handler))
        result = ChunkedExecutor(client).execute([CreateView(fields={"name": "V"})], SymbolTable())
        assert result.chunks[0].status is ChunkStatus.ERROR
        assert result.chunks[0].error["code"] == "CHUNK_FAILED"

    def test_unknown_poll_status_fails_the_chunk(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/model/apply":
                return httpx.Response(200, json={"operationId": "op-1"})
            if request.url.path == "/ops/status":
                return httpx.Response(200, json={"status": "levitating"})
            return httpx.Response(200, json={})

        client = ModelApiClient(FAKE_BASE_URL, transport=httpx.MockTransport(handler))
        result = ChunkedExecutor(client).execute([CreateView(fields={"name": "V"})], SymbolTable())
        assert result.chunks[0].error["code"] == "CHUNK_FAILED"
        assert result.chunks[0].error["details"]["code"] == "MALFORMED_RESPONSE"

    def test_rebinding_a_symbol_fails_the_chunk(self, service) -> None:
        symbols = SymbolTable({"e-a": rid(1)})
        op = CreateElement(fields={"type": "business-actor", "name": "A", "tempId": "e-a"})
        with service.client() as client:
            result = ChunkedExecutor(client).execute([op], symbols)
        assert result.chunks[0].error["code"] == "DUPLICATE_SYMBOL"
        assert symbols.resolve("e-a") == rid(1)


# ===========================================================================
# Cross-validation during apply
# ===========================================================================


def _view_changes(source: str, target: str) -> list[dict]:
    return [
        _element("e-a"),
        _element("e-b"),
        _element("e-c"),
        _relationship("r-ab", "e-a", "e-b"),
        {"op": "createView", "name": "Main", "tempId": "v-main"},
        {"op": "addToView", "viewId": "v-main", "elementId": "e-a", "tempId": "vis-a"},
        {"op": "addToView", "viewId": "v-main", "elementId": "e-b", "tempId": "vis-b"},
        {"op": "addToView", "viewId": "v-main", "elementId": "e-c", "tempId": "vis-c"},
        {
            "op": "addConnectionToView",
            "viewId": "v-main",
            "relationshipId": "r-ab",
            "sourceVisualId": source,
            "targetVisualId": target,
            "tempId": "conn-1",
        },
    ]


class TestCrossValidationDuringApply:
    def test_reversed_connection_is_swapped_before_submission(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _view_changes("vis-b", "vis-a")))
        result = _apply(service, composed, chunk_size=8)
        assert result.success
        submitted = service.apply_bodies[1]["changes"][0]
        assert submitted["sourceVisualId"] == result.symbols["vis-a"]
        assert submitted["targetVisualId"] == result.symbols["vis-b"]
        summary = result.cross_validation[0]
        assert summary.swapped == 1
        assert summary.chunk == 2
        assert summary.checks[0].index == 8
        assert "conn-1" in result.symbols

    def test_mismatched_connection_is_reported_and_submitted(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _view_changes("vis-a", "vis-c")))
        result = _apply(service, composed, chunk_size=8)
        assert result.success
        details = result.to_dict()["crossValidation"][0]["details"][0]
        assert details["valid"] is False
        assert details["code"] == "CROSS_VALIDATION_MISMATCH"
        assert service.apply_bodies[1]["changes"][0]["targetVisualId"] == result.symbols["vis-c"]

    def test_same_chunk_connection_is_skipped(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _view_changes("vis-b", "vis-a")))
        result = _apply(service, composed, chunk_size=20)
        assert result.chunks[0].cross_validation.skipped == 1
        assert service.element_lookups == []

    def test_cross_validation_can_be_disabled(self, service, write_manifest) -> None:
        composed = load_manifest(write_manifest("main.json", _view_changes("vis-b", "vis-a")))
        result = _apply(service, composed, chunk_size=8, cross_validate=False)
        assert result.cross_validation == []
        assert service.apply_bodies[1]["changes"][0]["sourceVisualId"] == result.symbols["vis-b"]


# ===========================================================================
# Side-car
# ===========================================================================


class TestSidecar:
    def test_written_next_to_the_manifest(self, service, tmp_path: Path, write_manifest) -> None:
        composed = load_manifest(write_manifest("model.json", _elements(2)))
        result = _apply(service, composed, save_ids=True)
        path = tmp_path / "model.ids.json"
        assert result.sidecar_path == str(path.resolve())
        assert json.loads(path.read_text(encoding="utf-8")) == result.symbols

    def test_explicit_path(self, service, tmp_path: Path, write_manifest) -> None:
        target = tmp_path / "out" / "custom.ids.json"
        composed = load_manifest(write_manifest("model.json", _elements(1)))
        _apply(service, composed, save_ids=True, sidecar_path=target)
        assert target.exists()

    def test_not_written_when_disabled(self, service, tmp_path: Path, write_manifest) -> None:
        _apply(service, load_manifest(write_manifest("model.json", _elements(1))), save_ids=False)
        assert not (tmp_path / "model.ids.json").exists()

    def test_not_written_without_new_symbols(self, service, tmp_path: Path, write_manifest) -> None:
        _apply(service, load_manifest(write_manifest("model.json", [])), save_ids=True)
        assert not (tmp_path / "model.ids.json").exists()

    def test_partial_run_still_saves_completed_chunks(self, tmp_path: Path, write_manifest) -> None:
        service = FakeModelingService(fail_apply_call=2)
        composed = load_manifest(write_manifest("model.json", _elements(4)))
        _apply(service, composed, chunk_size=2, save_ids=True)
        saved = json.loads((tmp_path / "model.ids.json").read_text(encoding="utf-8"))
        assert set(saved) == {"e-0", "e-1"}
