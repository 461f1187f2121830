"""Unit tests for bomkit.resolver."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from bomkit.errors import ApiError, SymbolConflictError
from bomkit.manifest.loader import load_manifest
from bomkit.manifest.nodes import AddConnectionToView, CreateRelationship
from bomkit.resolver import (
    SymbolTable,
    default_sidecar_path,
    extract_mappings,
    is_real_id,
    realized_id,
    resolve_by_name,
    save_sidecar,
    substitute,
    substitute_all,
)
from bomkit.resolver.names import NAME_ORIGIN, undeclared_references
from bomkit.resolver.symbols import looks_like_malformed_real_id

from conftest import FakeModelingService, rid


# ===========================================================================
# Real IDs
# ===========================================================================


class TestRealIds:
    @pytest.mark.parametrize("value", [rid(1), "id-" + "f" * 32, "ID-" + "A" * 32])
    def test_well_formed(self, value: str) -> None:
        assert is_real_id(value)

    @pytest.mark.parametrize("value", ["e-a", "id-123", "id-" + "g" * 32, "x-" + "0" * 32, "", None, 5])
    def test_not_real(self, value: object) -> None:
        assert not is_real_id(value)

    def test_malformed_detection(self) -> None:
        assert looks_like_malformed_real_id("id-abc")
        assert not looks_like_malformed_real_id(rid(1))
        assert not looks_like_malformed_real_id("e-a")


# ===========================================================================
# SymbolTable
# ===========================================================================


class TestSymbolTable:
    def test_define_and_resolve(self) -> None:
        table = SymbolTable()
        assert table.define("e-a", rid(1), origin="chunk 1")
        assert table.resolve("e-a") == rid(1)
        assert table.origin("e-a") == "chunk 1"
        assert "e-a" in table
        assert table.resolve("e-b") is None

    def test_same_binding_twice_is_a_no_op(self) -> None:
        table = SymbolTable({"e-a": rid(1)})
        assert table.define("e-a", rid(1)) is False
        assert len(table) == 1

    def test_conflicting_binding_raises(self) -> None:
        table = SymbolTable({"e-a": rid(1)}, origin="base.ids.json")
        with pytest.raises(SymbolConflictError) as excinfo:
            table.define("e-a", rid(2))
        err = excinfo.value
        assert err.symbol == "e-a"
        assert err.existing == rid(1)
        assert err.new == rid(2)
        assert "base.ids.json" in str(err)
        assert table.resolve("e-a") == rid(1)

    def test_update_counts_new_bindings(self) -> None:
        table = SymbolTable({"a": rid(1)})
        assert table.update({"a": rid(1), "b": rid(2), "c": rid(3)}) == 2

    def test_as_dict_is_sorted(self) -> None:
        table = SymbolTable({"z": rid(1), "a": rid(2)})
        assert list(table.as_dict()) == ["a", "z"]

    def test_copy_is_independent(self) -> None:
        table = SymbolTable({"a": rid(1)})
        clone = table.copy()
        clone.define("b", rid(2))
        assert "b" not in table
        assert clone.origin("a") == "seed"


# ===========================================================================
# Substitution and extraction
# ===========================================================================


class TestSubstitution:
    def test_resolved_references_are_replaced(self) -> None:
        op = CreateRelationship(fields={"type": "t", "sourceId": "e-a", "targetId": "e-b", "tempId": "r-ab"})
        out = substitute(op, SymbolTable({"e-a": rid(1), "e-b": rid(2)}))
        assert out.get("sourceId") == rid(1)
        assert out.get("targetId") == rid(2)
        assert out.get("tempId") == "r-ab"
        assert op.get("sourceId") == "e-a"

    def test_unresolved_references_are_left(self) -> None:
        op = CreateRelationship(fields={"type": "t", "sourceId": "e-a", "targetId": rid(9)})
        out = substitute(op, SymbolTable())
        assert out is op

    def test_temp_id_is_never_substituted(self) -> None:
        op = CreateRelationship(fields={"type": "t", "sourceId": rid(1), "targetId": rid(2), "tempId": "e-a"})
        assert substitute(op, SymbolTable({"e-a": rid(3)})).get("tempId") == "e-a"

    def test_substitute_all_covers_visual_fields(self) -> None:
        op = AddConnectionToView(
            fields={"viewId": "v", "relationshipId": "r", "sourceVisualId": "vis-a", "targetVisualId": "vis-b"}
        )
        table = SymbolTable({"v": rid(1), "r": rid(2), "vis-a": rid(3), "vis-b": rid(4)})
        (out,) = substitute_all([op], table)
        assert [out.get(f) for f in ("viewId", "relationshipId", "sourceVisualId", "targetVisualId")] == [
            rid(1),
            rid(2),
            rid(3),
            rid(4),
        ]


class TestExtraction:
    def test_priority_order(self) -> None:
        assert realized_id({"realId": "a", "visualId": "b"}) == "a"
        assert realized_id({"visualId": "b", "noteId": "c"}) == "b"
        assert realized_id({"noteId": "c", "groupId": "d"}) == "c"
        assert realized_id({"groupId": "d", "viewId": "e"}) == "d"
        assert realized_id({"viewId": "e"}) == "e"
        assert realized_id({"connectionId": "f"}) == "f"
        assert realized_id({"realId": ""}) is None

    def test_rows_without_temp_id_are_skipped(self) -> None:
        rows = [
            {"op": "createElement", "tempId": "e-a", "realId": rid(1)},
            {"op": "setProperty"},
            {"op": "addToView", "tempId": "vis-a", "visualId": rid(2)},
            {"op": "createNote", "tempId": "n-1"},
        ]
        assert extract_mappings(rows) == [("e-a", rid(1)), ("vis-a", rid(2))]


# ===========================================================================
# Side-car
# ===========================================================================


class TestSidecar:
    def test_default_path(self) -> None:
        assert default_sidecar_path(Path("/m/model.json")) == Path("/m/model.ids.json")
        assert default_sidecar_path(Path("/m/model.yaml")) == Path("/m/model.ids.json")

    def test_save_is_sorted_and_loadable(self, tmp_path: Path) -> None:
        path = save_sidecar(tmp_path / "out" / "model.ids.json", {"z": rid(2), "a": rid(1)})
        text = path.read_text(encoding="utf-8")
        assert text.endswith("\n")
        assert list(json.loads(text)) == ["a", "z"]

    def test_sidecar_feeds_a_later_manifest(self, tmp_path: Path, write_manifest) -> None:
        save_sidecar(tmp_path / "base.ids.json", {"e-a": rid(1)})
        root = write_manifest("next.json", [], idFiles=["base.ids.json"])
        assert load_manifest(root).symbols.resolve("e-a") == rid(1)


# ===========================================================================
# Name lookup
# ===========================================================================


class TestNameResolution:
    def test_undeclared_concept_references(self, write_manifest) -> None:
        changes = [
            {"op": "createElement", "type": "t", "name": "A", "tempId": "e-a"},
            {"op": "createRelationship", "type": "t", "sourceId": "e-a", "targetId": "Customer"},
            {"op": "styleViewObject", "viewObjectId": "Nowhere"},
            {"op": "createRelationship", "type": "t", "sourceId": "Customer", "targetId": rid(1)},
        ]
        composed = load_manifest(write_manifest("main.json", changes))
        assert undeclared_references(composed) == ["Customer"]

    def test_single_exact_match_is_seeded(self, write_manifest) -> None:
        service = FakeModelingService()
        real = service.add_element("Customer")
        service.add_element("Customer Portal")
        changes = [{"op": "createRelationship", "type": "t", "sourceId": "Customer", "targetId": rid(1)}]
        composed = load_manifest(write_manifest("main.json", changes))
        with service.client() as client:
            resolved = resolve_by_name(composed, client.search)
        assert resolved == {"Customer": real}
        assert composed.symbols.origin("Customer") == NAME_ORIGIN

    def test_ambiguous_match_is_left_alone(self, write_manifest, caplog) -> None:
        service = FakeModelingService()
        service.add_element("Customer")
        service.add_element("Customer", type_="business-role")
        changes = [{"op": "deleteElement", "id": "Customer"}]
        composed = load_manifest(write_manifest("main.json", changes))
        with caplog.at_level(logging.WARNING, logger="bomkit"), service.client() as client:
            assert resolve_by_name(composed, client.search) == {}
        assert "ambiguous" in caplog.text
        assert "Customer" not in composed.symbols

    def test_lookup_failure_is_ignored(self, write_manifest) -> None:
        def broken_search(pattern: str):
            raise ApiError("search unavailable", status_code=503)

        changes = [{"op": "deleteElement", "id": "Customer"}]
        composed = load_manifest(write_manifest("main.json", changes))
        assert resolve_by_name(composed, broken_search) == {}
