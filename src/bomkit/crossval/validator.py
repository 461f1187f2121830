"""Cross-validation of view connections against their relationships.

After substitution, every ``addConnectionToView`` whose relationship is a
real ID and whose two visual endpoints can be traced back to resolved
concepts is compared with the relationship's true source and target:

- endpoints match → **passed**
- endpoints exactly reversed → **swapped**: the two visual fields are
  exchanged before the chunk is submitted
- anything else → **failed** with a ``CROSS_VALIDATION_MISMATCH`` detail;
  the chunk is still submitted
- relationship unresolved, endpoint untraceable, or lookup failure →
  **skipped**

Relationship details are fetched through a ``RelationshipCache`` that
lives for one apply.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bomkit.errors import CROSS_VALIDATION_MISMATCH, BomError
from bomkit.manifest.nodes import AddConnectionToView, AddToView, Operation
from bomkit.resolver.symbols import SymbolTable, is_real_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationshipEndpoints:
    """True source and target concept IDs of a relationship."""

    relationship_id: str
    source_id: str
    target_id: str


def _endpoint_id(body: dict[str, Any], name: str) -> str | None:
    nested = body.get(name)
    if isinstance(nested, dict) and isinstance(nested.get("id"), str):
        return nested["id"]
    flat = body.get(f"{name}Id")
    return flat if isinstance(flat, str) else None


class RelationshipCache:
    """Relationship details keyed by real relationship ID.

    Parameters
    ----------
    fetch:
        Callable returning the element/relationship body for an ID, e.g.
        ``ModelApiClient.get_element``.

    Failed or malformed lookups return ``None`` and are not cached, so a
    later check may try again.
    """

    def __init__(self, fetch: Callable[[str], dict[str, Any]]) -> None:
        self._fetch = fetch
        self._entries: dict[str, RelationshipEndpoints] = {}
        self.fetches = 0

    def get(self, relationship_id: str) -> RelationshipEndpoints | None:
        cached = self._entries.get(relationship_id)
        if cached is not None:
            return cached
        self.fetches += 1
        try:
            body = self._fetch(relationship_id)
        except BomError as exc:
            logger.debug("Relationship lookup for %s failed: %s", relationship_id, exc)
            return None
        source_id = _endpoint_id(body, "source")
        target_id = _endpoint_id(body, "target")
        if source_id is None or target_id is None:
            logger.debug("Relationship %s has no source/target in its details", relationship_id)
            return None
        endpoints = RelationshipEndpoints(relationship_id, source_id, target_id)
        self._entries[relationship_id] = endpoints
        return endpoints

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CheckOutcome(Enum):
    PASSED = "passed"
    SWAPPED = "swapped"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ConnectionCheck:
    """Result of checking one connection operation."""

    index: int
    outcome: CheckOutcome
    temp_id: str | None = None
    relationship_id: str | None = None
    reason: str | None = None
    expected: tuple[str, str] | None = None
    actual: tuple[str, str] | None = None

    @property
    def valid(self) -> bool:
        return self.outcome in (CheckOutcome.PASSED, CheckOutcome.SWAPPED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "outcome": self.outcome.value,
            "valid": self.valid,
            "swapped": self.outcome is CheckOutcome.SWAPPED,
            "skipped": self.outcome is CheckOutcome.SKIPPED,
        }
        if self.temp_id:
            data["tempId"] = self.temp_id
        if self.relationship_id:
            data["relationshipId"] = self.relationship_id
        if self.reason:
            data["reason"] = self.reason
        if self.outcome is CheckOutcome.FAILED:
            data["code"] = CROSS_VALIDATION_MISMATCH
        if self.expected is not None:
            data["expected"] = {"source": self.expected[0], "target": self.expected[1]}
        if self.actual is not None:
            data["actual"] = {"source": self.actual[0], "target": self.actual[1]}
        return data


@dataclass
class CrossValidationSummary:
    """Checks run for one chunk."""

    chunk: int
    checks: list[ConnectionCheck] = field(default_factory=list)

    def _count(self, outcome: CheckOutcome) -> int:
        return sum(1 for c in self.checks if c.outcome is outcome)

    @property
    def passed(self) -> int:
        return self._count(CheckOutcome.PASSED)

    @property
    def swapped(self) -> int:
        return self._count(CheckOutcome.SWAPPED)

    @property
    def failed(self) -> int:
        return self._count(CheckOutcome.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(CheckOutcome.SKIPPED)

    @property
    def checked(self) -> int:
        return len(self.checks) - self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk,
            "checked": self.checked,
            "passed": self.passed,
            "swapped": self.swapped,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": [c.to_dict() for c in self.checks],
        }


def build_visual_bindings(operations: Iterable[Operation]) -> dict[str, str]:
    """Map each placement's visual symbol to the element reference it places."""
    bindings: dict[str, str] = {}
    for op in operations:
        if isinstance(op, AddToView) and op.temp_id:
            element = op.get("elementId")
            if isinstance(element, str):
                bindings.setdefault(op.temp_id, element)
    return bindings


class ConnectionCrossValidator:
    """Check and repair connection endpoints in a chunk before submission.

    Parameters
    ----------
    cache:
        Relationship details cache for this apply.
    bindings:
        Visual symbol → element reference, from ``build_visual_bindings``.
    """

    def __init__(self, cache: RelationshipCache, bindings: dict[str, str]) -> None:
        self._cache = cache
        self._bindings = bindings

    def validate_chunk(
        self,
        originals: Sequence[Operation],
        substituted: Sequence[Operation],
        table: SymbolTable,
        chunk: int,
        positions: Sequence[int] | None = None,
    ) -> tuple[list[Operation], CrossValidationSummary]:
        """Check every connection in a chunk.

        Parameters
        ----------
        originals:
            The chunk's operations before substitution.
        substituted:
            The same operations after substitution, in the same order.
        table:
            The current symbol table.
        chunk:
            1-based chunk number, for reporting.
        positions:
            Composed-list index of each operation, for reporting.

        Returns
        -------
        tuple[list[Operation], CrossValidationSummary]
            The operations to submit (with reversed connections swapped)
            and the checks performed.
        """
        summary = CrossValidationSummary(chunk=chunk)
        result: list[Operation] = []
        for i, (original, current) in enumerate(zip(originals, substituted)):
            if not isinstance(current, AddConnectionToView):
                result.append(current)
                continue
            index = positions[i] if positions is not None else i
            check, repaired = self._check(original, current, table, index)
            summary.checks.append(check)
            result.append(repaired)
        return result, summary

    def _concept_for_visual(self, visual: Any, table: SymbolTable) -> str | None:
        if not isinstance(visual, str):
            return None
        element = self._bindings.get(visual)
        if element is None:
            return None
        if is_real_id(element):
            return element
        return table.resolve(element)

    def _check(
        self, original: Operation, current: Operation, table: SymbolTable, index: int
    ) -> tuple[ConnectionCheck, Operation]:
        temp_id = original.temp_id
        relationship_id = current.get("relationshipId")

        def _skip(reason: str) -> tuple[ConnectionCheck, Operation]:
            logger.debug("Connection check at /changes/%d skipped: %s", index, reason)
            check = ConnectionCheck(
                index=index,
                outcome=CheckOutcome.SKIPPED,
                temp_id=temp_id,
                relationship_id=relationship_id if is_real_id(relationship_id) else None,
                reason=reason,
            )
            return check, current

        if not is_real_id(relationship_id):
            return _skip("relationship is not resolved")
        source_concept = self._concept_for_visual(original.get("sourceVisualId"), table)
        target_concept = self._concept_for_visual(original.get("targetVisualId"), table)
        if source_concept is None or target_concept is None:
            return _skip("visual endpoint cannot be mapped to a concept")
        endpoints = self._cache.get(relationship_id)
        if endpoints is None:
            return _skip("relationship details unavailable")

        expected = (endpoints.source_id, endpoints.target_id)
        actual = (source_concept, target_concept)
        if actual == expected:
            return (
                ConnectionCheck(index, CheckOutcome.PASSED, temp_id, relationship_id),
                current,
            )
        if actual == (expected[1], expected[0]):
            logger.warning(
                "Connection at /changes/%d is reversed relative to %s; swapping endpoints",
                index,
                relationship_id,
            )
            repaired = current.with_fields(
                sourceVisualId=current.get("targetVisualId"),
                targetVisualId=current.get("sourceVisualId"),
            )
            check = ConnectionCheck(
                index,
                CheckOutcome.SWAPPED,
                temp_id,
                relationship_id,
                reason="visual endpoints were reversed and have been swapped",
                expected=expected,
                actual=actual,
            )
            return check, repaired

        logger.warning(
            "Connection at /changes/%d does not match relationship %s", index, relationship_id
        )
        check = ConnectionCheck(
            index,
            CheckOutcome.FAILED,
            temp_id,
            relationship_id,
            reason=(
                f"visual endpoints map to {actual[0]} -> {actual[1]} but relationship "
                f"connects {expected[0]} -> {expected[1]}"
            ),
            expected=expected,
            actual=actual,
        )
        return check, current
