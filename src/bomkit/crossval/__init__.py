"""Cross-validation of view connections against relationship direction."""
from __future__ import annotations

from bomkit.crossval.validator import (
    CheckOutcome,
    ConnectionCheck,
    ConnectionCrossValidator,
    CrossValidationSummary,
    RelationshipCache,
    RelationshipEndpoints,
    build_visual_bindings,
)

__all__ = [
    "CheckOutcome",
    "ConnectionCheck",
    "ConnectionCrossValidator",
    "CrossValidationSummary",
    "RelationshipCache",
    "RelationshipEndpoints",
    "build_visual_bindings",
]
