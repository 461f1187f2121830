"""Individual validation rules for the manifest validator.

Each rule is a callable that accepts a ``ComposedManifest`` and returns a
list of ``Diagnostic`` objects.  Rules are composed into the ``Validator``
class which runs them all and aggregates results.

Diagnostic codes used here:

    INVALID_BOM         Schema problems, unknown symbols, use before definition,
                        wrong symbol kind
    DUPLICATE_SYMBOL    A tempId defined twice, or re-defining an idFile symbol
    NAMESPACE_MISMATCH  Concept symbol used where a visual symbol is required,
                        or the other way round
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from bomkit.errors import DUPLICATE_SYMBOL, INVALID_BOM, NAMESPACE_MISMATCH
from bomkit.manifest.nodes import FieldRef, Namespace, Operation, SymbolKind
from bomkit.resolver.symbols import is_real_id, looks_like_malformed_real_id
from bomkit.validator.diagnostics import Diagnostic, Location, error

if TYPE_CHECKING:
    from bomkit.manifest.loader import ComposedManifest

Rule = Callable[["ComposedManifest"], list[Diagnostic]]

VISUAL_ENDPOINT_HINT = (
    "use the placement operation's symbol, not the element's symbol, "
    "for a connection endpoint"
)
CONCEPT_POSITION_HINT = (
    "use the concept's own symbol (the element, relationship, folder or view "
    "tempId), not the symbol of its placement on a view"
)
MALFORMED_ID_HINT = "value looks like a real ID but is malformed; real IDs are 'id-' followed by 32 hex digits"


def position_of(op: Operation, fallback: int) -> int:
    """Return the composed-list index of ``op``."""
    return op.source.position if op.source.position >= 0 else fallback


def _location(op: Operation, index: int, field: str | None = None) -> Location:
    file = op.source.file if op.source.index >= 0 else None
    return Location(index=index, field=field, op=op.op, file=file)


def _definitions(composed: "ComposedManifest") -> dict[str, tuple[int, SymbolKind]]:
    """First definition (index, kind) of every tempId in the composed list."""
    defined: dict[str, tuple[int, SymbolKind]] = {}
    for i, op in enumerate(composed.operations):
        if op.creates is None or op.temp_id is None:
            continue
        defined.setdefault(op.temp_id, (position_of(op, i), op.creates))
    return defined


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def check_schema(composed: "ComposedManifest") -> list[Diagnostic]:
    """Report the shape problems collected while loading."""
    return list(composed.schema_diagnostics)


# ---------------------------------------------------------------------------
# Symbol uniqueness
# ---------------------------------------------------------------------------


def check_duplicate_symbols(composed: "ComposedManifest") -> list[Diagnostic]:
    """Every tempId must be defined at most once across the include closure."""
    diagnostics: list[Diagnostic] = []
    first_seen: dict[str, int] = {}
    for i, op in enumerate(composed.operations):
        symbol = op.temp_id
        if symbol is None:
            continue
        index = position_of(op, i)
        if symbol in first_seen:
            diagnostics.append(
                error(
                    DUPLICATE_SYMBOL,
                    f"Duplicate tempId '{symbol}' also used at /changes/{first_seen[symbol]}",
                    _location(op, index, "tempId"),
                    rule="check_duplicate_symbols",
                )
            )
        else:
            first_seen[symbol] = index
    return diagnostics


def check_idfile_redefinition(composed: "ComposedManifest") -> list[Diagnostic]:
    """A manifest may not define a symbol an idFile already binds."""
    diagnostics: list[Diagnostic] = []
    for i, op in enumerate(composed.operations):
        symbol = op.temp_id
        if symbol is None or symbol not in composed.symbols:
            continue
        origin = composed.symbols.origin(symbol) or "an idFile"
        diagnostics.append(
            error(
                DUPLICATE_SYMBOL,
                f"tempId '{symbol}' is already bound to "
                f"{composed.symbols.resolve(symbol)} by {origin}",
                _location(op, position_of(op, i), "tempId"),
                hint="reference the existing symbol instead of creating it again",
                rule="check_idfile_redefinition",
            )
        )
    return diagnostics


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


def _kind_list(kinds: frozenset[SymbolKind]) -> str:
    return " or ".join(sorted(k.label for k in kinds))


def _check_reference(
    op: Operation,
    index: int,
    ref: FieldRef,
    value: str,
    known: dict[str, SymbolKind],
    definitions: dict[str, tuple[int, SymbolKind]],
) -> Diagnostic | None:
    location = _location(op, index, ref.field)
    kind = known.get(value)

    if kind is None:
        later = definitions.get(value)
        if later is not None:
            return error(
                INVALID_BOM,
                f"Symbol '{value}' in {ref.field!r} at /changes/{index} is used before it "
                f"is defined (first defined at /changes/{later[0]})",
                location,
                hint="move the creating operation before this one",
                rule="check_references",
            )
        hint = MALFORMED_ID_HINT if looks_like_malformed_real_id(value) else None
        return error(
            INVALID_BOM,
            f"Unknown symbol '{value}' in {ref.field!r} at /changes/{index}",
            location,
            hint=hint,
            rule="check_references",
        )

    if kind.namespace != ref.namespace:
        wanted = "visual" if ref.namespace == Namespace.VISUAL else "concept"
        actual = "visual" if kind.namespace == Namespace.VISUAL else "concept"
        hint = VISUAL_ENDPOINT_HINT if ref.namespace == Namespace.VISUAL else CONCEPT_POSITION_HINT
        return error(
            NAMESPACE_MISMATCH,
            f"Field {ref.field!r} at /changes/{index} requires a {wanted} symbol but "
            f"'{value}' is a {actual} symbol ({kind.label})",
            location,
            hint=hint,
            rule="check_references",
        )

    if kind not in ref.kinds:
        return error(
            INVALID_BOM,
            f"Field {ref.field!r} at /changes/{index} expects a {_kind_list(ref.kinds)} "
            f"but '{value}' is a {kind.label}",
            location,
            rule="check_references",
        )
    return None


def check_references(composed: "ComposedManifest") -> list[Diagnostic]:
    """Single forward pass over the composed operations.

    Real IDs and idFile symbols are always accepted.  Other references must
    name a symbol defined by an earlier operation, in the namespace and of a
    kind the field accepts.  Delete-style operations may reference any
    symbol defined anywhere in the manifest.
    """
    diagnostics: list[Diagnostic] = []
    definitions = _definitions(composed)
    everything = {symbol: kind for symbol, (_, kind) in definitions.items()}
    seeded = composed.seeded_symbols
    defined: dict[str, SymbolKind] = {}

    for i, op in enumerate(composed.operations):
        index = position_of(op, i)
        known = everything if op.delete_style else defined
        for ref, value in op.reference_values():
            if is_real_id(value) or value in seeded:
                continue
            diagnostic = _check_reference(op, index, ref, value, known, definitions)
            if diagnostic is not None:
                diagnostics.append(diagnostic)
        if op.creates is not None and op.temp_id is not None:
            defined.setdefault(op.temp_id, op.creates)
    return diagnostics


DEFAULT_RULES: list[Rule] = [
    check_schema,
    check_duplicate_symbols,
    check_idfile_redefinition,
    check_references,
]
