"""Shape checks for manifest documents.

``parse_header`` validates the top-level fields of one manifest document;
``parse_changes`` normalises and validates its ``changes`` list and builds
the typed ``Operation`` variants.  Neither raises on bad input: every
problem becomes an ``INVALID_BOM`` diagnostic so that all of them can be
reported together.

A change whose ``op`` is known but whose fields are wrong still yields an
``Operation`` so that the reference pass can see the symbols it defines.
Such a manifest is never executed because its schema diagnostics are
errors.
"""
from __future__ import annotations

import difflib
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bomkit.errors import INVALID_BOM
from bomkit.manifest.nodes import (
    OPERATION_TYPES,
    DuplicateStrategy,
    Manifest,
    Operation,
    SourceRef,
)
from bomkit.manifest.normalize import normalize_change
from bomkit.validator.diagnostics import Diagnostic, Location, error

IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9:_-]+$")
IDEMPOTENCY_KEY_MAX_LENGTH = 128

_HEADER_FIELDS = frozenset(
    {
        "$schema",
        "version",
        "description",
        "includes",
        "idFiles",
        "idempotencyKey",
        "duplicateStrategy",
        "changes",
    }
)

_STRING_FIELDS = frozenset(
    {
        "type",
        "name",
        "documentation",
        "key",
        "value",
        "content",
        "parentType",
        "viewpoint",
        "fillColor",
        "fontColor",
        "lineColor",
        "font",
        "strength",
    }
)
_NUMBER_FIELDS = frozenset({"x", "y", "width", "height", "lineWidth", "opacity", "alpha", "textPosition"})
_BOOL_FIELDS = frozenset({"cascade"})
_DUPLICATE_STRATEGIES = tuple(s.value for s in DuplicateStrategy)


@dataclass
class ParsedChanges:
    """Operations built from one manifest's ``changes`` list."""

    operations: list[Operation] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    aliases_resolved: int = 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) and v for v in value)


def is_valid_idempotency_key(value: Any) -> bool:
    return (
        isinstance(value, str)
        and len(value) <= IDEMPOTENCY_KEY_MAX_LENGTH
        and bool(IDEMPOTENCY_KEY_RE.match(value))
    )


# ---------------------------------------------------------------------------
# Header
# ---------------------------------------------------------------------------


def parse_header(data: Any, path: Path) -> tuple[Manifest | None, list[Diagnostic]]:
    """Validate the top-level fields of a manifest document.

    Parameters
    ----------
    data:
        The decoded document.
    path:
        Absolute path of the document; include and idFile entries are
        resolved relative to its directory.

    Returns
    -------
    tuple[Manifest | None, list[Diagnostic]]
        The manifest header (with an empty ``changes`` tuple) and any
        problems.  The manifest is ``None`` only when ``data`` is not an
        object at all.
    """
    file = str(path)
    if not isinstance(data, dict):
        return None, [
            error(INVALID_BOM, "Manifest must be a JSON object", Location(file=file), rule="schema")
        ]

    diagnostics: list[Diagnostic] = []

    def _header_error(name: str, message: str, hint: str | None = None) -> None:
        diagnostics.append(
            error(INVALID_BOM, message, Location(field=name, file=file), hint=hint, rule="schema")
        )

    for name in sorted(set(data) - _HEADER_FIELDS):
        _header_error(name, f"Unknown manifest field {name!r}")

    version = data.get("version")
    if version is None:
        _header_error("version", "Missing required field 'version'")
    elif not isinstance(version, str) or not version:
        _header_error("version", "'version' must be a non-empty string")

    description = data.get("description")
    if description is not None and not isinstance(description, str):
        _header_error("description", "'description' must be a string")
        description = None

    includes: list[str] = []
    id_files: list[str] = []
    for name, target in (("includes", includes), ("idFiles", id_files)):
        value = data.get(name)
        if value is None:
            continue
        if not _is_string_list(value):
            _header_error(name, f"{name!r} must be a list of non-empty strings")
            continue
        target.extend(value)

    key = data.get("idempotencyKey")
    if key is not None and not is_valid_idempotency_key(key):
        _header_error(
            "idempotencyKey",
            "'idempotencyKey' must match [A-Za-z0-9:_-]+ and be at most "
            f"{IDEMPOTENCY_KEY_MAX_LENGTH} characters",
        )
        key = None

    strategy: DuplicateStrategy | None = None
    raw_strategy = data.get("duplicateStrategy")
    if raw_strategy is not None:
        if raw_strategy in _DUPLICATE_STRATEGIES:
            strategy = DuplicateStrategy(raw_strategy)
        else:
            _header_error(
                "duplicateStrategy",
                f"'duplicateStrategy' must be one of {list(_DUPLICATE_STRATEGIES)}",
            )

    changes = data.get("changes")
    if changes is not None and not isinstance(changes, list):
        _header_error("changes", "'changes' must be a list")

    base = path.parent
    manifest = Manifest(
        path=path,
        version=version if isinstance(version, str) else "",
        description=description,
        includes=tuple((base / p).resolve() for p in includes),
        id_files=tuple((base / p).resolve() for p in id_files),
        idempotency_key=key,
        duplicate_strategy=strategy,
    )
    return manifest, diagnostics


# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------


def parse_changes(raw_changes: Any, path: Path, offset: int = 0) -> ParsedChanges:
    """Normalise and validate a ``changes`` list.

    Parameters
    ----------
    raw_changes:
        The decoded ``changes`` value.  Anything other than a list yields
        no operations (the header check reports it).
    path:
        Declaring manifest path.
    offset:
        Position of this list's first change in the composed list.
    """
    parsed = ParsedChanges()
    if not isinstance(raw_changes, list):
        return parsed

    file = str(path)
    for index, raw in enumerate(raw_changes):
        position = offset + index
        if not isinstance(raw, dict):
            parsed.diagnostics.append(
                error(
                    INVALID_BOM,
                    "Each change must be an object",
                    Location(index=position, file=file),
                    rule="schema",
                )
            )
            continue

        op_name = raw.get("op")
        op_type = OPERATION_TYPES.get(op_name) if isinstance(op_name, str) else None
        if op_type is None:
            parsed.diagnostics.append(_unknown_op(op_name, position, file))
            continue

        outcome = normalize_change(raw)
        parsed.aliases_resolved += outcome.resolved
        location = _locator(position, op_name, file)
        for name, message in outcome.problems:
            parsed.diagnostics.append(error(INVALID_BOM, message, location(name), rule="schema"))

        fields = {k: v for k, v in outcome.change.items() if k != "op"}
        parsed.diagnostics.extend(_check_fields(op_type, fields, location))
        parsed.operations.append(
            op_type(fields=fields, source=SourceRef(file=file, index=index, position=position))
        )
    return parsed


def _locator(position: int, op: str, file: str):
    def _at(name: str | None = None) -> Location:
        return Location(index=position, field=name, op=op, file=file)

    return _at


def _unknown_op(op_name: Any, position: int, file: str) -> Diagnostic:
    location = Location(index=position, field="op", file=file)
    if not isinstance(op_name, str):
        return error(INVALID_BOM, "Change is missing a string 'op' field", location, rule="schema")
    close = difflib.get_close_matches(op_name, list(OPERATION_TYPES), n=1)
    hint = f"did you mean {close[0]!r}?" if close else None
    return error(INVALID_BOM, f"Unknown operation {op_name!r}", location, hint=hint, rule="schema")


def _check_fields(op_type: type[Operation], fields: dict[str, Any], location) -> list[Diagnostic]:
    diagnostics: list[Diagnostic] = []

    def _bad(name: str, message: str) -> None:
        diagnostics.append(error(INVALID_BOM, message, location(name), rule="schema"))

    allowed = op_type.allowed_fields()
    for name in fields:
        if name not in allowed:
            _bad(name, f"Unknown field {name!r} for operation {op_type.op!r}")

    for name in op_type.required:
        if name not in fields:
            _bad(name, f"Missing required field {name!r} for operation {op_type.op!r}")

    if op_type.at_least_one_of and not any(n in fields for n in op_type.at_least_one_of):
        names = ", ".join(op_type.at_least_one_of)
        diagnostics.append(
            error(
                INVALID_BOM,
                f"Operation {op_type.op!r} needs at least one of: {names}",
                location(None),
                rule="schema",
            )
        )

    reference_fields = {ref.field for ref in op_type.references}
    for name, value in fields.items():
        if name not in allowed:
            continue
        if name == "tempId" or name in reference_fields:
            if not isinstance(value, str) or not value:
                _bad(name, f"{name!r} must be a non-empty string")
        elif name in _STRING_FIELDS:
            if not isinstance(value, str):
                _bad(name, f"{name!r} must be a string")
        elif name in _NUMBER_FIELDS:
            if not _is_number(value):
                _bad(name, f"{name!r} must be a number")
        elif name in _BOOL_FIELDS:
            if not isinstance(value, bool):
                _bad(name, f"{name!r} must be a boolean")
        elif name == "properties":
            if not isinstance(value, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in value.items()
            ):
                _bad(name, "'properties' must be an object of string values")
        elif name == "accessType":
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 3:
                _bad(name, "'accessType' must be an integer between 0 and 3")
        elif name == "onDuplicate":
            if value not in _DUPLICATE_STRATEGIES:
                _bad(name, f"'onDuplicate' must be one of {list(_DUPLICATE_STRATEGIES)}")
    return diagnostics
