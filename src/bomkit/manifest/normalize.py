"""Convenience field normalisation applied to raw changes before schema checks.

Manifest authors often write short or legacy field names (``w``/``h``,
``text``, ``elementId`` on id-addressed operations, a readable
``fontStyle``).  ``normalize_change`` rewrites those into the canonical
fields without changing meaning.  When an alias and its canonical field
are both present with different values the change is left untouched and
a problem is reported instead.

Usage
-----
::

    from bomkit.manifest.normalize import normalize_change

    outcome = normalize_change({"op": "createNote", "viewId": "v", "text": "hi"})
    outcome.change       # {"op": "createNote", "viewId": "v", "content": "hi"}
    outcome.resolved     # 1
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_SIZE_ALIASES = (("w", "width"), ("h", "height"))
_ID_ALIASES = (("elementId", "id"), ("relationshipId", "id"))

FIELD_ALIASES: dict[str, tuple[tuple[str, str], ...]] = {
    "addToView": _SIZE_ALIASES,
    "moveViewObject": (*_SIZE_ALIASES, ("visualId", "viewObjectId")),
    "createNote": (*_SIZE_ALIASES, ("text", "content")),
    "createGroup": _SIZE_ALIASES,
    "setProperty": _ID_ALIASES,
    "updateElement": _ID_ALIASES,
    "updateRelationship": _ID_ALIASES,
    "moveToFolder": _ID_ALIASES,
    "deleteElement": _ID_ALIASES,
    "deleteRelationship": _ID_ALIASES,
    "styleViewObject": (("visualId", "viewObjectId"),),
    "styleConnection": (("viewConnectionId", "connectionId"),),
    "deleteConnectionFromView": (("viewConnectionId", "connectionId"),),
    "nestInView": (("viewObjectId", "visualId"),),
}

ACCESS_TYPES: dict[str, int] = {
    "write": 0,
    "read": 1,
    "access": 2,
    "readwrite": 3,
}

FONT_STYLES: dict[str, int] = {
    "normal": 0,
    "bold": 1,
    "italic": 2,
    "bold|italic": 3,
    "italic|bold": 3,
}

_RELATIONSHIP_OPS = frozenset({"createRelationship", "createOrGetRelationship"})


@dataclass
class NormalizedChange:
    """Result of normalising one raw change.

    Parameters
    ----------
    change:
        The rewritten change (a new dict; the input is not modified).
    resolved:
        How many aliases were folded into canonical fields.
    problems:
        ``(field, message)`` pairs for aliases that could not be applied.
    """

    change: dict[str, Any]
    resolved: int = 0
    problems: list[tuple[str, str]] = field(default_factory=list)


def normalize_change(raw: dict[str, Any]) -> NormalizedChange:
    """Rewrite convenience aliases in ``raw`` into canonical fields."""
    outcome = NormalizedChange(change=dict(raw))
    op = raw.get("op")
    if not isinstance(op, str):
        return outcome

    for alias, canonical in FIELD_ALIASES.get(op, ()):
        _fold_alias(outcome, alias, canonical)

    if op == "styleViewObject":
        _fold_font_style(outcome)
    if op in _RELATIONSHIP_OPS:
        _fold_access_type(outcome)
    return outcome


def _fold_alias(outcome: NormalizedChange, alias: str, canonical: str) -> None:
    change = outcome.change
    if alias not in change:
        return
    value = change[alias]
    if canonical in change and change[canonical] != value:
        outcome.problems.append(
            (
                alias,
                f"Conflicting values for {canonical!r} ({change[canonical]!r}) "
                f"and its alias {alias!r} ({value!r})",
            )
        )
        return
    del change[alias]
    change[canonical] = value
    outcome.resolved += 1


def _fold_font_style(outcome: NormalizedChange) -> None:
    change = outcome.change
    if "fontStyle" not in change:
        return
    style = change["fontStyle"]
    if isinstance(style, bool):
        code = None
    elif isinstance(style, int):
        code = style if 0 <= style <= 3 else None
    elif isinstance(style, str):
        code = FONT_STYLES.get(style.strip().lower().replace(" ", ""))
    else:
        code = None
    if code is None:
        outcome.problems.append(
            ("fontStyle", f"Unknown fontStyle {style!r}; expected one of {sorted(FONT_STYLES)}")
        )
        return
    font = f"|0|{code}"
    if "font" in change and change["font"] != font:
        outcome.problems.append(
            ("fontStyle", f"Conflicting values for 'font' ({change['font']!r}) and 'fontStyle'")
        )
        return
    del change["fontStyle"]
    change["font"] = font
    outcome.resolved += 1


def _fold_access_type(outcome: NormalizedChange) -> None:
    change = outcome.change
    value = change.get("accessType")
    if not isinstance(value, str):
        return
    code = ACCESS_TYPES.get(value.strip().lower())
    if code is None:
        outcome.problems.append(
            ("accessType", f"Unknown accessType {value!r}; expected one of {sorted(ACCESS_TYPES)}")
        )
        return
    change["accessType"] = code
    outcome.resolved += 1
