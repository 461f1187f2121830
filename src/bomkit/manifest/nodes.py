"""Data model for change manifests.

A manifest is a header plus an ordered list of change operations.  Every
operation kind is its own ``Operation`` subclass, keyed by its ``op``
string in ``OPERATION_TYPES``; the subclass declares which fields are
required, which are optional, which fields are references (and into which
symbol namespace they point), and which symbol kind the operation creates.
The union is closed: anything not listed in ``OPERATION_TYPES`` is rejected
by the schema layer before an ``Operation`` is ever constructed.

Operations are frozen.  Substitution and cross-validation produce new
instances through :meth:`Operation.with_fields` rather than mutating.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar


# ---------------------------------------------------------------------------
# Symbol namespaces and kinds
# ---------------------------------------------------------------------------


class Namespace(Enum):
    """The two disjoint symbol namespaces."""

    CONCEPT = auto()
    VISUAL = auto()


class SymbolKind(Enum):
    """What a creating operation produces."""

    ELEMENT = auto()
    RELATIONSHIP = auto()
    FOLDER = auto()
    VIEW = auto()
    VISUAL_OBJECT = auto()
    CONNECTION = auto()
    NOTE = auto()
    GROUP = auto()

    @property
    def namespace(self) -> Namespace:
        if self in _CONCEPT_KINDS:
            return Namespace.CONCEPT
        return Namespace.VISUAL

    @property
    def label(self) -> str:
        return self.name.lower().replace("_", " ")


_CONCEPT_KINDS = frozenset(
    {SymbolKind.ELEMENT, SymbolKind.RELATIONSHIP, SymbolKind.FOLDER, SymbolKind.VIEW}
)


class DuplicateStrategy(Enum):
    """How the remote service should treat a create that matches an existing concept."""

    ERROR = "error"
    REUSE = "reuse"
    RENAME = "rename"


# ---------------------------------------------------------------------------
# Reference declarations
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FieldRef:
    """A field of an operation that refers to another concept or visual.

    Parameters
    ----------
    field:
        Name of the field in the raw change, e.g. ``"sourceVisualId"``.
    namespace:
        The namespace a symbol in this field must belong to.
    kinds:
        The symbol kinds accepted in this position.
    """

    field: str
    namespace: Namespace
    kinds: frozenset[SymbolKind]


def _concept(name: str, *kinds: SymbolKind) -> FieldRef:
    return FieldRef(name, Namespace.CONCEPT, frozenset(kinds))


def _visual(name: str, *kinds: SymbolKind) -> FieldRef:
    return FieldRef(name, Namespace.VISUAL, frozenset(kinds))


_NODE_KINDS = (SymbolKind.VISUAL_OBJECT, SymbolKind.NOTE, SymbolKind.GROUP)
_CONTAINER_KINDS = (SymbolKind.VISUAL_OBJECT, SymbolKind.GROUP)
_CONNECTABLE_KINDS = (*_NODE_KINDS, SymbolKind.CONNECTION)
_ENDPOINT_KINDS = (SymbolKind.ELEMENT, SymbolKind.RELATIONSHIP)
_ADDRESSABLE_KINDS = (
    SymbolKind.ELEMENT,
    SymbolKind.RELATIONSHIP,
    SymbolKind.VIEW,
    SymbolKind.FOLDER,
)


# ---------------------------------------------------------------------------
# Source location
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SourceRef:
    """Where an operation was declared.

    Parameters
    ----------
    file:
        Path of the manifest that declared the operation.
    index:
        0-based position inside that manifest's own ``changes`` list.
    position:
        0-based position of the raw change in the composed list, or ``-1``
        when unknown.
    """

    file: str
    index: int
    position: int = -1

    @classmethod
    def unknown(cls) -> "SourceRef":
        """Return a sentinel used for operations built in code."""
        return cls(file="<memory>", index=-1)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=True)
class Operation:
    """Base class of every change operation.

    Parameters
    ----------
    fields:
        The operation's fields, excluding ``op``.  Stored read-only.
    source:
        Declaring manifest and position.
    """

    fields: Mapping[str, Any]
    source: SourceRef = field(default_factory=SourceRef.unknown, compare=False)

    op: ClassVar[str] = ""
    required: ClassVar[tuple[str, ...]] = ()
    optional: ClassVar[tuple[str, ...]] = ()
    references: ClassVar[tuple[FieldRef, ...]] = ()
    creates: ClassVar[SymbolKind | None] = None
    delete_style: ClassVar[bool] = False
    at_least_one_of: ClassVar[tuple[str, ...]] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.fields, MappingProxyType):
            object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    # -- field access ------------------------------------------------------

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    @property
    def temp_id(self) -> str | None:
        """The symbol this operation defines, if any."""
        value = self.fields.get("tempId")
        return value if isinstance(value, str) and value else None

    def reference_values(self) -> list[tuple[FieldRef, str]]:
        """Return ``(declaration, value)`` for every reference field that is set."""
        pairs: list[tuple[FieldRef, str]] = []
        for ref in self.references:
            value = self.fields.get(ref.field)
            if isinstance(value, str):
                pairs.append((ref, value))
        return pairs

    @classmethod
    def allowed_fields(cls) -> frozenset[str]:
        return frozenset(cls.required) | frozenset(cls.optional) | {"onDuplicate"}

    # -- derivation --------------------------------------------------------

    def with_fields(self, **changes: Any) -> "Operation":
        """Return a copy of this operation with some fields replaced."""
        merged = dict(self.fields)
        merged.update(changes)
        return replace(self, fields=merged)

    def to_dict(self) -> dict[str, Any]:
        """Return the wire representation ``{"op": ..., **fields}``."""
        return {"op": self.op, **self.fields}


_DESCRIPTIVE = ("documentation", "properties")


class CreateElement(Operation):
    op = "createElement"
    required = ("type", "name")
    optional = ("tempId", *_DESCRIPTIVE, "folderId")
    references = (_concept("folderId", SymbolKind.FOLDER),)
    creates = SymbolKind.ELEMENT


class CreateOrGetElement(CreateElement):
    op = "createOrGetElement"


class CreateRelationship(Operation):
    op = "createRelationship"
    required = ("type", "sourceId", "targetId")
    optional = ("tempId", "name", *_DESCRIPTIVE, "accessType", "strength")
    references = (
        _concept("sourceId", *_ENDPOINT_KINDS),
        _concept("targetId", *_ENDPOINT_KINDS),
    )
    creates = SymbolKind.RELATIONSHIP


class CreateOrGetRelationship(CreateRelationship):
    op = "createOrGetRelationship"


class SetProperty(Operation):
    op = "setProperty"
    required = ("id", "key", "value")
    references = (_concept("id", *_ADDRESSABLE_KINDS),)


class UpdateElement(Operation):
    op = "updateElement"
    required = ("id",)
    optional = ("name", *_DESCRIPTIVE)
    references = (_concept("id", SymbolKind.ELEMENT),)
    at_least_one_of = ("name", *_DESCRIPTIVE)


class UpdateRelationship(Operation):
    op = "updateRelationship"
    required = ("id",)
    optional = ("name", *_DESCRIPTIVE)
    references = (_concept("id", SymbolKind.RELATIONSHIP),)
    at_least_one_of = ("name", *_DESCRIPTIVE)


class DeleteElement(Operation):
    op = "deleteElement"
    required = ("id",)
    optional = ("cascade",)
    references = (_concept("id", SymbolKind.ELEMENT),)
    delete_style = True


class DeleteRelationship(Operation):
    op = "deleteRelationship"
    required = ("id",)
    references = (_concept("id", SymbolKind.RELATIONSHIP),)
    delete_style = True


class MoveToFolder(Operation):
    op = "moveToFolder"
    required = ("id", "folderId")
    references = (
        _concept("id", *_ADDRESSABLE_KINDS),
        _concept("folderId", SymbolKind.FOLDER),
    )


class CreateFolder(Operation):
    op = "createFolder"
    required = ("name",)
    optional = ("tempId", "parentId", "parentType", "documentation")
    references = (_concept("parentId", SymbolKind.FOLDER),)
    creates = SymbolKind.FOLDER
    at_least_one_of = ("parentId", "parentType")


class CreateView(Operation):
    op = "createView"
    required = ("name",)
    optional = ("tempId", "documentation", "folderId", "viewpoint")
    references = (_concept("folderId", SymbolKind.FOLDER),)
    creates = SymbolKind.VIEW


class DeleteView(Operation):
    op = "deleteView"
    required = ("viewId",)
    references = (_concept("viewId", SymbolKind.VIEW),)
    delete_style = True


_BOUNDS = ("x", "y", "width", "height")


class AddToView(Operation):
    op = "addToView"
    required = ("viewId", "elementId")
    optional = ("tempId", *_BOUNDS, "parentVisualId")
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _concept("elementId", SymbolKind.ELEMENT),
        _visual("parentVisualId", *_CONTAINER_KINDS),
    )
    creates = SymbolKind.VISUAL_OBJECT


class AddConnectionToView(Operation):
    op = "addConnectionToView"
    required = ("viewId", "relationshipId", "sourceVisualId", "targetVisualId")
    optional = ("tempId",)
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _concept("relationshipId", SymbolKind.RELATIONSHIP),
        _visual("sourceVisualId", *_CONNECTABLE_KINDS),
        _visual("targetVisualId", *_CONNECTABLE_KINDS),
    )
    creates = SymbolKind.CONNECTION


class NestInView(Operation):
    op = "nestInView"
    required = ("viewId", "visualId", "parentVisualId")
    optional = ("x", "y")
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _visual("visualId", *_NODE_KINDS),
        _visual("parentVisualId", *_CONTAINER_KINDS),
    )


class DeleteConnectionFromView(Operation):
    op = "deleteConnectionFromView"
    required = ("viewId", "connectionId")
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _visual("connectionId", SymbolKind.CONNECTION),
    )
    delete_style = True


class StyleViewObject(Operation):
    op = "styleViewObject"
    required = ("viewObjectId",)
    optional = (
        "fillColor",
        "fontColor",
        "lineColor",
        "lineWidth",
        "font",
        "opacity",
        "alpha",
        "textPosition",
    )
    references = (_visual("viewObjectId", *_NODE_KINDS),)


class StyleConnection(Operation):
    op = "styleConnection"
    required = ("connectionId",)
    optional = ("lineColor", "lineWidth", "fontColor", "font", "textPosition")
    references = (_visual("connectionId", SymbolKind.CONNECTION),)


class MoveViewObject(Operation):
    op = "moveViewObject"
    required = ("viewObjectId",)
    optional = _BOUNDS
    references = (_visual("viewObjectId", *_NODE_KINDS),)
    at_least_one_of = _BOUNDS


class CreateNote(Operation):
    op = "createNote"
    required = ("viewId", "content")
    optional = ("tempId", *_BOUNDS, "parentVisualId")
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _visual("parentVisualId", *_CONTAINER_KINDS),
    )
    creates = SymbolKind.NOTE


class CreateGroup(Operation):
    op = "createGroup"
    required = ("viewId", "name")
    optional = ("tempId", *_BOUNDS, "parentVisualId", "documentation")
    references = (
        _concept("viewId", SymbolKind.VIEW),
        _visual("parentVisualId", *_CONTAINER_KINDS),
    )
    creates = SymbolKind.GROUP


OPERATION_TYPES: dict[str, type[Operation]] = {
    cls.op: cls
    for cls in (
        CreateElement,
        CreateOrGetElement,
        CreateRelationship,
        CreateOrGetRelationship,
        SetProperty,
        UpdateElement,
        UpdateRelationship,
        DeleteElement,
        DeleteRelationship,
        MoveToFolder,
        CreateFolder,
        CreateView,
        DeleteView,
        AddToView,
        AddConnectionToView,
        NestInView,
        DeleteConnectionFromView,
        StyleViewObject,
        StyleConnection,
        MoveViewObject,
        CreateNote,
        CreateGroup,
    )
}


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Manifest:
    """One parsed manifest file, before its includes are merged.

    Parameters
    ----------
    path:
        Absolute path of the file.
    version:
        Manifest format version.
    description:
        Free-text description.
    includes:
        Include paths, already resolved relative to ``path``.
    id_files:
        idFile paths, already resolved relative to ``path``.
    idempotency_key:
        Base idempotency key for the apply, if any.
    duplicate_strategy:
        Request-level duplicate strategy, if any.
    changes:
        The file's own operations in declaration order.
    """

    path: Path
    version: str
    description: str | None = None
    includes: tuple[Path, ...] = ()
    id_files: tuple[Path, ...] = ()
    idempotency_key: str | None = None
    duplicate_strategy: DuplicateStrategy | None = None
    changes: tuple[Operation, ...] = ()
