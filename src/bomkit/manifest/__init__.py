"""Manifest data model, schema checks, normalisation and composition.

Exports the ``Operation`` variants, ``Manifest``, the ``ManifestLoader``
with its ``load_manifest`` convenience function, and ``ComposedManifest``.
"""
from __future__ import annotations

from bomkit.manifest.loader import (
    ComposedManifest,
    IdFileReport,
    ManifestLoader,
    load_manifest,
)
from bomkit.manifest.nodes import (
    OPERATION_TYPES,
    DuplicateStrategy,
    FieldRef,
    Manifest,
    Namespace,
    Operation,
    SourceRef,
    SymbolKind,
)
from bomkit.manifest.normalize import NormalizedChange, normalize_change
from bomkit.manifest.serializer import ManifestSerializer, read_document

__all__ = [
    "OPERATION_TYPES",
    "ComposedManifest",
    "DuplicateStrategy",
    "FieldRef",
    "IdFileReport",
    "Manifest",
    "ManifestLoader",
    "ManifestSerializer",
    "Namespace",
    "NormalizedChange",
    "Operation",
    "SourceRef",
    "SymbolKind",
    "load_manifest",
    "normalize_change",
    "read_document",
]
