"""Reading manifest documents and dumping composed manifests.

Manifests are JSON by default; files ending in ``.yaml`` or ``.yml`` are
read with PyYAML's ``safe_load``.  The composed (flattened) form produced
by ``ManifestSerializer`` is a plain dict/list structure that maps onto
both formats and is itself a valid single-file manifest.  Loaded idFiles are
kept as absolute paths so seeded symbols still resolve.

Usage
-----
::

    from bomkit.manifest.serializer import ManifestSerializer, read_document

    data = read_document(Path("model.json"))
    serializer = ManifestSerializer()
    text = serializer.to_yaml(composed)
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from bomkit.errors import ManifestLoadError

if TYPE_CHECKING:
    from bomkit.manifest.loader import ComposedManifest

YAML_SUFFIXES = frozenset({".yaml", ".yml"})


def read_document(path: Path, included_from: Path | None = None) -> Any:
    """Read and decode one manifest document.

    Raises
    ------
    ManifestLoadError
        If the file cannot be read or does not decode.
    """
    origin = f" (included from {included_from})" if included_from else ""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ManifestLoadError(
            f"Manifest not found: {path}{origin}", details={"path": str(path)}
        ) from None
    except UnicodeDecodeError as exc:
        raise ManifestLoadError(
            f"Manifest {path}{origin} is not valid UTF-8: {exc}", details={"path": str(path)}
        ) from exc
    except OSError as exc:
        raise ManifestLoadError(
            f"Cannot read manifest {path}{origin}: {exc}", details={"path": str(path)}
        ) from exc

    try:
        if path.suffix.lower() in YAML_SUFFIXES:
            return yaml.safe_load(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ManifestLoadError(
            f"Cannot parse manifest {path}{origin}: {exc}", details={"path": str(path)}
        ) from exc


class ManifestSerializer:
    """Dump a ``ComposedManifest`` as a flattened single-file manifest."""

    def to_dict(self, composed: "ComposedManifest") -> dict[str, Any]:
        data: dict[str, Any] = {"version": composed.version}
        if composed.description:
            data["description"] = composed.description
        if composed.idempotency_key:
            data["idempotencyKey"] = composed.idempotency_key
        if composed.duplicate_strategy is not None:
            data["duplicateStrategy"] = composed.duplicate_strategy.value
        if composed.id_files.loaded:
            data["idFiles"] = list(composed.id_files.loaded)
        data["changes"] = [op.to_dict() for op in composed.operations]
        return data

    def to_json(self, composed: "ComposedManifest", indent: int = 2) -> str:
        return json.dumps(self.to_dict(composed), indent=indent, ensure_ascii=False)

    def to_yaml(self, composed: "ComposedManifest") -> str:
        return yaml.safe_dump(
            self.to_dict(composed), default_flow_style=False, allow_unicode=True, sort_keys=False
        )
