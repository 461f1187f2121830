"""Side-car symbol files (``<manifest stem>.ids.json``).

A side-car is a flat JSON object of symbol → real ID written next to the
manifest after an apply.  Later manifests list it under ``idFiles``.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".ids.json"


def default_sidecar_path(manifest_path: Path) -> Path:
    """Return ``model.ids.json`` for ``model.json`` (or ``model.yaml``)."""
    return manifest_path.with_name(f"{manifest_path.stem}{SIDECAR_SUFFIX}")


def save_sidecar(path: Path, mapping: Mapping[str, str]) -> Path:
    """Write ``mapping`` as pretty, key-sorted JSON and return ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(dict(sorted(mapping.items())), indent=2, ensure_ascii=False)
    path.write_text(text + "\n", encoding="utf-8")
    logger.info("Saved %d symbol mappings to %s", len(mapping), path)
    return path
