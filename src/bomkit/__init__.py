"""bomkit: compose, validate and apply change manifests against a modeling service.

Public API
----------
The stable public surface is everything exported from this module.
Anything inside submodules not re-exported here is considered private
and may change without notice.

Example
-------
::

    import bomkit
    from bomkit.client import ModelApiClient

    # Compose a manifest with its includes and idFiles
    composed = bomkit.load("model/main.json")

    # Static checks: schema, symbol uniqueness, ordering, namespaces
    diagnostics = bomkit.validate(composed)

    # Apply chunk by chunk
    with ModelApiClient("http://127.0.0.1:8765") as client:
        result = bomkit.apply(composed, client)

    bomkit.__version__
    '0.1.0'
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from bomkit.convenience import BomFile

__version__: str = "0.1.0"

if TYPE_CHECKING:
    from bomkit.client.api import ModelApiClient
    from bomkit.executor.executor import ApplyOptions
    from bomkit.executor.results import ApplyResult
    from bomkit.manifest.loader import ComposedManifest
    from bomkit.validator.diagnostics import Diagnostic


def load(path: str | Path, allow_incomplete_idfiles: bool = False) -> "ComposedManifest":
    """Compose a manifest with its includes and idFiles.

    Parameters
    ----------
    path:
        Root manifest path (JSON, or YAML for ``.yaml``/``.yml``).
    allow_incomplete_idfiles:
        Skip missing or malformed idFiles with a warning instead of failing.

    Returns
    -------
    ComposedManifest
        The flattened operations and the seeded symbol table.

    Raises
    ------
    bomkit.errors.ManifestLoadError
        If a file cannot be read or parsed.
    bomkit.errors.CircularIncludeError
        If the include graph has a cycle.
    bomkit.errors.IdFilesIncompleteError
        If declared idFiles are missing or malformed.
    """
    from bomkit.manifest.loader import load_manifest

    return load_manifest(path, allow_incomplete_idfiles=allow_incomplete_idfiles)


def validate(composed: "ComposedManifest") -> list["Diagnostic"]:
    """Run the static checks on a composed manifest.

    Returns
    -------
    list[Diagnostic]
        All findings; the manifest is valid when none is an error.
    """
    from bomkit.validator.validator import validate as _validate

    return _validate(composed)


def apply(
    composed: "ComposedManifest",
    client: "ModelApiClient",
    options: "ApplyOptions | None" = None,
) -> "ApplyResult":
    """Validate and apply a composed manifest chunk by chunk.

    Parameters
    ----------
    composed:
        The manifest to apply.
    client:
        Client for the modeling service.
    options:
        Apply options; defaults to ``ApplyOptions()``.

    Returns
    -------
    ApplyResult
        ``status`` is ``"complete"`` or ``"partial_error"``.

    Raises
    ------
    bomkit.errors.InvalidManifestError
        If the manifest fails static validation.  Nothing is submitted.
    """
    from bomkit.executor.executor import apply_manifest

    return apply_manifest(composed, client, options)


__all__ = [
    "__version__",
    "BomFile",
    "load",
    "validate",
    "apply",
]
