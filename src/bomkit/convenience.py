"""Convenience wrapper for the load-validate-apply flow.

Example
-------
::

    from bomkit import BomFile

    bom = BomFile("model/main.json")
    if bom.is_valid():
        result = bom.apply(client)
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bomkit.client.api import ModelApiClient
    from bomkit.executor.executor import ApplyOptions
    from bomkit.executor.results import ApplyResult, ExecutionPlan
    from bomkit.manifest.loader import ComposedManifest
    from bomkit.validator.diagnostics import Diagnostic


class BomFile:
    """A composed manifest with shortcuts for the common operations.

    Parameters
    ----------
    path:
        Root manifest path.
    allow_incomplete_idfiles:
        Skip missing or malformed idFiles instead of failing.
    """

    def __init__(self, path: str | Path, allow_incomplete_idfiles: bool = False) -> None:
        import bomkit as _bomkit

        self._path = Path(path)
        self._composed: ComposedManifest = _bomkit.load(
            self._path, allow_incomplete_idfiles=allow_incomplete_idfiles
        )

    @property
    def composed(self) -> "ComposedManifest":
        """The composed manifest."""
        return self._composed

    @property
    def operation_count(self) -> int:
        return len(self._composed.operations)

    def validate(self) -> list["Diagnostic"]:
        import bomkit as _bomkit

        return _bomkit.validate(self._composed)

    def is_valid(self) -> bool:
        """Return True if the manifest has no ERROR-level diagnostics."""
        return not any(d.is_error for d in self.validate())

    def plan(self, chunk_size: int | None = None) -> "ExecutionPlan":
        """Return the chunk layout an apply would use."""
        from bomkit.executor.executor import RELIABLE_BATCH_SIZE, plan_execution

        return plan_execution(self._composed.operations, chunk_size or RELIABLE_BATCH_SIZE)

    def apply(self, client: "ModelApiClient", options: "ApplyOptions | None" = None) -> "ApplyResult":
        import bomkit as _bomkit

        return _bomkit.apply(self._composed, client, options)

    def flatten(self) -> dict[str, Any]:
        """Return the composed manifest as a single-file manifest dict."""
        from bomkit.manifest.serializer import ManifestSerializer

        return ManifestSerializer().to_dict(self._composed)

    def __repr__(self) -> str:
        return f"BomFile(path={str(self._path)!r}, operations={self.operation_count})"
