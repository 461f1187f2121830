"""Manifest loader and composer.

``ManifestLoader`` reads a root manifest, merges its ``includes``
depth-first (include-then-self order), detects include cycles, and seeds a
``SymbolTable`` from every declared ``idFiles`` entry.  Schema problems are
collected as diagnostics on the result rather than raised, so that they can
be reported together with the reference checks.  Conditions that make the
composition itself impossible raise:

- ``ManifestLoadError`` for unreadable or undecodable files,
- ``CircularIncludeError`` when a file reappears on the current include path,
- ``IdFilesIncompleteError`` when declared idFiles are missing or malformed
  and ``allow_incomplete_idfiles`` is not set,
- ``SymbolConflictError`` when two idFiles bind one symbol differently.

Usage
-----
::

    from bomkit.manifest.loader import load_manifest

    composed = load_manifest("model/main.json")
    composed.operations      # flattened, in composition order
    composed.symbols         # seeded from idFiles
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bomkit.errors import CircularIncludeError, IdFilesIncompleteError
from bomkit.manifest.nodes import DuplicateStrategy, Operation
from bomkit.manifest.schema import parse_changes, parse_header
from bomkit.manifest.serializer import read_document
from bomkit.resolver.symbols import SymbolTable
from bomkit.validator.diagnostics import Diagnostic

logger = logging.getLogger(__name__)


@dataclass
class IdFileReport:
    """What happened to each declared idFile.

    Parameters
    ----------
    declared:
        Every idFile path declared across the include closure, in first
        declaration order.
    loaded:
        Paths that were read successfully.
    missing:
        Paths that do not exist.
    malformed:
        Paths that exist but are not a flat JSON object of string values.
    """

    declared: list[str] = field(default_factory=list)
    loaded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    malformed: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing and not self.malformed

    def remediation(self, root: Path) -> list[str]:
        """Return human-readable next steps for an incomplete set of idFiles."""
        steps = ["Apply the producer BOM first so required *.ids.json mappings are generated."]
        if self.missing:
            steps.append(f"Missing idFiles: {', '.join(self.missing)}")
        if self.malformed:
            steps.append('Malformed idFiles must be valid JSON objects: { "tempId": "id-..." }')
        steps.append(f"Re-run the consumer command: bomkit apply {root}")
        steps.append(
            "Use --allow-incomplete-idfiles only when you intentionally want best-effort behavior."
        )
        return steps

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "declared": list(self.declared),
            "loaded": list(self.loaded),
            "missing": list(self.missing),
            "malformed": list(self.malformed),
        }


@dataclass
class ComposedManifest:
    """A root manifest with its include closure merged in.

    Parameters
    ----------
    root:
        Absolute path of the root manifest.
    version:
        Root manifest ``version``.
    operations:
        Flattened operations in composition order.
    symbols:
        Symbol table seeded from the loaded idFiles.
    included_files:
        Every manifest file read, in load order, root last.
    id_files:
        idFile load report.
    """

    root: Path
    version: str
    operations: tuple[Operation, ...]
    symbols: SymbolTable
    description: str | None = None
    included_files: tuple[Path, ...] = ()
    id_files: IdFileReport = field(default_factory=IdFileReport)
    idempotency_key: str | None = None
    duplicate_strategy: DuplicateStrategy | None = None
    schema_diagnostics: list[Diagnostic] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aliases_resolved: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.operations

    @property
    def seeded_symbols(self) -> frozenset[str]:
        """Symbols that came from idFiles."""
        return frozenset(self.symbols)

    def summary(self) -> dict[str, Any]:
        return {
            "root": str(self.root),
            "version": self.version,
            "operations": len(self.operations),
            "includedFiles": [str(p) for p in self.included_files],
            "idFiles": self.id_files.to_dict(),
            "seededSymbols": len(self.symbols),
            "aliasesResolved": self.aliases_resolved,
            "warnings": list(self.warnings),
        }


class ManifestLoader:
    """Compose a manifest and its includes into one ``ComposedManifest``.

    Parameters
    ----------
    allow_incomplete_idfiles:
        When ``True``, missing or malformed idFiles are skipped with a
        warning instead of failing the load.
    """

    def __init__(self, allow_incomplete_idfiles: bool = False) -> None:
        self._allow_incomplete = allow_incomplete_idfiles

    def load(self, path: str | Path) -> ComposedManifest:
        """Load ``path`` and everything it includes.

        Parameters
        ----------
        path:
            Root manifest path.

        Returns
        -------
        ComposedManifest
            The composed manifest.  Check ``schema_diagnostics`` (or run the
            ``Validator``) before executing it.
        """
        root = Path(path).resolve()
        state = _LoadState()
        header = self._load_file(root, state, parent=None)

        symbols = SymbolTable()
        report = IdFileReport(declared=[str(p) for p in state.id_files])
        for id_file in state.id_files:
            self._load_id_file(id_file, symbols, report)

        if not report.complete:
            if not self._allow_incomplete:
                raise IdFilesIncompleteError(
                    report.missing, report.malformed, report.remediation(root)
                )
            for name in report.missing:
                state.warn(f"Skipping missing idFile {name}")
            for name in report.malformed:
                state.warn(f"Skipping malformed idFile {name}")

        return ComposedManifest(
            root=root,
            version=header.version if header else "",
            description=header.description if header else None,
            operations=tuple(state.operations),
            symbols=symbols,
            included_files=tuple(state.included),
            id_files=report,
            idempotency_key=header.idempotency_key if header else None,
            duplicate_strategy=header.duplicate_strategy if header else None,
            schema_diagnostics=state.diagnostics,
            warnings=state.warnings,
            aliases_resolved=state.aliases_resolved,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _load_file(self, path: Path, state: "_LoadState", parent: Path | None):
        if path in state.stack:
            cycle = state.stack[state.stack.index(path):] + [path]
            raise CircularIncludeError([str(p) for p in cycle])

        data = read_document(path, included_from=parent)
        header, diagnostics = parse_header(data, path)
        state.diagnostics.extend(diagnostics)
        if header is None:
            state.included.append(path)
            return None

        if parent is not None:
            if header.idempotency_key is not None:
                state.warn(f"Ignoring idempotencyKey declared by included manifest {path}")
            if header.duplicate_strategy is not None:
                state.warn(f"Ignoring duplicateStrategy declared by included manifest {path}")

        state.stack.append(path)
        try:
            for include in header.includes:
                self._load_file(include, state, parent=path)
        finally:
            state.stack.pop()

        for id_file in header.id_files:
            if id_file not in state.id_files:
                state.id_files.append(id_file)

        raw_changes = data.get("changes")
        parsed = parse_changes(raw_changes, path, offset=state.position)
        if isinstance(raw_changes, list):
            state.position += len(raw_changes)
        state.operations.extend(parsed.operations)
        state.diagnostics.extend(parsed.diagnostics)
        state.aliases_resolved += parsed.aliases_resolved
        state.included.append(path)
        logger.debug("Loaded %s (%d operations)", path, len(parsed.operations))
        return header

    def _load_id_file(self, path: Path, symbols: SymbolTable, report: IdFileReport) -> None:
        name = str(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            report.missing.append(name)
            return
        except (OSError, UnicodeDecodeError):
            report.malformed.append(name)
            return

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            report.malformed.append(name)
            return
        if not isinstance(data, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in data.items()
        ):
            report.malformed.append(name)
            return

        added = symbols.update(data, origin=name)
        report.loaded.append(name)
        logger.debug("Seeded %d symbols from idFile %s", added, name)


@dataclass
class _LoadState:
    stack: list[Path] = field(default_factory=list)
    included: list[Path] = field(default_factory=list)
    id_files: list[Path] = field(default_factory=list)
    operations: list[Operation] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aliases_resolved: int = 0
    position: int = 0

    def warn(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)


def load_manifest(path: str | Path, allow_incomplete_idfiles: bool = False) -> ComposedManifest:
    """Convenience function: compose ``path`` with a default ``ManifestLoader``."""
    return ManifestLoader(allow_incomplete_idfiles=allow_incomplete_idfiles).load(path)
