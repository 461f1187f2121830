"""Manifest validator: static checks of a ``ComposedManifest``.

The ``Validator`` runs a configurable set of rules against a composed
manifest and returns every ``Diagnostic`` they produce.  It never raises
and never stops at the first problem; a manifest with no error-level
diagnostics is valid and may be executed.

Usage
-----
::

    from bomkit.manifest import load_manifest
    from bomkit.validator import Validator

    composed = load_manifest("model.json")
    diagnostics = Validator().validate(composed)
    errors = [d for d in diagnostics if d.is_error]
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from bomkit.errors import INVALID_BOM, InvalidManifestError
from bomkit.validator.diagnostics import Diagnostic, Location, error
from bomkit.validator.rules import DEFAULT_RULES, Rule

if TYPE_CHECKING:
    from bomkit.manifest.loader import ComposedManifest


def _sort_key(diagnostic: Diagnostic) -> tuple[int, str]:
    index = diagnostic.location.index
    return (-1 if index is None else index, diagnostic.location.field or "")


class Validator:
    """Static validator for composed manifests.

    Parameters
    ----------
    rules:
        The list of validation rules to run.  Defaults to all built-in
        rules (``DEFAULT_RULES``).
    """

    def __init__(self, rules: list[Rule] | None = None) -> None:
        self._rules: list[Rule] = rules if rules is not None else list(DEFAULT_RULES)

    def validate(self, composed: "ComposedManifest") -> list[Diagnostic]:
        """Run all rules against ``composed`` and return the collected diagnostics.

        Returns
        -------
        list[Diagnostic]
            All findings, sorted by operation index (header findings
            first).  May be empty if the manifest is valid.
        """
        all_diagnostics: list[Diagnostic] = []
        for rule in self._rules:
            try:
                all_diagnostics.extend(rule(composed))
            except Exception as exc:  # noqa: BLE001
                all_diagnostics.append(
                    error(
                        INVALID_BOM,
                        f"Internal validator error in rule {rule.__name__!r}: {exc}",
                        Location(file=str(composed.root)),
                        hint="Please report this as a bug",
                        rule=rule.__name__,
                    )
                )

        all_diagnostics.sort(key=_sort_key)
        return all_diagnostics

    def check(self, composed: "ComposedManifest") -> list[Diagnostic]:
        """Validate and raise if any error-level diagnostic was produced.

        Returns
        -------
        list[Diagnostic]
            The non-error diagnostics (warnings) when the manifest is valid.

        Raises
        ------
        InvalidManifestError
            Carrying every error-level diagnostic.
        """
        diagnostics = self.validate(composed)
        errors = [d for d in diagnostics if d.is_error]
        if errors:
            raise InvalidManifestError(
                f"Manifest {composed.root} has {len(errors)} error(s)", errors
            )
        return diagnostics

    def add_rule(self, rule: Rule) -> None:
        """Add a custom rule to this validator instance.

        Parameters
        ----------
        rule:
            A callable ``(ComposedManifest) -> list[Diagnostic]``.
        """
        self._rules.append(rule)

    @property
    def rule_count(self) -> int:
        """Return the number of rules currently registered."""
        return len(self._rules)


def validate(composed: "ComposedManifest") -> list[Diagnostic]:
    """Convenience function: validate ``composed`` with the default rules."""
    return Validator().validate(composed)
