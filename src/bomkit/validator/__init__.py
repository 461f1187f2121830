"""Manifest validator module.

Exports the ``Validator`` class, the ``validate`` convenience function,
``Diagnostic`` types, and all built-in validation rules.
"""
from __future__ import annotations

from bomkit.validator.diagnostics import Diagnostic, DiagnosticSeverity, Location
from bomkit.validator.rules import DEFAULT_RULES, Rule
from bomkit.validator.validator import Validator, validate

__all__ = [
    "Validator",
    "validate",
    "Diagnostic",
    "DiagnosticSeverity",
    "Location",
    "Rule",
    "DEFAULT_RULES",
]
