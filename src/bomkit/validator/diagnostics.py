"""Diagnostic types for the manifest schema checks and the reference validator.

A ``Diagnostic`` is an annotated message attached to a location inside a
composed manifest: the operation's index in the flattened list, the field
that is at fault, the operation kind, and the file that declared it.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class DiagnosticSeverity(Enum):
    """Severity levels for diagnostics."""

    ERROR = auto()
    WARNING = auto()
    INFORMATION = auto()


@dataclass(frozen=True)
class Location:
    """Where a diagnostic points.

    Parameters
    ----------
    index:
        0-based index of the operation in the flattened list, or ``None``
        for header-level findings.
    field:
        Offending field name, if any.
    op:
        Operation kind, if known.
    file:
        Declaring manifest path, if known.
    """

    index: int | None = None
    field: str | None = None
    op: str | None = None
    file: str | None = None

    @property
    def path(self) -> str:
        """Return a JSON-pointer-like path, e.g. ``/changes/3/sourceId``."""
        if self.index is None:
            return f"/{self.field}" if self.field else "/"
        base = f"/changes/{self.index}"
        return f"{base}/{self.field}" if self.field else base


@dataclass(frozen=True)
class Diagnostic:
    """A single validation finding.

    Parameters
    ----------
    severity:
        How serious this finding is.
    code:
        Machine-readable code from the error taxonomy, e.g. ``"INVALID_BOM"``.
    message:
        Human-readable description of the problem.
    location:
        Where the problem is.
    hint:
        Optional human-readable fix suggestion.
    rule:
        The rule name that produced this diagnostic.
    """

    severity: DiagnosticSeverity
    code: str
    message: str
    location: Location = field(default_factory=Location)
    hint: str | None = field(default=None)
    rule: str = field(default="")

    def __str__(self) -> str:
        prefix = f"[{self.code}] {self.severity.name}"
        hint_part = f" (hint: {self.hint})" if self.hint else ""
        return f"{prefix} at {self.location.path}: {self.message}{hint_part}"

    @property
    def is_error(self) -> bool:
        """Return True if this diagnostic should block a successful validation."""
        return self.severity == DiagnosticSeverity.ERROR

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "severity": self.severity.name.lower(),
            "code": self.code,
            "message": self.message,
            "path": self.location.path,
        }
        if self.location.op is not None:
            payload["op"] = self.location.op
        if self.location.file is not None:
            payload["file"] = self.location.file
        if self.hint:
            payload["hint"] = self.hint
        if self.rule:
            payload["rule"] = self.rule
        return payload


def error(
    code: str,
    message: str,
    location: Location | None = None,
    hint: str | None = None,
    rule: str = "",
) -> Diagnostic:
    return Diagnostic(
        severity=DiagnosticSeverity.ERROR,
        code=code,
        message=message,
        location=location or Location(),
        hint=hint,
        rule=rule,
    )


def warning(
    code: str,
    message: str,
    location: Location | None = None,
    hint: str | None = None,
    rule: str = "",
) -> Diagnostic:
    return Diagnostic(
        severity=DiagnosticSeverity.WARNING,
        code=code,
        message=message,
        location=location or Location(),
        hint=hint,
        rule=rule,
    )
