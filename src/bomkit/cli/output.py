"""Result envelopes and rendering for the CLI.

Every command that reports a result builds the same envelope::

    {"success": bool, "data": ..., "error": {"code", "message", "details"},
     "metadata": {"timestamp": ..., "durationMs": ...}}

``--output json`` and ``--output yaml`` print the envelope as is;
``--output text`` hands it to a command-specific rich renderer.
"""
from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import click
import yaml

from bomkit.errors import BomError


@dataclass
class OutputContext:
    """Per-invocation output settings."""

    fmt: str = "text"
    started: float = 0.0

    def metadata(self) -> dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "durationMs": int((time.monotonic() - self.started) * 1000),
        }


def success_envelope(ctx: OutputContext, data: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "metadata": ctx.metadata()}


def error_envelope(
    ctx: OutputContext,
    code: str,
    message: str,
    details: Any = None,
    data: Any = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    envelope: dict[str, Any] = {"success": False}
    if data is not None:
        envelope["data"] = data
    envelope["error"] = error
    envelope["metadata"] = ctx.metadata()
    return envelope


def exception_envelope(ctx: OutputContext, exc: BomError) -> dict[str, Any]:
    return error_envelope(ctx, exc.code, exc.message, exc.details)


def emit(
    ctx: OutputContext,
    envelope: dict[str, Any],
    render_text: Callable[[dict[str, Any]], None],
) -> None:
    """Print ``envelope`` in the selected format."""
    if ctx.fmt == "json":
        click.echo(json.dumps(envelope, indent=2, ensure_ascii=False, default=str))
    elif ctx.fmt == "yaml":
        click.echo(yaml.safe_dump(envelope, default_flow_style=False, allow_unicode=True, sort_keys=False))
    else:
        render_text(envelope)
