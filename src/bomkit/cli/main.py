"""CLI entry point for bomkit.

Invoked as::

    bomkit [OPTIONS] COMMAND [ARGS]...

or, during development::

    python -m bomkit.cli.main

Commands
--------
verify      Compose a manifest and run the static checks
apply       Apply a manifest to the modeling service chunk by chunk
flatten     Print the composed manifest as a single file
version     Show version information
"""
from __future__ import annotations

import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from bomkit.cli.output import (
    OutputContext,
    emit,
    error_envelope,
    exception_envelope,
    success_envelope,
)
from bomkit.errors import INVALID_BOM, BomError

if TYPE_CHECKING:
    from bomkit.config import Settings
    from bomkit.manifest.loader import ComposedManifest
    from bomkit.validator.diagnostics import Diagnostic

console = Console()
err_console = Console(stderr=True)


class CliState:
    """Options shared by every command."""

    def __init__(self, settings: "Settings", output: OutputContext) -> None:
        self.settings = settings
        self.output = output


def _configure_logging(verbose: bool) -> None:
    """Route ``bomkit`` log records to stderr through rich."""
    package_logger = logging.getLogger("bomkit")
    for handler in list(package_logger.handlers):
        if isinstance(handler, RichHandler):
            package_logger.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, show_time=verbose)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _severity_color(severity_name: str) -> str:
    """Map a DiagnosticSeverity name to a Rich color string."""
    colors = {
        "ERROR": "red",
        "WARNING": "yellow",
        "INFORMATION": "blue",
    }
    return colors.get(severity_name, "white")


def _fail(state: CliState, envelope: dict[str, Any], render_text=None) -> NoReturn:
    """Print an error envelope and exit with status 1."""
    emit(state.output, envelope, render_text or _render_error)
    sys.exit(1)


def _render_error(envelope: dict[str, Any]) -> None:
    error = envelope.get("error", {})
    err_console.print(f"[red]Error[/red] [{error.get('code')}]: {error.get('message')}")
    details = error.get("details")
    if isinstance(details, dict):
        for step in details.get("nextSteps", []):
            err_console.print(f"  - {step}")
        cycle = details.get("cycle")
        if cycle:
            err_console.print(f"  cycle: {' -> '.join(cycle)}")


def _load_or_exit(state: CliState, file: str, allow_incomplete: bool) -> "ComposedManifest":
    """Compose ``file``, printing the error envelope and exiting on failure."""
    from bomkit.manifest.loader import load_manifest

    try:
        return load_manifest(file, allow_incomplete_idfiles=allow_incomplete)
    except BomError as exc:
        _fail(state, exception_envelope(state.output, exc))


def _make_client(state: CliState):
    from bomkit.client.api import ModelApiClient

    return ModelApiClient(state.settings.base_url, timeout=state.settings.timeout_seconds)


def _resolve_names(state: CliState, composed: "ComposedManifest") -> dict[str, str]:
    from bomkit.resolver.names import resolve_by_name

    with _make_client(state) as client:
        return resolve_by_name(composed, client.search)


def _dominant_code(errors: list["Diagnostic"]) -> str:
    codes = {d.code for d in errors}
    return codes.pop() if len(codes) == 1 else INVALID_BOM


def _diagnostics_table(title: str, diagnostics: list[dict[str, Any]]) -> Table:
    table = Table(title=title, show_lines=True)
    table.add_column("Severity", style="bold", min_width=10)
    table.add_column("Code", min_width=8)
    table.add_column("Location", min_width=10)
    table.add_column("Message")
    for d in diagnostics:
        severity = d["severity"].upper()
        color = _severity_color(severity)
        location = d["path"] + (f"\n[dim]{d['op']}[/dim]" if d.get("op") else "")
        table.add_row(
            f"[{color}]{severity}[/{color}]",
            d["code"],
            location,
            d["message"] + (f"\n[dim]hint: {d['hint']}[/dim]" if d.get("hint") else ""),
        )
    return table


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="bomkit")
@click.option("--base-url", default=None, help="Modeling service URL (overrides BOMKIT_BASE_URL)")
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["text", "json", "yaml"], case_sensitive=False),
    default="text",
    help="Result format",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr")
@click.pass_context
def cli(ctx: click.Context, base_url: str | None, output_format: str, verbose: bool) -> None:
    """Compose, validate and apply change manifests against a modeling service."""
    from bomkit.config import load_settings

    _configure_logging(verbose)
    settings = load_settings()
    if base_url:
        settings = replace(settings, base_url=base_url.rstrip("/"))
    ctx.obj = CliState(settings, OutputContext(fmt=output_format.lower(), started=time.monotonic()))


# ---------------------------------------------------------------------------
# version command
# ---------------------------------------------------------------------------


@cli.command(name="version")
@click.pass_obj
def version_command(state: CliState) -> None:
    """Show detailed version information."""
    from bomkit import __version__

    python = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    data = {
        "version": __version__,
        "python": python,
        "platform": sys.platform,
        "baseUrl": state.settings.base_url,
    }

    def _render(_envelope: dict[str, Any]) -> None:
        table = Table(show_header=False, box=None)
        table.add_row("[bold]bomkit[/bold]", f"v{__version__}")
        table.add_row("Python", python)
        table.add_row("Platform", sys.platform)
        table.add_row("Service", state.settings.base_url)
        console.print(table)

    emit(state.output, success_envelope(state.output, data), _render)


# ---------------------------------------------------------------------------
# verify command
# ---------------------------------------------------------------------------


@cli.command(name="verify")
@click.argument("file", type=click.Path(exists=False))
@click.option(
    "--allow-incomplete-idfiles",
    is_flag=True,
    default=False,
    help="Skip missing or malformed idFiles instead of failing",
)
@click.option(
    "--resolve-names",
    is_flag=True,
    default=False,
    help="Look up undeclared references by exact concept name",
)
@click.pass_obj
def verify_command(state: CliState, file: str, allow_incomplete_idfiles: bool, resolve_names: bool) -> None:
    """Compose a manifest and run the static checks.

    FILE is the root manifest (JSON, or YAML for .yaml/.yml).
    """
    from bomkit.validator import Validator

    composed = _load_or_exit(state, file, allow_incomplete_idfiles)
    resolved = _resolve_names(state, composed) if resolve_names else {}
    diagnostics = Validator().validate(composed)
    errors = [d for d in diagnostics if d.is_error]

    data = {
        "valid": not errors,
        "file": file,
        "summary": composed.summary(),
        "resolvedNames": resolved,
        "diagnostics": [d.to_dict() for d in diagnostics],
    }

    def _render(envelope: dict[str, Any]) -> None:
        if not diagnostics:
            console.print(
                f"[green]OK[/green] {file}: {len(composed.operations)} operations, "
                f"{len(composed.included_files)} file(s), no issues found"
            )
            return
        console.print(_diagnostics_table(f"Verify: {file}", data["diagnostics"]))
        warnings = len(diagnostics) - len(errors)
        console.print(f"\n[bold]Summary:[/bold] {len(errors)} error(s), {warnings} warning(s)")

    if errors:
        _fail(
            state,
            error_envelope(
                state.output,
                _dominant_code(errors),
                f"{file} has {len(errors)} error(s)",
                details={"errors": [d.to_dict() for d in errors]},
                data=data,
            ),
            _render,
        )
    emit(state.output, success_envelope(state.output, data), _render)


# ---------------------------------------------------------------------------
# apply command
# ---------------------------------------------------------------------------


@cli.command(name="apply")
@click.argument("file", type=click.Path(exists=False))
@click.option("--chunk-size", type=click.IntRange(1, 1000), default=None, help="Operations per chunk")
@click.option("--dry-run", is_flag=True, default=False, help="Validate and show the chunk plan only")
@click.option("--poll-interval", type=click.IntRange(50, 60_000), default=None, help="Poll interval (ms)")
@click.option("--poll-timeout", type=click.IntRange(1_000, 3_600_000), default=None, help="Per-chunk timeout (ms)")
@click.option("--save-ids", "save_ids_path", type=click.Path(), default=None, help="Side-car file to write")
@click.option("--no-save-ids", is_flag=True, default=False, help="Do not write a side-car file")
@click.option("--allow-incomplete-idfiles", is_flag=True, default=False, help="Skip missing idFiles")
@click.option("--resolve-names", is_flag=True, default=False, help="Look up undeclared references by name")
@click.option("--idempotency-key", default=None, help="Base idempotency key (overrides the manifest)")
@click.option(
    "--duplicate-strategy",
    type=click.Choice(["error", "reuse", "rename"], case_sensitive=False),
    default=None,
    help="Duplicate handling (overrides the manifest)",
)
@click.pass_obj
def apply_command(
    state: CliState,
    file: str,
    chunk_size: int | None,
    dry_run: bool,
    poll_interval: int | None,
    poll_timeout: int | None,
    save_ids_path: str | None,
    no_save_ids: bool,
    allow_incomplete_idfiles: bool,
    resolve_names: bool,
    idempotency_key: str | None,
    duplicate_strategy: str | None,
) -> None:
    """Apply a manifest to the modeling service chunk by chunk.

    FILE is the root manifest (JSON, or YAML for .yaml/.yml).
    """
    from bomkit.errors import InvalidManifestError
    from bomkit.executor import ApplyOptions, apply_manifest, plan_execution
    from bomkit.manifest.nodes import DuplicateStrategy
    from bomkit.manifest.schema import is_valid_idempotency_key
    from bomkit.validator import Validator

    if save_ids_path and no_save_ids:
        raise click.UsageError("--save-ids and --no-save-ids are mutually exclusive")
    if idempotency_key is not None and not is_valid_idempotency_key(idempotency_key):
        raise click.BadParameter(
            "must match [A-Za-z0-9:_-]+ and be at most 128 characters",
            param_hint="--idempotency-key",
        )

    composed = _load_or_exit(state, file, allow_incomplete_idfiles)
    if resolve_names:
        _resolve_names(state, composed)

    options = ApplyOptions.from_settings(
        state.settings,
        chunk_size=chunk_size,
        poll_interval=poll_interval / 1000 if poll_interval else None,
        poll_timeout=poll_timeout / 1000 if poll_timeout else None,
        idempotency_key=idempotency_key,
        duplicate_strategy=DuplicateStrategy(duplicate_strategy.lower()) if duplicate_strategy else None,
        sidecar_path=Path(save_ids_path) if save_ids_path else None,
    )
    if no_save_ids:
        options = replace(options, save_ids=False)
    if state.output.fmt == "text":
        options = replace(options, on_progress=_print_progress)

    if dry_run:
        try:
            Validator().check(composed)
        except InvalidManifestError as exc:
            _fail(state, exception_envelope(state.output, exc), _render_invalid(file))
        plan = plan_execution(composed.operations, options.chunk_size)
        emit(state.output, success_envelope(state.output, plan.to_dict()), _render_plan)
        return

    try:
        with _make_client(state) as client:
            result = apply_manifest(composed, client, options)
    except InvalidManifestError as exc:
        _fail(state, exception_envelope(state.output, exc), _render_invalid(file))

    data = result.to_dict()
    if not result.success:
        failed = next(c for c in result.chunks if c.failed)
        error = failed.error or {}
        _fail(
            state,
            error_envelope(
                state.output,
                error.get("code", "CHUNK_FAILED"),
                error.get("message", "apply failed"),
                details=error.get("details"),
                data=data,
            ),
            _render_apply,
        )
    emit(state.output, success_envelope(state.output, data), _render_apply)


def _print_progress(chunk: int, total: int, status: str, attempt: int) -> None:
    if status == "submitting":
        err_console.print(f"[dim]chunk {chunk}/{total}: submitting[/dim]")
    elif status in ("complete", "error", "timeout"):
        color = "green" if status == "complete" else "red"
        err_console.print(f"[{color}]chunk {chunk}/{total}: {status}[/{color}]")


def _render_invalid(file: str):
    def _render(envelope: dict[str, Any]) -> None:
        errors = envelope["error"].get("details", {}).get("errors", [])
        console.print(_diagnostics_table(f"Invalid manifest: {file}", errors))
        console.print(f"\n[red]{len(errors)} error(s); nothing was applied[/red]")

    return _render


def _render_plan(envelope: dict[str, Any]) -> None:
    plan = envelope["data"]
    table = Table(title=f"Dry run: {plan['totalOperations']} operations, {plan['totalChunks']} chunk(s)")
    table.add_column("Chunk", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Operations")
    for chunk in plan["chunks"]:
        table.add_row(str(chunk["index"]), str(chunk["size"]), ", ".join(chunk["ops"]))
    console.print(table)


def _render_apply(envelope: dict[str, Any]) -> None:
    data = envelope["data"]
    table = Table(title=f"Apply: {data['status']}")
    table.add_column("Chunk", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    table.add_column("Operation")
    table.add_column("New symbols", justify="right")
    for chunk in data["chunks"]:
        status = chunk["status"]
        color = {"complete": "green", "not_attempted": "dim"}.get(status, "red")
        table.add_row(
            str(chunk["index"]),
            str(chunk["size"]),
            f"[{color}]{status}[/{color}]" + (" (replayed)" if chunk.get("replayed") else ""),
            chunk.get("operationId", "-"),
            str(chunk.get("newSymbols", "-")),
        )
    console.print(table)

    for summary in data["crossValidation"]:
        for check in summary["details"]:
            if check["outcome"] in ("swapped", "failed"):
                color = "yellow" if check["outcome"] == "swapped" else "red"
                console.print(
                    f"[{color}]cross-validation {check['outcome']}[/{color}] at /changes/{check['index']}: "
                    f"{check.get('reason', '')}"
                )
    for warning in data.get("warnings", []):
        console.print(f"[yellow]warning:[/yellow] {warning}")
    if data.get("sidecar"):
        console.print(f"[green]Symbols saved to[/green] {data['sidecar']}")

    error = envelope.get("error")
    if error:
        err_console.print(f"[red]Error[/red] [{error['code']}]: {error['message']}")
        recovery = data.get("recovery") or {}
        if recovery:
            err_console.print(f"[bold]Next step:[/bold] {recovery['nextStep']}")
    else:
        console.print(
            f"\n[bold]Summary:[/bold] {data['totalOperations']} operations in "
            f"{data['totalChunks']} chunk(s), {data['newSymbols']} new symbol(s)"
        )


# ---------------------------------------------------------------------------
# flatten command
# ---------------------------------------------------------------------------


@cli.command(name="flatten")
@click.argument("file", type=click.Path(exists=False))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "yaml"], case_sensitive=False),
    default="json",
    help="Manifest output format",
)
@click.option("--allow-incomplete-idfiles", is_flag=True, default=False, help="Skip missing idFiles")
@click.option("--out", "-o", "out_path", default=None, help="Output file path (defaults to stdout)")
@click.pass_obj
def flatten_command(
    state: CliState,
    file: str,
    output_format: str,
    allow_incomplete_idfiles: bool,
    out_path: str | None,
) -> None:
    """Print the composed manifest as one self-contained file.

    FILE is the root manifest.
    """
    from bomkit.manifest.serializer import ManifestSerializer

    composed = _load_or_exit(state, file, allow_incomplete_idfiles)
    serializer = ManifestSerializer()
    if output_format.lower() == "json":
        text = serializer.to_json(composed, indent=2)
    else:
        text = serializer.to_yaml(composed)

    if out_path:
        Path(out_path).write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
        err_console.print(f"[green]Flattened manifest written to[/green] {out_path}")
    else:
        click.echo(text)


if __name__ == "__main__":
    cli()
