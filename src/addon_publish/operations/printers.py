"""
Human-readable output formatting.

Centralizes all CLI output so commands stay thin: stage progress, the
per-architecture build table, publish summaries and failures.
"""
from __future__ import annotations

from typing import List

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..errors import PipelineError
from ..models import AddonManifest, BuildOutcome, Credential
from ..pipeline import PublishResult, Stage

_console = Console()
_err_console = Console(stderr=True)

_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "yellow",
}


def print_stage(stage: Stage, ci: bool = False) -> None:
    """Print a stage transition (suppressed in CI mode, except terminal states)."""
    if ci and stage not in (Stage.DONE, Stage.FAILED):
        return
    style = {"Done": "bold green", "Failed": "bold red"}.get(stage.value, "cyan")
    _console.print(f"[{style}]==>[/] {stage.value}")


def print_manifest_summary(manifest: AddonManifest, verbose: bool = False) -> None:
    """Print the validated manifest."""
    title = f" ({escape(manifest.title)})" if manifest.title else ""
    _console.print(f"[bold]Add-on:[/] {manifest.id}{title}")
    _console.print(f"[bold]Version:[/] {manifest.version}")
    _console.print(f"[bold]Architectures:[/] {', '.join(manifest.arch_tags)}")
    if verbose:
        for target in manifest.architectures:
            _console.print(f"  {target.tag}: [dim]{escape(target.dockerfile)}[/] ({target.platform})")
        if manifest.services:
            _console.print(f"[bold]Services:[/] {', '.join(sorted(manifest.services))}")


def print_login(credential: Credential) -> None:
    name = credential.display_name or credential.email or credential.account_id
    _console.print(f"Logged in as [bold]{escape(name)}[/]")


def print_logout(removed: bool) -> None:
    if removed:
        _console.print("Logged out, stored session removed")
    else:
        _console.print("[dim]No stored session[/]")


def print_login_prompt(verification_uri: str, user_code: str) -> None:
    """Show where to authorize the CLI during the device flow."""
    _err_console.print("Please authorize the CLI to publish add-ons on your behalf.")
    _err_console.print(f"  URL: [bold]{escape(verification_uri)}[/]")
    if user_code:
        _err_console.print(f"  Code: [bold]{escape(user_code)}[/]")


def print_version_bump(previous: str, new: str) -> None:
    _console.print(f"Version bumped: {previous} -> [bold]{new}[/]")


def print_build_outcomes(outcomes: List[BuildOutcome]) -> None:
    """Print one row per architecture with its build result."""
    table = Table(title="Builds")
    table.add_column("Architecture", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Image / Detail", overflow="fold")

    for outcome in outcomes:
        style = _STATUS_STYLES.get(outcome.status, "white")
        detail = outcome.image.ref if outcome.image else (outcome.detail or "")
        table.add_row(
            outcome.tag,
            f"[{style}]{outcome.status}[/]",
            str(outcome.attempts),
            escape(detail),
        )

    _err_console.print(table)


def print_publish_summary(result: PublishResult, verbose: bool = False) -> None:
    """Print the published version and its images."""
    manifest = result.manifest
    _console.print(f"[bold green]Published[/] {manifest.id}@{manifest.version}")

    table = Table(title="Images")
    table.add_column("Architecture", style="cyan")
    table.add_column("Reference", overflow="fold")
    table.add_column("Size", justify="right")
    for image in manifest.images:
        table.add_row(image.tag, image.ref, _format_bytes(image.size or 0))
    _console.print(table)

    if verbose:
        _console.print(f"[dim]Stages: {' -> '.join(stage.value for stage in result.stages)}[/]")


def print_error(exc: BaseException) -> None:
    """Print a command failure, naming the stage it stopped in."""
    if isinstance(exc, PipelineError):
        where = f"[bold]{exc.stage}[/] " if exc.stage else ""
        _err_console.print(f"[bold red]Error:[/] {where}{escape(exc.message)}")
        cause = exc.__cause__
        if cause is not None and not isinstance(cause, PipelineError):
            _err_console.print(f"  [dim]caused by {type(cause).__name__}: {escape(str(cause))}[/]")
    elif isinstance(exc, KeyboardInterrupt):
        _err_console.print("[bold red]Interrupted[/]")
    else:
        _err_console.print(f"[bold red]Error:[/] {escape(str(exc) or type(exc).__name__)}")


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes == 0:
        return "-"
    elif size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
