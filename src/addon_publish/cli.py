"""
Add-on Publisher CLI

Implements the CLI verbs on top of the Operations facade:
- publish: Validate, build for every architecture, push and publish a version
- validate: Check the manifest only
- login / logout: Manage the stored session
"""
from __future__ import annotations

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from .cli_context import CLIContext
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import (
    print_login, print_login_prompt, print_logout, print_manifest_summary,
    print_publish_summary, print_stage, print_version_bump,
)

app = typer.Typer(name="addon-publish", help="Build and publish add-ons to the add-on catalog")

_BUMPS = ("patch", "minor", "major")


def configure_logging(verbose: int) -> None:
    """Map -v occurrences to log levels: none=WARNING, -v=INFO, -vv=DEBUG."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose >= 2, markup=False)],
        force=True,
    )
    # Request logs from httpx are noise below DEBUG
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose >= 3 else logging.WARNING)


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv)"),
    ci: bool = typer.Option(False, "--ci", help="CI mode (suppress progress output)"),
) -> None:
    """Build and publish add-ons to the add-on catalog."""
    configure_logging(verbose)
    ctx.obj = OpsConfig(ci=ci, verbose=verbose)


def _ops(ctx: typer.Context) -> Operations:
    config = ctx.obj if isinstance(ctx.obj, OpsConfig) else OpsConfig()
    context = CLIContext.from_env(on_login_prompt=print_login_prompt)
    return Operations(config=config, context=context)


@app.command()
def publish(
    ctx: typer.Context,
    manifest: str = typer.Argument(".", help="Manifest file or add-on directory"),
    validate_only: bool = typer.Option(False, "--validate-only", help="Only validate the manifest"),
    login_only: bool = typer.Option(False, "--login-only", help="Only log in and store the session"),
    logout: bool = typer.Option(False, "--logout", help="Remove the stored session and exit"),
    bump: Optional[str] = typer.Option(None, "--bump", help="Bump the version first (patch, minor, major)"),
) -> None:
    """Validate, build and publish a new add-on version."""

    def _publish() -> None:
        if bump is not None and bump not in _BUMPS:
            raise typer.BadParameter(f"Invalid bump '{bump}'. Use 'patch', 'minor' or 'major'.")

        ops = _ops(ctx)
        if logout:
            print_logout(ops.logout())
            return
        if login_only:
            print_login(ops.login())
            return
        if validate_only:
            print_manifest_summary(ops.validate(manifest), verbose=ops.cfg.verbose > 0)
            return

        if bump:
            previous, new = ops.bump(manifest, bump)
            print_version_bump(previous, new)

        result = ops.publish(manifest, on_stage=lambda stage: print_stage(stage, ci=ops.cfg.ci))
        print_publish_summary(result, verbose=ops.cfg.verbose > 0)

    run_and_exit(_publish)


@app.command()
def validate(
    ctx: typer.Context,
    manifest: str = typer.Argument(".", help="Manifest file or add-on directory"),
) -> None:
    """Validate the add-on manifest without building or publishing."""

    def _validate() -> None:
        ops = _ops(ctx)
        print_manifest_summary(ops.validate(manifest), verbose=True)

    run_and_exit(_validate)


@app.command()
def login(ctx: typer.Context) -> None:
    """Log in and store the session for later runs."""

    def _login() -> None:
        print_login(_ops(ctx).login())

    run_and_exit(_login)


@app.command("logout")
def logout_command(ctx: typer.Context) -> None:
    """Remove the stored session."""

    def _logout() -> None:
        print_logout(_ops(ctx).logout())

    run_and_exit(_logout)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
