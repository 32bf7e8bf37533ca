"""
Exit codes for CLI commands.

Every command body runs inside ``run_and_exit``, which turns a failure into
a printed error and the exit code of the error's family.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import typer

T = TypeVar('T')

logger = logging.getLogger(__name__)

# Exit codes by exception class name; subclasses inherit their family's code
EXIT_CODES = {
    "ValidationError": 2,
    "AuthError": 3,
    "ConflictError": 4,
    "BuildError": 5,
    "ResolveError": 5,
    "PublishError": 6,
    "PipelineCancelled": 130,
    "KeyboardInterrupt": 130,
}

DEFAULT_EXIT_CODE = 1


def exit_code_for(exc: BaseException) -> int:
    """
    Exit code for a failed command.

    Walks the exception's MRO so e.g. ``MissingField`` maps through
    ``ValidationError``:
    - 2: manifest validation failed
    - 3: authentication failed or timed out
    - 4: add-on owned by another account
    - 5: build failed or images could not be resolved
    - 6: catalog rejected the publish request
    - 130: cancelled by the user
    - 1: anything else
    """
    for cls in type(exc).__mro__:
        if cls.__name__ in EXIT_CODES:
            return EXIT_CODES[cls.__name__]
    return DEFAULT_EXIT_CODE


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Run a command body, reporting any failure.

    The error is printed (plus the per-architecture build table when the
    error carries outcomes) and the command exits with ``exit_code_for``.

    Args:
        func: Command body

    Returns:
        Whatever ``func`` returns

    Raises:
        typer.Exit: On any failure
    """
    try:
        return func()
    except typer.Exit:
        raise
    except (Exception, KeyboardInterrupt) as e:
        from .printers import print_build_outcomes, print_error

        logger.debug("Command failed", exc_info=True)
        print_error(e)
        outcomes: Any = getattr(e, "outcomes", None)
        if outcomes:
            print_build_outcomes(outcomes)
        raise typer.Exit(code=exit_code_for(e)) from e
