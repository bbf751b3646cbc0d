"""
Unified CLI Error Handling
==========================

Maps flasher exceptions to messages and exit codes.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click


class ExitCode(IntEnum):
    """Exit codes of the stmflash command."""
    SUCCESS = 0
    DEVICE_ERROR = 1     # Serial, protocol, device or transfer failure
    INVALID_ARGS = 2     # Invalid selectors, arguments or image files
    INTERNAL_ERROR = 3   # Unexpected internal error


def handle_cli_exception(
    error: Exception,
    verbose: bool = False,
    error_type: str | None = None
) -> NoReturn:
    """
    Report an exception and exit with the matching exit code.

    Args:
        error: The exception that was raised
        verbose: If True, print full traceback for internal errors
        error_type: Optional prefix for the error message (e.g., "Write")

    Raises:
        SystemExit: Always exits with an appropriate exit code
    """
    from stmflasher.errors import (
        CommsError,
        FlasherError,
        ImageError,
        WorkspaceError,
    )

    prefix = f"{error_type} error: " if error_type else "Error: "

    if isinstance(error, (WorkspaceError, ImageError)):
        # Raised before touching the device memory
        click.echo(f"{prefix}{error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, CommsError):
        click.echo(f"Communication error: {error}", err=True)
        sys.exit(ExitCode.DEVICE_ERROR)

    elif isinstance(error, FlasherError):
        # Device identification and transfer errors
        click.echo(f"{prefix}{error}", err=True)
        sys.exit(ExitCode.DEVICE_ERROR)

    elif isinstance(error, click.BadParameter):
        # Invalid command-line arguments
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, (FileNotFoundError, PermissionError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        # Unexpected internal error
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()
        sys.exit(ExitCode.INTERNAL_ERROR)
