"""
CLI Error Handling
==================

Maps exceptions to messages and exit codes for the kbdctl command.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click

from kbdctl.errors import KbdError, format_error_chain


class ExitCode(IntEnum):
    """Exit codes for the kbdctl command."""
    SUCCESS = 0
    DEVICE_ERROR = 1     # Device access, protocol, or cancellation
    INVALID_ARGS = 2     # Invalid arguments or environment
    INTERNAL_ERROR = 3   # Unexpected internal error


def exit_code_for(error: BaseException) -> ExitCode:
    """Exit code that handle_cli_exception() would use for an error."""
    if isinstance(error, KbdError):
        return ExitCode.DEVICE_ERROR
    if isinstance(error, (click.BadParameter, click.UsageError)):
        return ExitCode.INVALID_ARGS
    if isinstance(error, (FileNotFoundError, PermissionError)):
        return ExitCode.INVALID_ARGS
    return ExitCode.INTERNAL_ERROR


def handle_cli_exception(error: Exception, verbose: bool = False) -> NoReturn:
    """
    Report an error on stderr and exit.

    Keyboard errors are printed with their whole cause chain, so a
    failure deep in a transaction reads e.g.

        Error: send finalize: no response for command 2 within 2s

    Args:
        error: The exception that was raised
        verbose: If True, print the traceback for internal errors

    Raises:
        SystemExit: Always exits with an appropriate exit code
    """
    code = exit_code_for(error)

    if code is ExitCode.DEVICE_ERROR:
        click.echo(f"Error: {format_error_chain(error)}", err=True)
    elif code is ExitCode.INVALID_ARGS:
        click.echo(f"Error: {error}", err=True)
    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()

    sys.exit(code)
