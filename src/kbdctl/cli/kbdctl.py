"""
kbdctl - GMK87 Keyboard Command-Line Interface
==============================================

This module implements the command-line interface for reading the GMK87
configuration and setting its clock.

Usage Examples
--------------
Set the keyboard clock to the current system time:
    $ kbdctl --set-time

Print the configuration image and the clock stored in it:
    $ kbdctl --dump-config
    00 00 01 ... 24 00 00 00 00 00 00
    clock: 2024-03-15 10:20:30

List connected keyboards:
    $ kbdctl --list

Write a timing trace of the run:
    $ kbdctl --set-time --trace kbdctl.trace

If both --dump-config and --set-time are given, only the dump runs. With
neither, the keyboard is opened and closed again, which checks that it
is reachable.

Ctrl-C cancels the command in flight; --timeout puts a deadline on the
whole run.

Exit Codes
----------
0 - Success (prints OK)
1 - Device, protocol or cancellation error
2 - Invalid arguments
3 - Internal error
"""

import datetime
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from kbdctl import __version__
from kbdctl.cli.errors import handle_cli_exception
from kbdctl.clock import decode_clock
from kbdctl.comms.cancel import CancelToken
from kbdctl.comms.usb import list_devices
from kbdctl.config import KeyboardConfig
from kbdctl.errors import DeviceCloseError, TimeCodecError
from kbdctl.keyboard import Keyboard
from kbdctl.tracing import start_trace, stop_trace

logger = logging.getLogger(__name__)


# =============================================================================
# CLI Utilities
# =============================================================================

class UsbIdParamType(click.ParamType):
    """A 16-bit USB vendor or product id in hex, with or without 0x."""

    name = "HEX"

    def convert(self, value, param, ctx) -> int:
        if isinstance(value, int):
            return value
        try:
            result = int(value, 16)
        except ValueError:
            self.fail(f"{value!r} is not a hex number", param, ctx)
        if not 0 <= result <= 0xFFFF:
            self.fail(f"{value!r} does not fit in 16 bits", param, ctx)
        return result


USB_ID = UsbIdParamType()


def setup_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if verbose else "%(message)s",
    )


@contextmanager
def cancel_on_interrupt(cancel: CancelToken) -> Iterator[None]:
    """Turn SIGINT into cancellation of the token while the block runs."""

    def handler(signum, frame) -> None:
        logger.info("Interrupted, cancelling")
        cancel.cancel()

    try:
        previous = signal.signal(signal.SIGINT, handler)
        installed = True
    except ValueError:
        # Only the main thread may install signal handlers
        previous, installed = None, False

    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous or signal.SIG_DFL)


def close_keyboard(keyboard: Keyboard) -> None:
    """Close the keyboard, logging rather than raising teardown failures."""
    try:
        keyboard.close()
    except DeviceCloseError as e:
        logger.error("Failed to close keyboard: %s", e)


# =============================================================================
# Main CLI
# =============================================================================

@click.command()
@click.option(
    "--dump-config",
    is_flag=True,
    help="Print the configuration image as hex, then the stored clock",
)
@click.option(
    "--set-time",
    is_flag=True,
    help="Set the keyboard clock to the current system time",
)
@click.option(
    "--trace", "trace_file",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Write a timing trace to this file",
)
@click.option(
    "--list", "list_only",
    is_flag=True,
    help="List matching USB devices and exit",
)
@click.option(
    "--vid",
    type=USB_ID,
    default=None,
    help="USB vendor id in hex (default: 320f, or KBDCTL_VID)",
)
@click.option(
    "--pid",
    type=USB_ID,
    default=None,
    help="USB product id in hex (default: 5055, or KBDCTL_PID)",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Give up after this many seconds",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output (log every frame)",
)
@click.version_option(version=__version__, prog_name="kbdctl")
def main(
    dump_config: bool,
    set_time: bool,
    trace_file: Optional[Path],
    list_only: bool,
    vid: Optional[int],
    pid: Optional[int],
    timeout: Optional[float],
    verbose: bool,
) -> None:
    """
    Read the configuration of a GMK87 keyboard or set its clock.

    Prints OK when the requested operation succeeded.
    """
    setup_logging(verbose)

    try:
        config = KeyboardConfig.from_env().with_overrides(
            vendor_id=vid, product_id=pid
        )

        if list_only:
            show_devices(config)
            return

        cancel = (
            CancelToken.with_deadline_in(timeout) if timeout else CancelToken()
        )

        if trace_file is not None:
            start_trace(trace_file)
        try:
            with cancel_on_interrupt(cancel):
                run(config, cancel, dump_config=dump_config, set_time=set_time)
        finally:
            stop_trace()

    except Exception as e:
        handle_cli_exception(e, verbose=verbose)

    click.echo("OK")


# =============================================================================
# Operations
# =============================================================================

def run(
    config: KeyboardConfig,
    cancel: CancelToken,
    dump_config: bool = False,
    set_time: bool = False,
) -> None:
    """Open the keyboard and perform the requested operation."""
    keyboard = Keyboard.open(config)
    try:
        if dump_config:
            image = keyboard.load_config(cancel)
            click.echo(image.hex(" "))
            show_clock(image)
        elif set_time:
            requested = datetime.datetime.now()
            keyboard.set_time(requested, cancel)
            took = datetime.datetime.now() - requested
            logger.info(
                "Time set to %s (took %.3fs)",
                requested.isoformat(sep=" ", timespec="seconds"),
                took.total_seconds(),
            )
    finally:
        close_keyboard(keyboard)


def show_clock(image: bytes) -> None:
    """Print the clock stored in a configuration image."""
    try:
        when = decode_clock(image)
    except TimeCodecError as e:
        logger.warning("Cannot decode keyboard clock: %s", e)
        return
    click.echo(f"clock: {when:%Y-%m-%d %H:%M:%S}")


def show_devices(config: KeyboardConfig) -> None:
    """Print every device matching the configured ids."""
    devices = list_devices(config.vendor_id, config.product_id)
    if not devices:
        click.echo(
            f"No devices found with id "
            f"{config.vendor_id:04x}:{config.product_id:04x}."
        )
        return
    for info in devices:
        click.echo(str(info))


if __name__ == "__main__":
    main()
