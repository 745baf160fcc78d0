"""
kbdctl - Configuration Tool for the GMK87 Keyboard
==================================================

This package talks to the onboard configuration memory of the Zuoya
GMK87 mechanical keyboard over its vendor USB HID interface. It can read
the 48-byte configuration image and set the keyboard's real-time clock.

Main Components
---------------
- **comms**: the command protocol
    Frames, checksums, the command channel, the USB transport and the
    read/write configuration transactions

- **clock**: clock codec
    BCD encoding of the clock fields embedded in the image

- **keyboard**: high-level facade
    Opens the device and runs whole operations (load config, set time)

- **cli**: the `kbdctl` command

Quick Start
-----------
Set the keyboard clock to now:
    >>> import datetime
    >>> from kbdctl import Keyboard
    >>> with Keyboard.open() as keyboard:
    ...     keyboard.set_time(datetime.datetime.now())

Or use the command-line tool:
    $ kbdctl --set-time
    $ kbdctl --dump-config

Version History
---------------
1.0.0 - Initial release: config dump, clock setting, tracing
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from kbdctl.clock import ClockFields, decode_clock, encode_clock
from kbdctl.comms import CancelToken, ConfigProtocol, UsbTransport
from kbdctl.config import KeyboardConfig
from kbdctl.errors import (
    CancelledError,
    KbdError,
    ProtocolError,
    TimeCodecError,
    TransactionAborted,
    TransportError,
)
from kbdctl.keyboard import Keyboard

__all__ = [
    "__version__",
    # Facade
    "Keyboard",
    "KeyboardConfig",
    # Protocol
    "CancelToken",
    "ConfigProtocol",
    "UsbTransport",
    # Clock
    "ClockFields",
    "decode_clock",
    "encode_clock",
    # Errors
    "KbdError",
    "ProtocolError",
    "TransportError",
    "CancelledError",
    "TransactionAborted",
    "TimeCodecError",
]
