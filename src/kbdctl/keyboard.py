"""
GMK87 Keyboard
==============

High-level access to one connected keyboard: read its configuration
image, or set its clock.

Example:
    with Keyboard.open() as keyboard:
        keyboard.set_time(datetime.datetime.now())
"""

import datetime
import logging
import time
from types import TracebackType
from typing import Callable, Optional

from kbdctl import tracing
from kbdctl.clock import compensate, encode_clock
from kbdctl.comms.cancel import CancelToken
from kbdctl.comms.channel import CommandChannel
from kbdctl.comms.session import ConfigProtocol
from kbdctl.comms.transport import Transport
from kbdctl.comms.usb import UsbTransport
from kbdctl.config import KeyboardConfig
from kbdctl.errors import DeviceCloseError

logger = logging.getLogger(__name__)


class Keyboard:
    """
    A GMK87 reached through a Transport.

    The keyboard owns the transport: close() (or leaving the `with`
    block) releases the device, whether or not the last transaction
    succeeded.

    Args:
        transport: Open transport to the keyboard.
        config: Timing settings (default: KeyboardConfig()).
        clock: Monotonic clock, used for response budgets and for
               measuring the read duration in set_time().
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[KeyboardConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config if config is not None else KeyboardConfig()
        self.transport = transport
        self.channel = CommandChannel(
            transport,
            response_timeout=self.config.response_timeout,
            settle_delay=self.config.settle_delay,
            clock=clock,
        )
        self.protocol = ConfigProtocol(self.channel)
        self._clock = clock

    @classmethod
    def open(cls, config: Optional[KeyboardConfig] = None) -> "Keyboard":
        """
        Open the keyboard over USB.

        Args:
            config: Device ids and timing (default: from environment).

        Raises:
            DeviceNotFoundError: If the keyboard is not connected.
            DeviceOpenError: If its interface cannot be claimed.
        """
        if config is None:
            config = KeyboardConfig.from_env()
        transport = UsbTransport.open(
            vendor_id=config.vendor_id,
            product_id=config.product_id,
            interface=config.interface,
            read_slice=config.read_slice,
        )
        return cls(transport, config)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def load_config(self, cancel: Optional[CancelToken] = None) -> bytes:
        """Read the 48-byte configuration image."""
        return self.protocol.load_config(cancel)

    def set_time(
        self,
        when: datetime.datetime,
        cancel: Optional[CancelToken] = None,
    ) -> datetime.datetime:
        """
        Set the keyboard clock.

        Reads the current image, stores `when` in its clock fields and
        writes it back. `when` is advanced by twice the time the read
        took, so the clock is right at the moment the write lands.

        Returns:
            The instant actually written.

        Raises:
            TransactionAborted: If the read or the write fails.
            ValueOutOfRangeError: If `when` cannot be encoded.
        """
        with tracing.task("SetTime"):
            started = self._clock()
            with tracing.region("loadConfig"):
                image = self.protocol.load_config(cancel)
            opdur = datetime.timedelta(seconds=self._clock() - started)

            adjusted = compensate(when, opdur)
            logger.debug(
                "Read took %.3fs, writing %s", opdur.total_seconds(), adjusted
            )
            image = encode_clock(image, adjusted)

            with tracing.region("updateConfig"):
                self.protocol.update_config(image, cancel)

        return adjusted

    # -------------------------------------------------------------------------
    # Lifetime
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Release the device.

        Raises:
            DeviceCloseError: If a teardown stage failed.
        """
        self.transport.close()

    def __enter__(self) -> "Keyboard":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc is None:
            self.close()
            return
        # Keep the original error; a failed close is only reported.
        try:
            self.close()
        except DeviceCloseError as e:
            logger.warning("%s", e)
