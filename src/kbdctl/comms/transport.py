"""
Transport Contract
==================

The command channel talks to the keyboard through a Transport: anything
that can write one 64-byte report, read one report back, and release the
device afterwards. UsbTransport (usb.py) is the real implementation;
tests substitute a scripted transport.
"""

from abc import ABC, abstractmethod

from kbdctl.comms.cancel import CancelToken


class Transport(ABC):
    """
    Blocking report transport.

    Implementations must observe the cancel token in every blocking call
    and raise CancelledError when it fires.
    """

    @abstractmethod
    def write(self, data: bytes, cancel: CancelToken) -> int:
        """
        Write one report.

        Returns:
            Number of bytes the device accepted.
        """

    @abstractmethod
    def read(self, cancel: CancelToken, timeout: float) -> bytes:
        """
        Read one report, up to the endpoint's maximum packet size.

        Args:
            cancel: Cancellation token for the enclosing call.
            timeout: Seconds to wait for a report.

        Raises:
            TransportTimeoutError: If no report arrives within timeout.
            CancelledError: If the token fires first.
        """

    @abstractmethod
    def close(self) -> None:
        """Release the device. Must be idempotent."""

    def __enter__(self) -> "Transport":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
