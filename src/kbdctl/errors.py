"""
kbdctl Error Hierarchy
======================

This module defines the exception hierarchy for the whole package.
All exceptions inherit from KbdError, allowing callers to catch every
keyboard-related error with a single except clause if desired.

Exception Hierarchy
-------------------
KbdError (base)
├── ProtocolError (command/response protocol)
│   ├── PayloadTooLargeError - payload does not fit in one frame
│   ├── ShortWriteError - transport accepted fewer than 64 bytes
│   ├── ShortReadError - response too short to carry a header
│   ├── ResponseTimeoutError - no matching response within the budget
│   ├── ChecksumError - decoded frame has a bad checksum
│   └── SessionStateError - illegal transaction state transition
├── TransportError (USB device access)
│   ├── DeviceNotFoundError - no keyboard with the configured ids
│   ├── DeviceOpenError - device found but could not be claimed
│   ├── TransportTimeoutError - a single read produced no report
│   └── DeviceCloseError - one or more teardown stages failed
├── CancelledError - caller cancelled the in-flight operation
├── TransactionAborted - a transaction step failed (wraps the cause)
└── TimeCodecError (clock field encoding)
    └── ValueOutOfRangeError - value outside the BCD domain

Wrapping
--------
TransactionAborted is always raised ``from`` the failing step's error,
so the full chain is available through ``__cause__``. Use
format_error_chain() to render it for humans.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class KbdError(Exception):
    """
    Base exception for all kbdctl errors.

        try:
            keyboard.load_config(cancel)
        except KbdError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Protocol Exceptions
# =============================================================================

class ProtocolError(KbdError):
    """
    Command/response protocol error.

    Raised when a frame cannot be built or when the device answers in a
    way the protocol does not allow.
    """
    pass


class PayloadTooLargeError(ProtocolError):
    """
    Payload exceeds the 56 bytes available in a single frame.

    Attributes:
        size: Payload length that was rejected
        limit: Maximum payload length
    """

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"payload too large: {size} bytes, maximum {limit}")


class ShortWriteError(ProtocolError):
    """
    The transport reported writing a different number of bytes than the
    frame size.
    """

    def __init__(self, command: int, written: int, expected: int):
        self.command = command
        self.written = written
        self.expected = expected
        super().__init__(
            f"short write for command {command}: "
            f"wrote {written} bytes, expected {expected}"
        )


class ShortReadError(ProtocolError):
    """A response was too short to hold the echoed header."""

    def __init__(self, command: int, received: int):
        self.command = command
        self.received = received
        super().__init__(
            f"short read for command {command}: read {received} bytes"
        )


class ResponseTimeoutError(ProtocolError):
    """
    No matching response arrived within the response budget.

    Unmatched (stale) responses received during the budget are discarded
    and do not extend it.
    """

    def __init__(self, command: int, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(
            f"no response for command {command} within {timeout:g}s"
        )


class ChecksumError(ProtocolError):
    """
    Frame checksum verification failed.

    Attributes:
        expected: Checksum calculated over the frame body
        actual: Checksum carried in bytes 1-2
    """

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"checksum mismatch: expected {expected:04X}, got {actual:04X}"
        )


class SessionStateError(ProtocolError):
    """
    Illegal transition of the configuration session state machine.

    Raised before any I/O happens, so the device never sees a command
    that is out of sequence.
    """
    pass


# =============================================================================
# Transport Exceptions
# =============================================================================

class TransportError(KbdError):
    """Base exception for USB transport errors."""
    pass


class DeviceNotFoundError(TransportError):
    """
    No keyboard with the configured vendor/product id is connected.
    """

    def __init__(self, vendor_id: int, product_id: int):
        self.vendor_id = vendor_id
        self.product_id = product_id
        super().__init__(
            f"device not found: {vendor_id:04x}:{product_id:04x}"
        )


class DeviceOpenError(TransportError):
    """
    The device was found but could not be prepared for use.

    Raised when:
    - The kernel driver cannot be detached
    - The active configuration cannot be read
    - The vendor interface cannot be claimed
    - The interface lacks an IN or OUT endpoint
    """
    pass


class TransportTimeoutError(TransportError):
    """
    A single read returned no report within its timeout.

    Note:
        This is raised by the transport for one read call. The command
        channel turns an exhausted response budget into
        ResponseTimeoutError.
    """
    pass


class DeviceCloseError(TransportError):
    """
    One or more teardown stages failed.

    Every stage still runs; the failures are collected here in the order
    they happened.

    Attributes:
        errors: List of (stage name, exception) pairs
    """

    def __init__(self, errors: list[tuple[str, BaseException]]):
        self.errors = list(errors)
        details = "; ".join(f"{stage}: {err}" for stage, err in self.errors)
        super().__init__(f"failed to close device: {details}")


# =============================================================================
# Cancellation and Transactions
# =============================================================================

class CancelledError(KbdError):
    """
    The operation was cancelled by the caller.

    Raised by blocking reads and by the pre-End settle delay when the
    shared cancel token fires (explicit cancel or overall deadline).
    """

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class TransactionAborted(KbdError):
    """
    A configuration transaction failed part way.

    Partial progress is discarded. The caller may start the whole
    transaction again from the top.

    Attributes:
        step: Human-readable name of the failing step
        cause: The error raised by that step
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {cause}")


# =============================================================================
# Time Codec Exceptions
# =============================================================================

class TimeCodecError(KbdError):
    """Base exception for clock field encoding errors."""
    pass


class ValueOutOfRangeError(TimeCodecError):
    """
    Value outside the 0-99 domain of a BCD byte.

    This indicates a logic error upstream (for example a year beyond
    2099), never an I/O problem.
    """

    def __init__(self, value: int, field: Optional[str] = None):
        self.value = value
        self.field = field
        where = f" for {field}" if field else ""
        super().__init__(f"value out of range{where}: {value} (BCD takes 0-99)")


# =============================================================================
# Error Chain Formatting
# =============================================================================

def format_error_chain(error: BaseException) -> str:
    """
    Render an exception and its causes as a single line.

    TransactionAborted already embeds its cause in its message, so
    causes that are repeated verbatim are skipped.

    Example:
        >>> try:
        ...     raise TransactionAborted("load config", ShortReadError(5, 2))
        ... except KbdError as e:
        ...     format_error_chain(e)
        'load config: short read for command 5: read 2 bytes'
    """
    parts = [str(error)]
    seen = {id(error)}
    current = error.__cause__
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current)
        if text and not parts[-1].endswith(text):
            parts.append(text)
        current = current.__cause__
    return ": ".join(parts)
