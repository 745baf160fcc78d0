"""
GMK87 Communication Module
==========================

This module provides the layers between a configuration transaction and
the USB wire:

- **checksum**: 16-bit additive frame checksum
- **frame**: 64-byte command frame encoding
- **cancel**: cooperative cancellation tokens
- **transport**: the Transport contract, and **usb**, its pyusb implementation
- **channel**: one command, one matched response
- **session**: the configuration state machine and the read/write transactions

Quick Start
-----------
    from kbdctl.comms import (
        CancelToken,
        CommandChannel,
        ConfigProtocol,
        UsbTransport,
    )

    cancel = CancelToken.with_deadline_in(30.0)
    with UsbTransport.open() as transport:
        protocol = ConfigProtocol(CommandChannel(transport))
        image = protocol.load_config(cancel)
        print(image.hex(" "))

Error Handling
--------------
Frame and sequencing problems raise `ProtocolError` subclasses, device
access problems raise `TransportError` subclasses. The transactions wrap
whatever went wrong in `TransactionAborted`, naming the failing step.
All of these are defined in `kbdctl.errors`.

Thread Safety
-------------
The communication classes are NOT thread-safe. Only CancelToken.cancel()
may be called from another thread or a signal handler.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Checksum utilities
from kbdctl.comms.checksum import (
    CHECKSUM_END,
    CHECKSUM_START,
    checksum16,
    checksum_from_bytes,
    checksum_to_bytes,
    frame_checksum,
    verify_frame_checksum,
)

# Frames
from kbdctl.comms.frame import (
    CORRELATION_SIZE,
    FRAME_SIZE,
    HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
    REPORT_ID,
    RESPONSE_DATA_OFFSET,
    CommandFrame,
    CommandId,
    encode_command,
    matches_request,
)

# Cancellation
from kbdctl.comms.cancel import CancelToken, never_cancelled

# Transports
from kbdctl.comms.transport import Transport
from kbdctl.comms.usb import (
    DEFAULT_INTERFACE,
    DEFAULT_PRODUCT_ID,
    DEFAULT_READ_SLICE,
    DEFAULT_VENDOR_ID,
    DeviceInfo,
    ResourceGuard,
    UsbTransport,
    list_devices,
)

# Command channel
from kbdctl.comms.channel import CommandChannel

# Transactions
from kbdctl.comms.session import (
    CONFIG_BLOCK_COUNT,
    CONFIG_BLOCK_SIZE,
    CONFIG_IMAGE_SIZE,
    PROBE_COUNT,
    PROBE_STRIDE,
    TAIL_PROBE_POSITION,
    ConfigProtocol,
    ConfigSession,
    SessionState,
)

__all__ = [
    # Checksum
    "CHECKSUM_START",
    "CHECKSUM_END",
    "checksum16",
    "checksum_from_bytes",
    "checksum_to_bytes",
    "frame_checksum",
    "verify_frame_checksum",
    # Frames
    "CORRELATION_SIZE",
    "FRAME_SIZE",
    "HEADER_SIZE",
    "MAX_PAYLOAD_SIZE",
    "REPORT_ID",
    "RESPONSE_DATA_OFFSET",
    "CommandFrame",
    "CommandId",
    "encode_command",
    "matches_request",
    # Cancellation
    "CancelToken",
    "never_cancelled",
    # Transports
    "Transport",
    "DEFAULT_INTERFACE",
    "DEFAULT_PRODUCT_ID",
    "DEFAULT_READ_SLICE",
    "DEFAULT_VENDOR_ID",
    "DeviceInfo",
    "ResourceGuard",
    "UsbTransport",
    "list_devices",
    # Channel
    "CommandChannel",
    # Transactions
    "CONFIG_BLOCK_COUNT",
    "CONFIG_BLOCK_SIZE",
    "CONFIG_IMAGE_SIZE",
    "PROBE_COUNT",
    "PROBE_STRIDE",
    "TAIL_PROBE_POSITION",
    "ConfigProtocol",
    "ConfigSession",
    "SessionState",
]
