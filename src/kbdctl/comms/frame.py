"""
GMK87 Command Frame
===================

The keyboard's vendor interface exchanges fixed-size 64-byte interrupt
reports. Requests and responses share the same shape:

    ┌────────┬──────────┬─────────┬────────┬──────────┬──────────────────┐
    │ Report │ Checksum │ Command │ Length │ Position │     Payload      │
    │   04   │  2 B LE  │   1 B   │  1 B   │  3 B LE  │ 56 B, zero pad   │
    └────────┴──────────┴─────────┴────────┴──────────┴──────────────────┘
      byte 0   bytes 1-2   byte 3    byte 4   bytes 5-7   bytes 8-63

- The checksum is the 16-bit sum of bytes 3..63 (see checksum.py).
- Position is a byte offset into the configuration image.
- A response matches a request when its first three bytes (report id and
  checksum) are identical to the request's.
"""

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Final

from kbdctl.comms.checksum import (
    checksum_from_bytes,
    checksum_to_bytes,
    frame_checksum,
)
from kbdctl.errors import ChecksumError, PayloadTooLargeError, ProtocolError

logger = logging.getLogger(__name__)


# =============================================================================
# Frame Constants
# =============================================================================

# USB interrupt report size
FRAME_SIZE: Final[int] = 64

# Report id carried in byte 0 of every request
REPORT_ID: Final[int] = 0x04

# Header: report id + checksum + command + length + position
HEADER_SIZE: Final[int] = 8

# Largest payload that fits in one frame
MAX_PAYLOAD_SIZE: Final[int] = FRAME_SIZE - HEADER_SIZE

# Position is a 24-bit field
MAX_POSITION: Final[int] = 0xFFFFFF

# Bytes 0..2 identify the response belonging to a request
CORRELATION_SIZE: Final[int] = 3

# Responses carry data after the echoed command byte
RESPONSE_DATA_OFFSET: Final[int] = 4


class CommandId(IntEnum):
    """
    Command ids understood by the keyboard.

    The meaning of PROBE is not documented; it is sent during the read
    transaction to prepare the device and its response is ignored.
    """

    START = 0x01
    END = 0x02
    PROBE = 0x03
    CONFIG_READ = 0x05
    CONFIG_WRITE = 0x06


# =============================================================================
# Frame Class
# =============================================================================

@dataclass(frozen=True)
class CommandFrame:
    """
    A single 64-byte command frame.

    Attributes:
        command: Command id (CommandId or raw int for unknown commands)
        payload: Payload bytes, at most MAX_PAYLOAD_SIZE
        position: Byte offset into the configuration image (24 bits)

    Example:
        frame = CommandFrame(CommandId.CONFIG_READ, bytes(4), position=8)
        wire = frame.to_bytes()
        assert CommandFrame.from_bytes(wire) == frame
    """

    command: int
    payload: bytes = b""
    position: int = 0

    def __post_init__(self) -> None:
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise PayloadTooLargeError(len(self.payload), MAX_PAYLOAD_SIZE)
        if not 0 <= self.position <= MAX_POSITION:
            raise ValueError(
                f"position must be 0-{MAX_POSITION:#x}, got {self.position}"
            )
        if not 0 <= self.command <= 0xFF:
            raise ValueError(f"command must fit in a byte, got {self.command}")
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, "payload", bytes(self.payload))

    def to_bytes(self) -> bytes:
        """
        Serialize the frame for transmission.

        Returns:
            Exactly FRAME_SIZE bytes with the checksum filled in.
        """
        buf = bytearray(FRAME_SIZE)
        buf[0] = REPORT_ID
        buf[3] = self.command
        buf[4] = len(self.payload)
        buf[5:8] = self.position.to_bytes(3, "little")
        buf[HEADER_SIZE:HEADER_SIZE + len(self.payload)] = self.payload
        buf[1:3] = checksum_to_bytes(frame_checksum(buf))

        logger.debug(
            "Encoded frame: command=%d pos=%d len=%d token=%s",
            self.command, self.position, len(self.payload), buf[:3].hex()
        )
        return bytes(buf)

    @property
    def correlation_token(self) -> bytes:
        """First three bytes of the encoded frame (report id + checksum)."""
        return self.to_bytes()[:CORRELATION_SIZE]

    @classmethod
    def from_bytes(cls, data: bytes) -> "CommandFrame":
        """
        Decode a 64-byte request frame.

        Raises:
            ProtocolError: If size, report id or length field is invalid.
            ChecksumError: If the checksum does not match.
        """
        if len(data) != FRAME_SIZE:
            raise ProtocolError(
                f"frame must be {FRAME_SIZE} bytes, got {len(data)}"
            )
        if data[0] != REPORT_ID:
            raise ProtocolError(
                f"invalid report id: got {data[0]:02X}, expected {REPORT_ID:02X}"
            )

        expected = frame_checksum(data)
        actual = checksum_from_bytes(data[1:3])
        if expected != actual:
            raise ChecksumError(expected, actual)

        length = data[4]
        if length > MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                f"length field {length} exceeds maximum {MAX_PAYLOAD_SIZE}"
            )

        command = data[3]
        try:
            command = CommandId(command)
        except ValueError:
            logger.debug("Unknown command id in frame: %d", command)

        return cls(
            command=command,
            payload=bytes(data[HEADER_SIZE:HEADER_SIZE + length]),
            position=int.from_bytes(data[5:8], "little"),
        )

    def __repr__(self) -> str:
        name = (
            self.command.name if isinstance(self.command, CommandId)
            else str(self.command)
        )
        return (
            f"CommandFrame(command={name}, pos={self.position}, "
            f"payload[{len(self.payload)}]={self.payload.hex()})"
        )


# =============================================================================
# Helpers
# =============================================================================

def encode_command(command: int, payload: bytes = b"", position: int = 0) -> bytes:
    """
    Build the wire bytes of a command in one call.

    Raises:
        PayloadTooLargeError: If payload exceeds MAX_PAYLOAD_SIZE.
    """
    return CommandFrame(command, payload, position).to_bytes()


def matches_request(request: bytes, response: bytes) -> bool:
    """Return True if response carries the request's correlation token."""
    return bytes(response[:CORRELATION_SIZE]) == bytes(request[:CORRELATION_SIZE])
