"""
Frame Checksum for the GMK87 Command Protocol
=============================================

Every 64-byte command frame carries a 16-bit checksum in bytes 1-2. It is
the plain unsigned sum of bytes 3 through 63 of the frame, truncated to 16
bits (the carry out of bit 15 is discarded), stored little-endian.

Because the checksum covers the command id and position, the first three
bytes of a frame (report id + checksum) double as a correlation token: the
keyboard echoes them back in its response, and the host uses them to tell
the answer to its request apart from stale reports.

Usage
-----
    from kbdctl.comms.checksum import frame_checksum, checksum_to_bytes

    body = bytearray(64)
    body[3] = 0x05
    value = frame_checksum(body)   # 0x0005
    body[1:3] = checksum_to_bytes(value)
"""

from typing import Final

# =============================================================================
# Constants
# =============================================================================

# Mask for 16-bit values
CHECKSUM_MASK: Final[int] = 0xFFFF

# First byte covered by the checksum (command id)
CHECKSUM_START: Final[int] = 3

# One past the last byte covered by the checksum (whole 64-byte frame)
CHECKSUM_END: Final[int] = 64


# =============================================================================
# Checksum Calculation
# =============================================================================

def checksum16(data: bytes, initial: int = 0) -> int:
    """
    Sum bytes into a 16-bit unsigned accumulator with wraparound.

    Args:
        data: Bytes to add up.
        initial: Starting value, for incremental calculation.

    Returns:
        16-bit sum (0x0000 to 0xFFFF).

    Example:
        >>> hex(checksum16(bytes([0x01, 0x02, 0x03])))
        '0x6'
        >>> hex(checksum16(bytes([0xFF] * 300)))
        '0x2ad4'
    """
    return (initial + sum(data)) & CHECKSUM_MASK


def frame_checksum(frame: bytes) -> int:
    """
    Calculate the checksum of a command frame.

    Only bytes 3..63 take part; the report id and the checksum field
    itself are excluded.

    Args:
        frame: A 64-byte frame (the checksum field may hold anything).

    Returns:
        16-bit checksum.
    """
    return checksum16(frame[CHECKSUM_START:CHECKSUM_END])


# =============================================================================
# Utility Functions
# =============================================================================

def checksum_to_bytes(value: int) -> bytes:
    """
    Convert a checksum to its little-endian wire form.

    Example:
        >>> checksum_to_bytes(0x1234)
        b'4\\x12'
    """
    return bytes([value & 0xFF, (value >> 8) & 0xFF])


def checksum_from_bytes(data: bytes) -> int:
    """
    Convert little-endian checksum bytes back to an integer.

    Args:
        data: At least two bytes, low byte first. Extra bytes are ignored.

    Raises:
        ValueError: If fewer than two bytes are given.
    """
    if len(data) < 2:
        raise ValueError(f"checksum requires 2 bytes, got {len(data)}")
    return data[0] | (data[1] << 8)


def verify_frame_checksum(frame: bytes) -> bool:
    """
    Check that bytes 1-2 of a frame hold the checksum of bytes 3..63.

    Returns:
        False for frames too short to carry a checksum.
    """
    if len(frame) < CHECKSUM_START:
        return False
    return checksum_from_bytes(frame[1:3]) == frame_checksum(frame)
