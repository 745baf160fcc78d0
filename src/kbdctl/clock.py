"""
Keyboard Clock Codec
====================

The GMK87 keeps its real-time clock inside the configuration image, as
seven bytes starting at offset 35:

    offset  field     encoding
    ------  --------  -----------------------------
    35      seconds   BCD
    36      minutes   BCD
    37      hours     BCD (24-hour)
    38      weekday   plain byte, Monday 1 … Sunday 7
    39      day       BCD
    40      month     BCD
    41      year      BCD, year minus 2000

Every other byte of the image is opaque and must be written back
exactly as it was read.

Latency Compensation
--------------------
The keyboard latches the clock only when the write transaction ends,
which is roughly one read-transaction duration after the time was
sampled. The requested instant is therefore advanced by twice the
measured read duration before encoding (one read plus one write of
about the same length).
"""

import datetime
from dataclasses import dataclass
from typing import Final, Optional

from kbdctl.errors import TimeCodecError, ValueOutOfRangeError

# =============================================================================
# Layout Constants
# =============================================================================

# Offset of the seconds byte within the configuration image
DATE_OFFSET: Final[int] = 35

# Seconds, minutes, hours, weekday, day, month, year
CLOCK_FIELD_COUNT: Final[int] = 7

# Images shorter than this cannot carry the clock
MIN_IMAGE_SIZE: Final[int] = DATE_OFFSET + CLOCK_FIELD_COUNT

# Year stored as an offset from this base
YEAR_BASE: Final[int] = 2000


# =============================================================================
# BCD
# =============================================================================

def bcd_encode(value: int, field: Optional[str] = None) -> int:
    """
    Pack a value 0-99 into one BCD byte.

    Raises:
        ValueOutOfRangeError: If value is outside 0-99.

    Example:
        >>> hex(bcd_encode(59))
        '0x59'
    """
    if not 0 <= value <= 99:
        raise ValueOutOfRangeError(value, field)
    return ((value // 10) << 4) | (value % 10)


def bcd_decode(byte: int, field: Optional[str] = None) -> int:
    """
    Unpack one BCD byte.

    Raises:
        ValueOutOfRangeError: If either nibble is above 9.
    """
    high, low = byte >> 4, byte & 0x0F
    if high > 9 or low > 9:
        raise ValueOutOfRangeError(byte, field)
    return high * 10 + low


def weekday_byte(when: datetime.datetime) -> int:
    """Weekday as stored by the keyboard: Monday 1 … Sunday 7."""
    return when.isoweekday()


def compensate(
    requested: datetime.datetime,
    opdur: datetime.timedelta,
) -> datetime.datetime:
    """Advance the requested instant by two operation durations."""
    return requested + 2 * opdur


# =============================================================================
# Clock Fields
# =============================================================================

@dataclass(frozen=True)
class ClockFields:
    """
    The seven clock fields, as plain integers.

    `year` is the full year (e.g. 2024); the offset from 2000 is applied
    only on the wire.
    """

    second: int
    minute: int
    hour: int
    weekday: int
    day: int
    month: int
    year: int

    @classmethod
    def from_datetime(cls, when: datetime.datetime) -> "ClockFields":
        return cls(
            second=when.second,
            minute=when.minute,
            hour=when.hour,
            weekday=weekday_byte(when),
            day=when.day,
            month=when.month,
            year=when.year,
        )

    def to_bytes(self) -> bytes:
        """
        Encode the fields in image order.

        Raises:
            ValueOutOfRangeError: If a field does not fit in BCD (for
                example a year outside 2000-2099).
        """
        return bytes([
            bcd_encode(self.second, "seconds"),
            bcd_encode(self.minute, "minutes"),
            bcd_encode(self.hour, "hours"),
            self.weekday,
            bcd_encode(self.day, "day"),
            bcd_encode(self.month, "month"),
            bcd_encode(self.year - YEAR_BASE, "year"),
        ])

    @classmethod
    def from_image(cls, image: bytes) -> "ClockFields":
        """Decode the clock fields of a configuration image."""
        _check_image(image)
        raw = image[DATE_OFFSET:DATE_OFFSET + CLOCK_FIELD_COUNT]
        return cls(
            second=bcd_decode(raw[0], "seconds"),
            minute=bcd_decode(raw[1], "minutes"),
            hour=bcd_decode(raw[2], "hours"),
            weekday=raw[3],
            day=bcd_decode(raw[4], "day"),
            month=bcd_decode(raw[5], "month"),
            year=bcd_decode(raw[6], "year") + YEAR_BASE,
        )

    def to_datetime(self) -> datetime.datetime:
        """
        Convert to a naive datetime. The weekday byte is not checked.

        Raises:
            TimeCodecError: If the fields do not form a valid date/time.
        """
        try:
            return datetime.datetime(
                self.year, self.month, self.day,
                self.hour, self.minute, self.second,
            )
        except ValueError as e:
            raise TimeCodecError(f"invalid clock value {self}: {e}") from e


def _check_image(image: bytes) -> None:
    if len(image) < MIN_IMAGE_SIZE:
        raise ValueError(
            f"configuration image too short for clock: {len(image)} bytes, "
            f"need at least {MIN_IMAGE_SIZE}"
        )


# =============================================================================
# Image Helpers
# =============================================================================

def encode_clock(image: bytes, when: datetime.datetime) -> bytes:
    """
    Return a copy of the image with the clock set to `when`.

    Only offsets 35-41 change.

    Raises:
        ValueError: If the image is shorter than 42 bytes.
        ValueOutOfRangeError: If `when` cannot be represented.

    Example:
        >>> image = encode_clock(bytes(48), datetime.datetime(2024, 3, 15, 10, 20, 30))
        >>> image[35:42].hex(" ")
        '30 20 10 05 15 03 24'
    """
    _check_image(image)
    fields = ClockFields.from_datetime(when).to_bytes()
    buf = bytearray(image)
    buf[DATE_OFFSET:DATE_OFFSET + CLOCK_FIELD_COUNT] = fields
    return bytes(buf)


def decode_clock(image: bytes) -> datetime.datetime:
    """Read the clock stored in a configuration image."""
    return ClockFields.from_image(image).to_datetime()
