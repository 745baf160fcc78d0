"""
kbdctl Configuration
====================

Settings that identify the keyboard and tune the protocol timing.

Values come from three places, later ones winning:

1. The defaults below (a stock GMK87)
2. Environment variables (KeyboardConfig.from_env)
3. Command-line options (KeyboardConfig.with_overrides)

Environment Variables
---------------------
    KBDCTL_VID                 Vendor id, decimal or 0x-prefixed hex
    KBDCTL_PID                 Product id, decimal or 0x-prefixed hex
    KBDCTL_INTERFACE           Vendor interface number
    KBDCTL_RESPONSE_TIMEOUT    Per-command response budget (seconds)
    KBDCTL_SETTLE_DELAY        Pause before End (seconds)

Invalid values are ignored with a warning.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

from kbdctl.comms.channel import CommandChannel
from kbdctl.comms.usb import (
    DEFAULT_INTERFACE,
    DEFAULT_PRODUCT_ID,
    DEFAULT_READ_SLICE,
    DEFAULT_VENDOR_ID,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyboardConfig:
    """
    Keyboard identity and protocol timing.

    Example:
        config = KeyboardConfig.from_env().with_overrides(vendor_id=0x320F)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # DEVICE
    # ═══════════════════════════════════════════════════════════════════════

    vendor_id: int = DEFAULT_VENDOR_ID
    product_id: int = DEFAULT_PRODUCT_ID
    interface: int = DEFAULT_INTERFACE

    # ═══════════════════════════════════════════════════════════════════════
    # TIMING
    # ═══════════════════════════════════════════════════════════════════════

    response_timeout: float = CommandChannel.DEFAULT_RESPONSE_TIMEOUT
    settle_delay: float = CommandChannel.DEFAULT_SETTLE_DELAY
    read_slice: float = DEFAULT_READ_SLICE  # cancel-polling granularity

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "KeyboardConfig":
        """
        Create a KeyboardConfig from KBDCTL_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}

        for name, var, parse in (
            ("vendor_id", "KBDCTL_VID", _parse_id),
            ("product_id", "KBDCTL_PID", _parse_id),
            ("interface", "KBDCTL_INTERFACE", int),
            ("response_timeout", "KBDCTL_RESPONSE_TIMEOUT", _parse_seconds),
            ("settle_delay", "KBDCTL_SETTLE_DELAY", _parse_seconds),
        ):
            if raw := env.get(var):
                value = _try_parse(var, raw, parse)
                if value is not None:
                    overrides[name] = value

        return cls(**overrides)

    def with_overrides(self, **overrides: Any) -> "KeyboardConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def _parse_id(text: str) -> int:
    value = int(text, 0)
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"USB id out of range: {text}")
    return value


def _parse_seconds(text: str) -> float:
    value = float(text)
    if value < 0:
        raise ValueError(f"negative duration: {text}")
    return value


def _try_parse(var: str, raw: str, parse: Callable[[str], Any]) -> Any:
    try:
        return parse(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", var, raw)
        return None
