"""
Configuration Transactions for the GMK87
========================================

This module implements the two transactions the keyboard understands on
its configuration memory: reading the 48-byte configuration image, and
writing it back.

Both are driven by ConfigSession, an explicit state machine. Each
transition sends exactly one command through the CommandChannel, and an
out-of-sequence call is rejected before anything reaches the device.

State Machine
-------------
```
            start()             probe()              finalize()
    IDLE ──────────→ STARTED ──────────→ PROBING ─────────────→ FINALIZED
                        │                 ↺ probe()               ↺ read_block()
                        │ write_image()                              ↑
                        └─────────────→ TRANSFERRING ────────────────┘
                                                      finalize()
```
Any failed command, and reset(), return the session to IDLE.

Read Transaction
----------------
```
HOST                                     KEYBOARD
  | ── Start ───────────────────────→ |
  | ── Probe pos=0,4,…,32 (4 B) ────→ |   nine probes
  | ── Probe pos=36 (1 B) ──────────→ |   tail probe
  | ── End ─────────────────────────→ |   (after 100 ms settle)
  | ── ConfigRead pos=0 ────────────→ |
  | ←──────────────────── 4 B block ── |
  |     ... positions 4 … 44 ...      |
```
The twelve blocks, in position order, form the configuration image.

Write Transaction
-----------------
```
HOST                                     KEYBOARD
  | ── Start ───────────────────────→ |
  | ── ConfigWrite pos=0 (48 B) ────→ |
  | ── End ─────────────────────────→ |
```

The probe sequence is not documented by the vendor. It is replayed
exactly as captured, and its responses are ignored.
"""

import logging
from enum import Enum, auto
from typing import Final, Optional

from kbdctl.comms.cancel import CancelToken, never_cancelled
from kbdctl.comms.channel import CommandChannel
from kbdctl.comms.frame import MAX_PAYLOAD_SIZE, CommandId
from kbdctl.errors import (
    ProtocolError,
    SessionStateError,
    TransactionAborted,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Probes sent after Start in the read transaction
PROBE_COUNT: Final[int] = 9

# Distance between probe positions
PROBE_STRIDE: Final[int] = 4

# Payload size of the regular probes
PROBE_SIZE: Final[int] = 4

# Final single-byte probe
TAIL_PROBE_POSITION: Final[int] = 36
TAIL_PROBE_SIZE: Final[int] = 1

# Each ConfigRead returns one block
CONFIG_BLOCK_SIZE: Final[int] = 4
CONFIG_BLOCK_COUNT: Final[int] = 12

# Complete configuration image
CONFIG_IMAGE_SIZE: Final[int] = CONFIG_BLOCK_SIZE * CONFIG_BLOCK_COUNT


class SessionState(Enum):
    """States of a configuration session."""

    IDLE = auto()
    STARTED = auto()
    PROBING = auto()
    TRANSFERRING = auto()
    FINALIZED = auto()


# Operation name -> states it may be called from
_ALLOWED_FROM: Final[dict[str, frozenset[SessionState]]] = {
    "start": frozenset({SessionState.IDLE}),
    "probe": frozenset({SessionState.STARTED, SessionState.PROBING}),
    "write_image": frozenset({SessionState.STARTED}),
    "finalize": frozenset({SessionState.PROBING, SessionState.TRANSFERRING}),
    "read_block": frozenset({SessionState.FINALIZED}),
}


# =============================================================================
# Session State Machine
# =============================================================================

class ConfigSession:
    """
    One configuration transaction in progress.

    Example:
        session = ConfigSession(channel, cancel)
        session.start()
        session.write_image(image)
        session.finalize()
    """

    def __init__(
        self,
        channel: CommandChannel,
        cancel: Optional[CancelToken] = None,
    ):
        self.channel = channel
        self.cancel = cancel if cancel is not None else never_cancelled()
        self._state = SessionState.IDLE

    @property
    def state(self) -> SessionState:
        return self._state

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Open a transaction. IDLE → STARTED."""
        self._send("start", CommandId.START, b"", 0, SessionState.STARTED)

    def probe(self, position: int, size: int = PROBE_SIZE) -> None:
        """Send a zero-filled probe. STARTED|PROBING → PROBING."""
        self._send(
            "probe", CommandId.PROBE, bytes(size), position, SessionState.PROBING
        )

    def write_image(self, image: bytes) -> None:
        """
        Write the whole image at position 0. STARTED → TRANSFERRING.

        The image must fit in a single frame; there is no chunking.
        """
        if len(image) > MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                f"image of {len(image)} bytes does not fit in one frame "
                f"(maximum {MAX_PAYLOAD_SIZE})"
            )
        self._send(
            "write_image", CommandId.CONFIG_WRITE, bytes(image), 0,
            SessionState.TRANSFERRING
        )

    def finalize(self) -> None:
        """Close the transaction. PROBING|TRANSFERRING → FINALIZED."""
        self._send("finalize", CommandId.END, b"", 0, SessionState.FINALIZED)

    def read_block(self, position: int) -> bytes:
        """
        Read one block of the image. FINALIZED → FINALIZED.

        Returns:
            CONFIG_BLOCK_SIZE bytes.

        Raises:
            ProtocolError: If the response carries fewer bytes than a block.
        """
        data = self._send(
            "read_block", CommandId.CONFIG_READ, bytes(CONFIG_BLOCK_SIZE),
            position, SessionState.FINALIZED
        )
        if len(data) < CONFIG_BLOCK_SIZE:
            self._state = SessionState.IDLE
            raise ProtocolError(
                f"config block at position {position} too short: "
                f"{len(data)} bytes, expected {CONFIG_BLOCK_SIZE}"
            )
        return data[:CONFIG_BLOCK_SIZE]

    def reset(self) -> None:
        """Abandon the transaction. Any state → IDLE. Sends nothing."""
        if self._state is not SessionState.IDLE:
            logger.debug("Session reset from %s", self._state.name)
        self._state = SessionState.IDLE

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _send(
        self,
        operation: str,
        command: CommandId,
        payload: bytes,
        position: int,
        target: SessionState,
    ) -> bytes:
        allowed = _ALLOWED_FROM[operation]
        if self._state not in allowed:
            names = ", ".join(sorted(s.name for s in allowed))
            raise SessionStateError(
                f"cannot {operation} in state {self._state.name} "
                f"(allowed from: {names})"
            )

        try:
            data = self.channel.send_command(command, payload, position, self.cancel)
        except Exception:
            self._state = SessionState.IDLE
            raise

        logger.debug(
            "Session %s -> %s (%s pos=%d)",
            self._state.name, target.name, command.name, position
        )
        self._state = target
        return data


# =============================================================================
# Transactions
# =============================================================================

class ConfigProtocol:
    """
    Read and write the keyboard's configuration image.

    Every step failure aborts the whole transaction with
    TransactionAborted; nothing is retried and partial results are
    dropped.

    Example:
        protocol = ConfigProtocol(channel)
        image = protocol.load_config(cancel)
        protocol.update_config(image, cancel)
    """

    def __init__(self, channel: CommandChannel):
        self.channel = channel

    def load_config(self, cancel: Optional[CancelToken] = None) -> bytes:
        """
        Run the read transaction.

        Returns:
            The CONFIG_IMAGE_SIZE-byte configuration image.

        Raises:
            TransactionAborted: If any step fails.
        """
        session = ConfigSession(self.channel, cancel)
        logger.info("Loading configuration")

        self._step(session, "send start", session.start)
        for i in range(PROBE_COUNT):
            position = i * PROBE_STRIDE
            self._step(
                session, f"send probe at position {position}",
                session.probe, position
            )
        self._step(
            session, f"send probe at position {TAIL_PROBE_POSITION}",
            session.probe, TAIL_PROBE_POSITION, TAIL_PROBE_SIZE
        )
        self._step(session, "send finalize", session.finalize)

        blocks = []
        for i in range(CONFIG_BLOCK_COUNT):
            position = i * CONFIG_BLOCK_SIZE
            blocks.append(self._step(
                session, f"read config at position {position}",
                session.read_block, position
            ))

        image = b"".join(blocks)
        logger.info("Loaded %d-byte configuration", len(image))
        return image

    def update_config(
        self,
        image: bytes,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        """
        Run the write transaction.

        Raises:
            ProtocolError: If the image is not CONFIG_IMAGE_SIZE bytes.
                Nothing is sent to the device.
            TransactionAborted: If any step fails.
        """
        if len(image) != CONFIG_IMAGE_SIZE:
            raise ProtocolError(
                f"configuration image must be {CONFIG_IMAGE_SIZE} bytes, "
                f"got {len(image)}"
            )

        session = ConfigSession(self.channel, cancel)
        logger.info("Writing %d-byte configuration", len(image))

        self._step(session, "send start", session.start)
        self._step(session, "write config", session.write_image, image)
        self._step(session, "send finalize", session.finalize)

        logger.info("Configuration written")

    @staticmethod
    def _step(session: ConfigSession, step: str, operation, *args):
        try:
            return operation(*args)
        except Exception as e:
            session.reset()
            logger.debug("Transaction aborted at '%s': %s", step, e)
            raise TransactionAborted(step, e) from e
