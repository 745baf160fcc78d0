"""
Command Channel
===============

Turns one logical command into one confirmed round trip:

1. Encode the command into a 64-byte frame.
2. If the command is End, wait for the settle delay first. The keyboard
   needs ~100 ms before End; skipping the wait desynchronises it.
3. Write the frame. The write is never retried.
4. Read reports until one carries the request's correlation token
   (bytes 0..2). Anything else is a stale report from an earlier command
   and is discarded. The whole read phase shares one response budget
   (2 s) measured from just after the write.
5. Return the response from byte 4 onward.

The protocol is strictly half-duplex: exactly one command is in flight at
a time, and the channel is not thread-safe.
"""

import logging
import time
from typing import Callable, Final, Optional

from kbdctl.comms.cancel import CancelToken, never_cancelled
from kbdctl.comms.frame import (
    FRAME_SIZE,
    RESPONSE_DATA_OFFSET,
    CommandId,
    encode_command,
    matches_request,
)
from kbdctl.comms.transport import Transport
from kbdctl.errors import (
    CancelledError,
    ResponseTimeoutError,
    ShortReadError,
    ShortWriteError,
    TransportTimeoutError,
)

logger = logging.getLogger(__name__)

MatchPredicate = Callable[[bytes, bytes], bool]


class CommandChannel:
    """
    Single-command round trips over a Transport.

    Args:
        transport: Open transport to the keyboard.
        response_timeout: Budget for the read phase of one command (seconds).
        settle_delay: Pause before every End command (seconds).
        clock: Monotonic clock used for the response budget.

    Example:
        channel = CommandChannel(transport)
        data = channel.send_command(CommandId.CONFIG_READ, bytes(4), 0)
    """

    # Read-phase budget for one command (seconds)
    DEFAULT_RESPONSE_TIMEOUT: Final[float] = 2.0

    # Device-side settle time required before End (seconds)
    DEFAULT_SETTLE_DELAY: Final[float] = 0.1

    def __init__(
        self,
        transport: Transport,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.response_timeout = response_timeout
        self.settle_delay = settle_delay
        self._clock = clock

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def encode(self, command: int, payload: bytes = b"", position: int = 0) -> bytes:
        """
        Encode a command frame.

        Raises:
            PayloadTooLargeError: If the payload exceeds 56 bytes.
        """
        return encode_command(command, payload, position)

    def send_command(
        self,
        command: int,
        payload: bytes = b"",
        position: int = 0,
        cancel: Optional[CancelToken] = None,
    ) -> bytes:
        """Encode and send a command, returning the response data."""
        return self.send(self.encode(command, payload, position), cancel)

    def send(self, frame: bytes, cancel: Optional[CancelToken] = None) -> bytes:
        """
        Send an encoded frame and wait for its response.

        Args:
            frame: 64-byte frame from encode().
            cancel: Cancellation token (default: never cancelled).

        Returns:
            Response bytes from offset 4 onward.

        Raises:
            ShortWriteError: If the transport wrote fewer than 64 bytes.
            ShortReadError: If a response is shorter than 4 bytes.
            ResponseTimeoutError: If no matching response arrives in time.
            CancelledError: If the token fires during the delay or the reads.
            TransportError: If the transport itself fails.
        """
        if cancel is None:
            cancel = never_cancelled()
        command = frame[3]

        if command == CommandId.END:
            self._settle(cancel)

        written = self.transport.write(frame, cancel)
        if written != FRAME_SIZE:
            raise ShortWriteError(command, written, FRAME_SIZE)

        deadline = self._clock() + self.response_timeout
        response = self.wait_for_match(frame, deadline, cancel)
        return response[RESPONSE_DATA_OFFSET:]

    def wait_for_match(
        self,
        request: bytes,
        deadline: float,
        cancel: CancelToken,
        predicate: MatchPredicate = matches_request,
    ) -> bytes:
        """
        Read until a response satisfies the predicate or the deadline passes.

        Non-matching responses are logged and dropped; they do not extend
        the deadline.

        Args:
            request: The frame that was written.
            deadline: Absolute deadline on the channel's clock.
            cancel: Cancellation token.
            predicate: Match test, called as predicate(request, response).

        Returns:
            The full matching response.
        """
        command = request[3]
        discarded = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.debug(
                    "Response budget exhausted for command %d (%d discarded)",
                    command, discarded
                )
                raise ResponseTimeoutError(command, self.response_timeout)

            try:
                response = self.transport.read(cancel, remaining)
            except TransportTimeoutError:
                continue

            logger.debug(
                "Read response: command=%d bytes=%d", command, len(response)
            )
            if len(response) < RESPONSE_DATA_OFFSET:
                raise ShortReadError(command, len(response))

            if not predicate(request, response):
                discarded += 1
                logger.debug(
                    "Ignoring unmatched response: expected %s, got %s",
                    request[:3].hex(), bytes(response[:3]).hex()
                )
                continue

            logger.debug(
                "Matched response: command=%d data=%s",
                command, bytes(response[RESPONSE_DATA_OFFSET:]).hex()
            )
            return bytes(response)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _settle(self, cancel: CancelToken) -> None:
        """Wait the pre-End settle delay, observing cancellation."""
        logger.debug("Settling %.3fs before End", self.settle_delay)
        if cancel.wait(self.settle_delay):
            raise CancelledError("cancelled while waiting to send End")
