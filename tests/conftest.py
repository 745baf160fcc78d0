"""
Shared Test Fixtures
====================

Fake devices for exercising the protocol without hardware:

- FakeClock: a monotonic clock that only moves when told to
- ScriptedTransport: replays a queue of canned responses
- SimulatedKeyboard: answers every command the way a GMK87 does,
  echoing the request header followed by a 4-byte block

Both transports advance the fake clock by the full read timeout when
they have nothing to return, so response budgets expire deterministically.
"""

from collections import deque
from typing import Callable, Optional, Union

import pytest

from kbdctl.comms.cancel import CancelToken
from kbdctl.comms.frame import CommandFrame, CommandId
from kbdctl.comms.transport import Transport
from kbdctl.config import KeyboardConfig
from kbdctl.errors import TransportTimeoutError

# A response whose correlation token matches no real request
STALE_RESPONSE = bytes([0x04, 0xFF, 0xFF, 0x00]) + bytes(4)


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


ScriptItem = Union[bytes, BaseException, Callable[[bytes], bytes]]


class ScriptedTransport(Transport):
    """
    Transport returning queued responses in order.

    Queue items may be bytes, an exception to raise, or a callable that
    receives the last written frame and returns the response.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.writes: list[bytes] = []
        self.responses: deque[ScriptItem] = deque()
        self.read_timeouts: list[float] = []
        self.write_count: Optional[int] = None
        self.close_calls = 0

    def queue(self, *responses: ScriptItem) -> None:
        self.responses.extend(responses)

    def write(self, data: bytes, cancel: CancelToken) -> int:
        cancel.raise_if_cancelled()
        self.writes.append(bytes(data))
        return len(data) if self.write_count is None else self.write_count

    def read(self, cancel: CancelToken, timeout: float) -> bytes:
        cancel.raise_if_cancelled()
        self.read_timeouts.append(timeout)
        if not self.responses:
            self.clock.advance(timeout)
            raise TransportTimeoutError("no report")
        item = self.responses.popleft()
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(self.writes[-1])
        return item

    def close(self) -> None:
        self.close_calls += 1


class SimulatedKeyboard(Transport):
    """
    In-memory GMK87.

    ConfigRead returns the block of `image` at the requested position;
    ConfigWrite stores its payload into `image`. Every other command is
    answered with a zero block.

    Args:
        clock: Fake clock to advance.
        image: Initial configuration image.
        latency: Seconds each response takes to arrive.
    """

    def __init__(
        self,
        clock: FakeClock,
        image: bytes = bytes(48),
        latency: float = 0.0,
    ):
        self.clock = clock
        self.image = bytearray(image)
        self.latency = latency
        self.frames: list[CommandFrame] = []
        self.pending: deque[bytes] = deque()
        self.stale_before: set[int] = set()
        self.fail_on: Optional[tuple[int, BaseException]] = None
        self.closed = False

    @property
    def commands(self) -> list[tuple[int, int, int]]:
        """(command, position, payload length) of every frame received."""
        return [(f.command, f.position, len(f.payload)) for f in self.frames]

    def write(self, data: bytes, cancel: CancelToken) -> int:
        cancel.raise_if_cancelled()
        frame = CommandFrame.from_bytes(data)
        self.frames.append(frame)

        if self.fail_on is not None and self.fail_on[0] == frame.command:
            raise self.fail_on[1]
        if frame.command in self.stale_before:
            self.pending.append(STALE_RESPONSE)

        if frame.command == CommandId.CONFIG_READ:
            block = bytes(self.image[frame.position:frame.position + 4])
        else:
            if frame.command == CommandId.CONFIG_WRITE:
                end = frame.position + len(frame.payload)
                self.image[frame.position:end] = frame.payload
            block = bytes(4)

        self.pending.append(bytes(data[:4]) + block)
        return len(data)

    def read(self, cancel: CancelToken, timeout: float) -> bytes:
        cancel.raise_if_cancelled()
        if not self.pending:
            self.clock.advance(timeout)
            raise TransportTimeoutError("no report")
        self.clock.advance(self.latency)
        return self.pending.popleft()

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport(clock: FakeClock) -> ScriptedTransport:
    return ScriptedTransport(clock)


@pytest.fixture
def device(clock: FakeClock) -> SimulatedKeyboard:
    return SimulatedKeyboard(clock)


@pytest.fixture
def fast_config() -> KeyboardConfig:
    """Default config without the pre-End pause."""
    return KeyboardConfig(settle_delay=0.0)
