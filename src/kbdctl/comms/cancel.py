"""
Cooperative Cancellation
========================

A CancelToken is shared by everything that runs on behalf of one
invocation. It fires when cancel() is called (for example from a SIGINT
handler) or when its deadline passes. Blocking code never gets
interrupted from outside; it polls the token instead:

- transport reads are issued in short slices and check the token between
  slices;
- the settle delay before an End command sleeps with wait(), which
  returns early when the token fires.

Child tokens created with with_timeout() observe their parent, so a
per-call budget can be narrowed without losing the outer cancellation.
"""

import threading
import time
from typing import Callable, Optional

from kbdctl.errors import CancelledError


class CancelToken:
    """
    Cancellation signal with an optional deadline.

    Args:
        deadline: Absolute deadline on the clock's timeline, or None.
        parent: Token whose cancellation also cancels this one.
        clock: Monotonic clock (seconds). Injected by tests.

    Example:
        token = CancelToken.with_deadline_in(5.0)
        while not token.cancelled:
            ...
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        parent: Optional["CancelToken"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._deadline = deadline
        self._parent = parent
        self._clock = clock

    @classmethod
    def with_deadline_in(
        cls,
        seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> "CancelToken":
        """Create a root token that fires after the given number of seconds."""
        return cls(deadline=clock() + seconds, clock=clock)

    def with_timeout(self, seconds: float) -> "CancelToken":
        """
        Create a child token with a deadline at most `seconds` away.

        The child keeps the parent's deadline if that one is earlier.
        """
        deadline = self._clock() + seconds
        if self._deadline is not None:
            deadline = min(deadline, self._deadline)
        return CancelToken(deadline=deadline, parent=self, clock=self._clock)

    def cancel(self) -> None:
        """Fire the token. Safe to call from a signal handler or thread."""
        self._event.set()

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        """True once cancelled explicitly, by the parent, or by the deadline."""
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> Optional[float]:
        """Seconds until the nearest deadline in the chain, or None."""
        remaining = None
        token: Optional[CancelToken] = self
        while token is not None:
            if token._deadline is not None:
                left = max(0.0, token._deadline - self._clock())
                remaining = left if remaining is None else min(remaining, left)
            token = token._parent
        return remaining

    def wait(self, seconds: float) -> bool:
        """
        Sleep for up to `seconds`, waking early if the token fires.

        Returns:
            True if the token fired, False if the full time elapsed.
        """
        if self.cancelled:
            return True
        limit = self.remaining()
        timeout = seconds if limit is None else min(seconds, limit)
        if timeout > 0 and self._wait_chain(timeout):
            return True
        return self.cancelled

    def _wait_chain(self, timeout: float) -> bool:
        # Parents are only polled, so wake up often enough to notice them.
        step = timeout if self._parent is None else min(timeout, 0.05)
        end = time.monotonic() + timeout
        while True:
            if self._event.wait(step):
                return True
            if self._parent is not None and self._parent.cancelled:
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            step = min(step, left)

    def raise_if_cancelled(self, message: str = "operation cancelled") -> None:
        """Raise CancelledError if the token has fired."""
        if self.cancelled:
            raise CancelledError(message)


def never_cancelled() -> CancelToken:
    """Return a fresh token with no deadline, for callers that don't cancel."""
    return CancelToken()
