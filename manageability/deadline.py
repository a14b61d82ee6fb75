"""Cancellable deadlines threaded through every blocking call."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class Deadline:
    """A point in monotonic time plus a cancellation token.

    A child deadline expires no later than its parent and is cancelled when
    the parent is cancelled. A deadline built without a parent is
    independent, which is what the deactivation worker uses so that stopping
    the periodic driver does not interrupt it.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["Deadline"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._parent = parent
        self._event = threading.Event()
        self._expires_at = None if timeout is None else clock() + max(0.0, timeout)

    def child(self, timeout: Optional[float] = None) -> "Deadline":
        return Deadline(timeout, parent=self, clock=self._clock)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded. Zero once cancelled."""
        if self.cancelled:
            return 0.0
        mine = None
        if self._expires_at is not None:
            mine = max(0.0, self._expires_at - self._clock())
        theirs = self._parent.remaining() if self._parent is not None else None
        if mine is None:
            return theirs
        if theirs is None:
            return mine
        return min(mine, theirs)

    @property
    def expired(self) -> bool:
        left = self.remaining()
        return left is not None and left <= 0.0

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp an operation timeout to what is left of this deadline."""
        left = self.remaining()
        if left is None:
            return timeout
        if timeout is None:
            return left
        return min(timeout, left)

    def sleep(self, seconds: float) -> bool:
        """Wait up to ``seconds``; False if the deadline ran out or was cancelled first."""
        if self.expired:
            return False
        wait = self.bound(seconds)
        # parent cancellation is not signalled on our event, so poll for it
        step = 0.25 if self._parent is not None else wait
        end = time.monotonic() + wait
        while True:
            left = end - time.monotonic()
            if left <= 0:
                break
            if self._event.wait(min(step, left)) or self.cancelled:
                return False
        return wait >= seconds
