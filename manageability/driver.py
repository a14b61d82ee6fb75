"""Heartbeat loop around the activation controller."""

from __future__ import annotations

import time
from typing import Callable, Optional

from .deadline import Deadline
from .errors import ActivationNotRequested
from .executil import debug, error, info


class PeriodicDriver:
    def __init__(
        self,
        controller,
        host_id: str,
        config,
        interval: Optional[float] = None,
        stop: Optional[Deadline] = None,
        sleep: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        max_ticks: Optional[int] = None,
    ):
        self.controller = controller
        self.host_id = host_id
        self.config = config
        self.interval = interval if interval is not None else config.heartbeat_interval
        self._stop = stop or Deadline()
        self._sleep = sleep or self._stop.sleep
        self._clock = clock
        self.max_ticks = max_ticks
        self.ticks = 0
        self.last_status = None
        self.last_success: Optional[float] = None

    @property
    def stopped(self) -> bool:
        return self._stop.cancelled

    def stop(self) -> None:
        """Cancel the loop and the step in flight; a running deactivation is left alone."""
        self._stop.cancel()

    def run_once(self) -> bool:
        """One tick. Returns True when the step completed without raising."""
        self.ticks += 1
        deadline = self._stop.child(self.interval)
        try:
            self.last_status = self.controller.step(deadline, self.host_id, self.config)
        except ActivationNotRequested as exc:
            info("driver.not_requested", host_id=self.host_id, operation=exc.operation.name)
            return False
        except Exception as exc:
            # nothing a single tick raises may end the process
            error("driver.step_failed", host_id=self.host_id, error=str(exc), kind=type(exc).__name__)
            return False
        self.last_success = self._clock()
        status = self.last_status.name if self.last_status is not None else None
        debug("driver.step_ok", host_id=self.host_id, status=status)
        return True

    def run(self) -> None:
        info("driver.start", host_id=self.host_id, interval=self.interval)
        while not self.stopped:
            self.run_once()
            if self.max_ticks is not None and self.ticks >= self.max_ticks:
                break
            if self.stopped:
                break
            self._sleep(self.interval)
        info("driver.stop", host_id=self.host_id, ticks=self.ticks)

    def is_ready(self, now: Optional[float] = None, window: Optional[float] = None) -> bool:
        """Last success within twice the larger of the heartbeat and ``window``."""
        if self.last_success is None:
            return False
        now = self._clock() if now is None else now
        span = max(self.interval, window or 0.0)
        return now - self.last_success <= 2 * span
