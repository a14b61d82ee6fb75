"""Background AMT deactivation."""

from __future__ import annotations

import threading

from .amtinfo import parse_amtinfo
from .deadline import Deadline
from .errors import ToolError
from .executil import info, warn, with_backoff
from .model import RasStatus
from .rpc_tool import DEACTIVATE_TIMEOUT

IDLE_POLL_TIMEOUT = 60.0
IDLE_POLL_INITIAL = 1.0
IDLE_POLL_MAX_DELAY = 8.0


class _StillConnected(Exception):
    pass


class DeactivationWorker:
    """Runs ``rpc deactivate`` and waits for the firmware to report idle.

    The worker owns its own deadline; cancelling the periodic driver does not
    cut it short. On exit it always clears the in-progress flag, and when the
    deactivate command succeeded it marks the state ``not connected`` so the
    next tick re-activates.
    """

    def __init__(
        self,
        state,
        tool,
        rps_url: str,
        password: str,
        host_id: str = "",
        claimed: bool = False,
        poll_timeout: float = IDLE_POLL_TIMEOUT,
        poll_initial: float = IDLE_POLL_INITIAL,
        poll_max: float = IDLE_POLL_MAX_DELAY,
    ):
        self.state = state
        self.tool = tool
        self.rps_url = rps_url
        self._password = password
        self.host_id = host_id
        self.claimed = claimed
        self.poll_timeout = poll_timeout
        self.poll_initial = poll_initial
        self.poll_max = poll_max
        self.succeeded = None
        self._thread = None

    def start(self) -> "DeactivationWorker":
        self._thread = threading.Thread(target=self.run, name="amt-deactivation", daemon=True)
        self._thread.start()
        return self

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout=None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        if not self.claimed and not self.state.claim_deactivation():
            info("deactivation.already_running", host_id=self.host_id)
            return
        reached_idle = False
        try:
            info("deactivation.start", host_id=self.host_id, url=self.rps_url)
            try:
                self.tool.deactivate(self.rps_url, self._password, deadline=Deadline(DEACTIVATE_TIMEOUT))
            except ToolError as exc:
                warn("deactivation.failed", host_id=self.host_id, error=str(exc), output=(exc.output or "")[-2000:])
                return
            reached_idle = True
            self._wait_for_idle()
        finally:
            self.succeeded = reached_idle
            self.state.finish_deactivation(reached_idle)
            info("deactivation.done", host_id=self.host_id, ok=reached_idle)

    def _wait_for_idle(self) -> None:
        deadline = Deadline(self.poll_timeout)

        def poll_ras():
            ras = parse_amtinfo(self.tool.amtinfo(deadline=deadline)).ras_remote_status
            if ras is not RasStatus.NOT_CONNECTED:
                raise _StillConnected(ras.value)
            return ras

        try:
            with_backoff(poll_ras, tries=None, base=self.poll_initial, max_delay=self.poll_max, deadline=deadline)
        except (ToolError, _StillConnected) as exc:
            # the deactivate command itself succeeded; the next tick observes the real status
            warn("deactivation.idle_poll_timeout", host_id=self.host_id, last=str(exc))
