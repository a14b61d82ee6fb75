"""Controller state shared between the reconciliation step and the deactivation worker."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

from .model import RasStatus

# cold start, and the value a reset returns to
IDLE = ""


@dataclass(frozen=True)
class StateView:
    previous_ras: str
    connecting_since: Optional[float]
    deactivation_in_progress: bool


class ActivationState:
    """One mutex around three fields.

    Nothing here calls out to the tool or the network; callers copy a view,
    do their external work unlocked and come back to commit.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._previous_ras = IDLE
        self._connecting_since: Optional[float] = None
        self._deactivation_in_progress = False

    def view(self) -> StateView:
        with self._lock:
            return StateView(self._previous_ras, self._connecting_since, self._deactivation_in_progress)

    @property
    def previous_ras(self) -> str:
        return self.view().previous_ras

    @property
    def connecting_since(self) -> Optional[float]:
        return self.view().connecting_since

    @property
    def deactivation_in_progress(self) -> bool:
        return self.view().deactivation_in_progress

    def set(self, previous_ras: str, connecting_since: Optional[float]) -> None:
        with self._lock:
            self._previous_ras = previous_ras
            self._connecting_since = connecting_since

    def apply(self, decide):
        """Run ``decide(view)`` under the lock and commit what it returns.

        ``decide`` returns an object with ``previous_ras``,
        ``connecting_since`` and ``spawn`` attributes. It sees the
        deactivation flag in the view, so a ``spawn`` it returns claims the
        flag inside the same critical section.
        """
        with self._lock:
            current = StateView(self._previous_ras, self._connecting_since, self._deactivation_in_progress)
            outcome = decide(current)
            if outcome.spawn and not current.deactivation_in_progress:
                self._deactivation_in_progress = True
            self._previous_ras = outcome.previous_ras
            self._connecting_since = outcome.connecting_since
            return outcome

    def claim_deactivation(self) -> bool:
        with self._lock:
            if self._deactivation_in_progress:
                return False
            self._deactivation_in_progress = True
            self._connecting_since = None
            return True

    def finish_deactivation(self, reached_idle: bool) -> None:
        with self._lock:
            if reached_idle:
                self._previous_ras = RasStatus.NOT_CONNECTED.value
                self._connecting_since = None
            self._deactivation_in_progress = False

    def reset(self) -> None:
        with self._lock:
            self._previous_ras = IDLE
            self._connecting_since = None
            self._deactivation_in_progress = False
