"""Activation state controller.

One ``step`` per heartbeat reconciles what the Device-Manager wants (the
activation intent) with what the AMT firmware reports (RAS remote status),
runs ``rpc activate`` when the host is idle and hands stuck hosts to a
background deactivation worker. The next tick after a deactivation sees
``not connected`` again and retries activation.

Transition table, keyed on the previous and the observed RAS status:

    * -> connected                      ACTIVATED
    "" | connected -> connecting        deactivate, ACTIVATION_FAILED
    not connected | connecting
        -> connecting                   ACTIVATING until the connecting
                                        timeout, then deactivate
    * -> not connected                  rpc activate; ACTIVATING only while a
                                        deactivation is still running
    * -> unknown                        UNSPECIFIED, state untouched

Whenever a deactivation would start while one is already running the step
reports ACTIVATING and leaves the state alone.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .amtinfo import CIRA_CONFIGURED_MARKER, DRIVER_MISSING_MARKER, amt_feature_label, parse_amtinfo
from .config import CONNECTING_TIMEOUT_DEFAULT
from .deactivation import DeactivationWorker
from .deadline import Deadline
from .errors import ActivationNotRequested, ActivationSkipped, DMError, ToolError
from .executil import debug, error, info, warn, with_backoff
from .model import ActivationIntent, ActivationStatus, AMTStatus, Operation, RasStatus
from .rpc_tool import rps_activate_url
from .state import IDLE, ActivationState, StateView

AUTH_FAILURE_MARKER = "Unable to authenticate with AMT"
INTERRUPTED_MARKERS = ("interrupted system call", "exit code: 10")

PROVISION_POLL_INITIAL = 0.5
PROVISION_POLL_MAX_DELAY = 4.0
# used only when a step runs without a deadline of its own
PROVISION_POLL_TIMEOUT = 60.0


@dataclass(frozen=True)
class Transition:
    status: ActivationStatus
    previous_ras: str
    connecting_since: Optional[float]
    spawn: bool = False
    activate: bool = False


def _deactivate(view: StateView, previous_ras: str = IDLE) -> Transition:
    if view.deactivation_in_progress:
        return Transition(ActivationStatus.ACTIVATING, view.previous_ras, view.connecting_since)
    return Transition(ActivationStatus.ACTIVATION_FAILED, previous_ras, None, spawn=True)


def reconcile(view: StateView, observed: RasStatus, now: float, connecting_timeout: float) -> Transition:
    """Pure transition for one observation of the RAS remote status."""
    if observed is RasStatus.CONNECTED:
        return Transition(ActivationStatus.ACTIVATED, RasStatus.CONNECTED.value, None)

    if observed is RasStatus.NOT_CONNECTED:
        if view.deactivation_in_progress:
            # departs from the plain "* -> not connected: activate" row: the
            # worker is about to report idle and activating now would race it
            return Transition(ActivationStatus.ACTIVATING, RasStatus.NOT_CONNECTED.value, None)
        return Transition(ActivationStatus.ACTIVATING, RasStatus.NOT_CONNECTED.value, None, activate=True)

    if observed is RasStatus.CONNECTING:
        if view.previous_ras not in (RasStatus.NOT_CONNECTED.value, RasStatus.CONNECTING.value):
            # a healthy activation passes through "not connected" first
            return _deactivate(view)
        since = view.connecting_since if view.connecting_since is not None else now
        if now - since > connecting_timeout:
            return _deactivate(view)
        return Transition(ActivationStatus.ACTIVATING, RasStatus.CONNECTING.value, since)

    return Transition(ActivationStatus.UNSPECIFIED, view.previous_ras, view.connecting_since)


class _NotProvisioned(Exception):
    pass


class ActivationController:
    def __init__(
        self,
        tool,
        dm,
        state: Optional[ActivationState] = None,
        connecting_timeout: float = CONNECTING_TIMEOUT_DEFAULT,
        clock: Callable[[], float] = time.monotonic,
        worker_factory=DeactivationWorker,
        on_amt_enabled: Optional[Callable[[], object]] = None,
    ):
        self.tool = tool
        self.dm = dm
        self.state = state or ActivationState()
        self.connecting_timeout = connecting_timeout
        self._clock = clock
        self._worker_factory = worker_factory
        self._on_amt_enabled = on_amt_enabled
        self._amt_enabled_seen = False
        self._worker = None
        self._hook_thread = None

    @property
    def deactivation_worker(self):
        """Handle of the most recent worker, for observing completion only."""
        return self._worker

    @property
    def amt_enabled_hook(self) -> Optional[threading.Thread]:
        return self._hook_thread

    def step(self, deadline: Optional[Deadline], host_id: str, config) -> Optional[ActivationStatus]:
        """Run one reconciliation; returns the reported status, or None for a no-op tick."""
        if not self._report_amt_status(deadline, host_id):
            return None

        try:
            intent = self.dm.retrieve_activation_details(host_id, deadline=deadline)
        except ActivationSkipped as exc:
            debug("activation.skipped", host_id=host_id, reason=str(exc))
            return None
        if intent.operation is not Operation.ACTIVATE:
            raise ActivationNotRequested(host_id, intent.operation)

        status = self._reconcile(deadline, intent, config)
        self.dm.report_activation_results(host_id, status, deadline=deadline)
        return status

    def _report_amt_status(self, deadline, host_id: str) -> bool:
        try:
            output = self.tool.amtinfo(deadline=deadline)
        except ToolError as exc:
            if DRIVER_MISSING_MARKER in (exc.output or ""):
                warn("amt.driver_missing", host_id=host_id)
                self.dm.report_amt_status(host_id, AMTStatus.DISABLED, "", deadline=deadline)
                return False
            error("amt.amtinfo_failed", host_id=host_id, error=str(exc))
            try:
                self.dm.report_amt_status(host_id, AMTStatus.DISABLED, "", deadline=deadline)
            except DMError as report_exc:
                error("amt.report_disabled_failed", host_id=host_id, error=str(report_exc))
            raise

        snapshot = parse_amtinfo(output)
        if not snapshot.driver_present:
            warn("amt.driver_missing", host_id=host_id)
            self.dm.report_amt_status(host_id, AMTStatus.DISABLED, "", deadline=deadline)
            return False

        feature = amt_feature_label(snapshot.features)
        debug(
            "amt.features",
            host_id=host_id,
            features=snapshot.features.name,
            feature=feature,
            control_mode=snapshot.control_mode,
        )
        self.dm.report_amt_status(host_id, AMTStatus.ENABLED, feature, deadline=deadline)
        if not self._amt_enabled_seen:
            self._amt_enabled_seen = True
            if self._on_amt_enabled is not None:
                # host bring-up must not eat into the step deadline
                self._hook_thread = threading.Thread(
                    target=self._run_amt_enabled_hook, args=(host_id,), name="amt-host-services", daemon=True
                )
                self._hook_thread.start()
        return True

    def _run_amt_enabled_hook(self, host_id: str) -> None:
        try:
            self._on_amt_enabled()
        except Exception as exc:
            # nothing else observes this thread
            error("amt.enabled_hook_failed", host_id=host_id, error=str(exc), kind=type(exc).__name__)

    def _reconcile(self, deadline, intent: ActivationIntent, config) -> ActivationStatus:
        try:
            output = self.tool.amtinfo(deadline=deadline)
        except ToolError as exc:
            warn("activation.amtinfo_failed", host_id=intent.host_id, error=str(exc))
            return ActivationStatus.ACTIVATION_FAILED

        observed = parse_amtinfo(output).ras_remote_status
        now = self._clock()
        transition = self.state.apply(lambda view: reconcile(view, observed, now, self.connecting_timeout))
        debug(
            "activation.transition",
            host_id=intent.host_id,
            observed=observed.value,
            status=transition.status.name,
            spawn=transition.spawn,
            activate=transition.activate,
        )
        if observed is RasStatus.UNKNOWN:
            warn("activation.ras_unknown", host_id=intent.host_id)
        if transition.spawn:
            info("activation.deactivate", host_id=intent.host_id, observed=observed.value)
            self._start_worker(intent, config)
        if transition.activate:
            return self._activate(deadline, intent, config)
        return transition.status

    def _activate(self, deadline, intent: ActivationIntent, config) -> ActivationStatus:
        host_id = intent.host_id
        rps_url = rps_activate_url(config.rps_address)
        info("activation.start", host_id=host_id, url=rps_url, profile=intent.profile_name)
        try:
            output = self.tool.activate(rps_url, intent.profile_name, intent.action_password, deadline=deadline)
        except ToolError as exc:
            error("activation.command_failed", host_id=host_id, error=str(exc))
            output = exc.output or ""

        if AUTH_FAILURE_MARKER in output:
            warn("activation.auth_failed", host_id=host_id)
            transition = self.state.apply(lambda view: _deactivate(view, RasStatus.NOT_CONNECTED.value))
            if transition.spawn:
                self._start_worker(intent, config)
            return ActivationStatus.ACTIVATION_FAILED

        if any(marker in output for marker in INTERRUPTED_MARKERS):
            warn("activation.interrupted", host_id=host_id)
            return ActivationStatus.ACTIVATION_FAILED

        if CIRA_CONFIGURED_MARKER not in output:
            error("activation.not_provisioned", host_id=host_id, output=output[-2000:])
            return ActivationStatus.ACTIVATION_FAILED

        observed = self._wait_for_link(deadline, host_id)
        if observed is None:
            return ActivationStatus.ACTIVATION_FAILED
        now = self._clock()
        since = now if observed is RasStatus.CONNECTING else None
        self.state.apply(lambda view: Transition(ActivationStatus.ACTIVATING, observed.value, since))
        info("activation.provisioned", host_id=host_id, ras=observed.value)
        return ActivationStatus.ACTIVATING

    def _wait_for_link(self, deadline, host_id: str) -> Optional[RasStatus]:
        """Poll amtinfo until RAS reports connecting/connected; None on timeout."""
        if deadline is None:
            deadline = Deadline(PROVISION_POLL_TIMEOUT)

        def poll_ras() -> RasStatus:
            ras = parse_amtinfo(self.tool.amtinfo(deadline=deadline)).ras_remote_status
            debug("activation.poll", host_id=host_id, ras=ras.value)
            if ras not in (RasStatus.CONNECTING, RasStatus.CONNECTED):
                raise _NotProvisioned(ras.value)
            return ras

        try:
            return with_backoff(
                poll_ras,
                tries=None,
                base=PROVISION_POLL_INITIAL,
                max_delay=PROVISION_POLL_MAX_DELAY,
                deadline=deadline,
            )
        except (ToolError, _NotProvisioned) as exc:
            warn("activation.poll_timeout", host_id=host_id, last=str(exc))
            return None

    def _start_worker(self, intent: ActivationIntent, config) -> None:
        worker = self._worker_factory(
            self.state,
            self.tool,
            rps_activate_url(config.rps_address),
            intent.action_password,
            host_id=intent.host_id,
            claimed=True,
        )
        self._worker = worker
        try:
            worker.start()
        except RuntimeError as exc:
            # release the flag claimed for this worker
            error("deactivation.start_failed", host_id=intent.host_id, error=str(exc))
            self.state.finish_deactivation(False)
            raise
