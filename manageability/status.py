"""Readiness reporting to the node status server."""

from __future__ import annotations

import threading
from typing import Callable, Optional

import grpc

from .errors import StatusError
from .executil import error, info, warn, with_backoff
from .proto_schema import Schema

STATUS_TIMEOUT = 1.0
INTERVAL_DEFAULT = 10.0
INTERVAL_RETRIES = 30

_SCHEMA = Schema(
    "status/agent_status.proto",
    "agent_status_proto.v1",
    "StatusService",
    enums={"Status": ["STATUS_UNSPECIFIED", "STATUS_READY", "STATUS_NOT_READY"]},
    messages={
        "ReportStatusRequest": [("agent_name", "string"), ("status", "Status")],
        "ReportStatusResponse": [],
        "GetStatusIntervalRequest": [("agent_name", "string")],
        "GetStatusIntervalResponse": [("interval_seconds", "int32")],
    },
    methods=[
        ("ReportStatus", "ReportStatusRequest", "ReportStatusResponse"),
        ("GetStatusInterval", "GetStatusIntervalRequest", "GetStatusIntervalResponse"),
    ],
)

ReportStatusRequest = _SCHEMA.message("ReportStatusRequest")
ReportStatusResponse = _SCHEMA.message("ReportStatusResponse")
GetStatusIntervalRequest = _SCHEMA.message("GetStatusIntervalRequest")
GetStatusIntervalResponse = _SCHEMA.message("GetStatusIntervalResponse")

STATUS_READY = 1
STATUS_NOT_READY = 2


class StatusClient:
    """Plaintext client; the status server listens on a local socket."""

    def __init__(self, endpoint: str, channel=None, timeout: float = STATUS_TIMEOUT):
        self.endpoint = endpoint
        self.timeout = timeout
        if channel is None:
            channel = grpc.insecure_channel(endpoint, options=[("grpc.enable_http_proxy", 0)])
        self._channel = channel
        self._report = channel.unary_unary(
            _SCHEMA.method_path("ReportStatus"),
            request_serializer=ReportStatusRequest.SerializeToString,
            response_deserializer=ReportStatusResponse.FromString,
        )
        self._interval = channel.unary_unary(
            _SCHEMA.method_path("GetStatusInterval"),
            request_serializer=GetStatusIntervalRequest.SerializeToString,
            response_deserializer=GetStatusIntervalResponse.FromString,
        )

    def _send(self, agent_name: str, status: int) -> None:
        try:
            self._report(ReportStatusRequest(agent_name=agent_name, status=status), timeout=self.timeout)
        except grpc.RpcError as exc:
            raise StatusError(f"failed to send status to {self.endpoint}: {exc}") from exc

    def send_ready(self, agent_name: str) -> None:
        self._send(agent_name, STATUS_READY)

    def send_not_ready(self, agent_name: str) -> None:
        self._send(agent_name, STATUS_NOT_READY)

    def get_status_interval(self, agent_name: str) -> float:
        try:
            resp = self._interval(GetStatusIntervalRequest(agent_name=agent_name), timeout=self.timeout)
        except grpc.RpcError as exc:
            raise StatusError(f"failed to retrieve status interval from {self.endpoint}: {exc}") from exc
        return float(resp.interval_seconds)

    def close(self) -> None:
        self._channel.close()


class StatusReporter:
    """Sends Ready/NotReady every status interval, from the driver's readiness.

    The first report goes out immediately. The interval comes from the status
    server (10 s when it cannot be fetched).
    """

    def __init__(
        self,
        client: StatusClient,
        driver,
        agent_name: str,
        stop,
        interval: Optional[float] = None,
        sleep: Optional[Callable[[float], bool]] = None,
        max_ticks: Optional[int] = None,
        retry_base: float = 0.5,
    ):
        self.client = client
        self.driver = driver
        self.agent_name = agent_name
        self._stop = stop
        self.interval = interval
        self._sleep = sleep or stop.sleep
        self.max_ticks = max_ticks
        self.retry_base = retry_base
        self.ticks = 0
        self._thread = None

    def resolve_interval(self) -> float:
        try:
            seconds = with_backoff(
                lambda: self.client.get_status_interval(self.agent_name),
                tries=INTERVAL_RETRIES,
                base=self.retry_base,
                max_delay=30.0,
                deadline=self._stop,
            )
        except StatusError as exc:
            warn("status.interval_default", error=str(exc), interval=INTERVAL_DEFAULT)
            return INTERVAL_DEFAULT
        return seconds if seconds > 0 else INTERVAL_DEFAULT

    def report_once(self) -> bool:
        ready = self.driver.is_ready(window=self.interval)
        try:
            if ready:
                self.client.send_ready(self.agent_name)
            else:
                self.client.send_not_ready(self.agent_name)
        except StatusError as exc:
            error("status.report_failed", ready=ready, error=str(exc))
        else:
            info("status.reported", ready=ready)
        return ready

    def run(self) -> None:
        if self.interval is None:
            self.interval = self.resolve_interval()
        while not self._stop.cancelled:
            self.report_once()
            self.ticks += 1
            if self.max_ticks is not None and self.ticks >= self.max_ticks:
                break
            self._sleep(self.interval)

    def start(self) -> "StatusReporter":
        self._thread = threading.Thread(target=self.run, name="status-reporter", daemon=True)
        self._thread.start()
        return self

    def join(self, timeout=None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
