"""gRPC client for the Device-Manager (DeviceManagement service)."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import grpc

from . import dm_proto
from .config import TLSConfig
from .errors import ActivationSkipped, DMError
from .executil import debug, info, warn
from .model import ActivationIntent, ActivationStatus, AMTStatus, Operation

RETRY_INTERVAL = 10.0
CONN_TIMEOUT = 5.0


def _read_file(path: Optional[str]) -> Optional[bytes]:
    if not path:
        return None
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise DMError(f"failed to read TLS material {path}: {exc}") from exc


def build_credentials(tls: TLSConfig) -> grpc.ChannelCredentials:
    """TLS credentials; mutual TLS when a client cert and key are configured."""
    return grpc.ssl_channel_credentials(
        root_certificates=_read_file(tls.ca_cert_path),
        private_key=_read_file(tls.client_key_path),
        certificate_chain=_read_file(tls.client_cert_path),
    )


def _status_code(exc: grpc.RpcError):
    code = getattr(exc, "code", None)
    return code() if callable(code) else None


def _details(exc: grpc.RpcError) -> str:
    details = getattr(exc, "details", None)
    return (details() if callable(details) else None) or str(exc)


def _operation(value: int) -> Operation:
    try:
        return Operation(value)
    except ValueError:
        return Operation.UNSPECIFIED


class DMClient:
    def __init__(
        self,
        service_url: str,
        credentials: Optional[grpc.ChannelCredentials] = None,
        channel=None,
        unary_timeout: float = CONN_TIMEOUT,
        token_path: Optional[str] = None,
    ):
        self.service_url = service_url
        self.unary_timeout = unary_timeout
        self.token_path = token_path
        self._credentials = credentials
        self._channel = None
        self._stubs: dict = {}
        if channel is not None:
            self._bind(channel)

    def _bind(self, channel) -> None:
        self._channel = channel
        self._stubs = {
            "ReportAMTStatus": channel.unary_unary(
                dm_proto.method_path("ReportAMTStatus"),
                request_serializer=dm_proto.AMTStatusRequest.SerializeToString,
                response_deserializer=dm_proto.AMTStatusResponse.FromString,
            ),
            "RetrieveActivationDetails": channel.unary_unary(
                dm_proto.method_path("RetrieveActivationDetails"),
                request_serializer=dm_proto.ActivationRequest.SerializeToString,
                response_deserializer=dm_proto.ActivationDetailsResponse.FromString,
            ),
            "ReportActivationResults": channel.unary_unary(
                dm_proto.method_path("ReportActivationResults"),
                request_serializer=dm_proto.ActivationResultRequest.SerializeToString,
                response_deserializer=dm_proto.ActivationResultResponse.FromString,
            ),
        }

    @property
    def connected(self) -> bool:
        return bool(self._stubs)

    def connect(self, timeout: float = CONN_TIMEOUT) -> None:
        if self._credentials is None:
            raise DMError("no transport credentials configured")
        channel = grpc.secure_channel(self.service_url, self._credentials)
        try:
            grpc.channel_ready_future(channel).result(timeout=timeout)
        except grpc.FutureTimeoutError as exc:
            channel.close()
            raise DMError(f"connection to {self.service_url} failed: not ready after {timeout}s") from exc
        self._bind(channel)

    def close(self) -> None:
        if self._channel is not None:
            self._channel.close()
        self._channel = None
        self._stubs = {}

    def _metadata(self):
        if not self.token_path:
            return None
        try:
            token = Path(self.token_path).read_text(encoding="utf-8").strip()
        except OSError as exc:
            warn("dm.token_unreadable", path=self.token_path, error=str(exc))
            return None
        if not token:
            return None
        return (("authorization", f"Bearer {token}"),)

    def _call(self, method: str, request, deadline=None):
        if not self._stubs:
            raise DMError(f"{method}: client is not connected to {self.service_url}")
        timeout = self.unary_timeout if deadline is None else deadline.bound(self.unary_timeout)
        if timeout is not None and timeout <= 0:
            raise DMError(f"{method}: deadline exceeded before the call", code=grpc.StatusCode.DEADLINE_EXCEEDED)
        return self._stubs[method](request, timeout=timeout, metadata=self._metadata())

    def report_amt_status(self, host_id: str, status: AMTStatus, feature: str, deadline=None) -> None:
        req = dm_proto.AMTStatusRequest(host_id=host_id, status=int(status), feature=feature)
        try:
            self._call("ReportAMTStatus", req, deadline)
        except grpc.RpcError as exc:
            code = _status_code(exc)
            if code == grpc.StatusCode.FAILED_PRECONDITION:
                debug("dm.report_amt_status.precondition", host_id=host_id, details=_details(exc))
                return
            raise DMError(f"failed to report AMT status for host {host_id}: {_details(exc)}", code=code) from exc
        info("dm.report_amt_status", host_id=host_id, status=status.name, feature=feature)

    def retrieve_activation_details(self, host_id: str, deadline=None) -> ActivationIntent:
        req = dm_proto.ActivationRequest(host_id=host_id)
        try:
            resp = self._call("RetrieveActivationDetails", req, deadline)
        except grpc.RpcError as exc:
            code = _status_code(exc)
            if code == grpc.StatusCode.FAILED_PRECONDITION:
                raise ActivationSkipped(
                    f"host {host_id} precondition failed - {_details(exc)}"
                ) from exc
            raise DMError(
                f"failed to retrieve activation details for host {host_id}: {_details(exc)}", code=code
            ) from exc
        intent = ActivationIntent(
            host_id=resp.host_id or host_id,
            operation=_operation(resp.operation),
            profile_name=resp.profile_name,
            action_password=resp.action_password,
        )
        debug(
            "dm.activation_details",
            host_id=intent.host_id,
            operation=intent.operation.name,
            profile=intent.profile_name,
        )
        return intent

    def report_activation_results(self, host_id: str, status: ActivationStatus, deadline=None) -> None:
        req = dm_proto.ActivationResultRequest(host_id=host_id, activation_status=int(status))
        try:
            self._call("ReportActivationResults", req, deadline)
        except grpc.RpcError as exc:
            raise DMError(
                f"failed to report activation results for host {host_id}: {_details(exc)}",
                code=_status_code(exc),
            ) from exc
        info("dm.report_activation_results", host_id=host_id, status=status.name)


def connect_to_dm_manager(
    service_url: str,
    credentials: grpc.ChannelCredentials,
    stop,
    retry_interval: float = RETRY_INTERVAL,
    token_path: Optional[str] = None,
) -> Optional[DMClient]:
    """Keep trying to connect until it works or ``stop`` is cancelled (then None)."""
    client = DMClient(service_url, credentials=credentials, token_path=token_path)
    while not stop.cancelled:
        try:
            client.connect()
        except DMError as exc:
            warn("dm.connect_retry", target=service_url, error=str(exc), retry_in=retry_interval)
            if not stop.sleep(retry_interval):
                break
            continue
        info("dm.connected", target=service_url)
        return client
    info("dm.connect_cancelled", target=service_url)
    return None
