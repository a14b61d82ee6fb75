"""Wire schema of the Device-Manager ``DeviceManagement`` gRPC service."""

from __future__ import annotations

from .proto_schema import Schema

PACKAGE = "device_management"

_SCHEMA = Schema(
    "device_management/dm_manager.proto",
    PACKAGE,
    "DeviceManagement",
    enums={
        "AMTStatus": ["DISABLED", "ENABLED"],
        "OperationType": ["OPERATION_TYPE_UNSPECIFIED", "ACTIVATE", "DEACTIVATE"],
        "ActivationStatus": [
            "ACTIVATION_STATUS_UNSPECIFIED",
            "ACTIVATING",
            "ACTIVATED",
            "ACTIVATION_FAILED",
        ],
    },
    messages={
        "AMTStatusRequest": [("host_id", "string"), ("status", "AMTStatus"), ("feature", "string")],
        "AMTStatusResponse": [],
        "ActivationRequest": [("host_id", "string")],
        "ActivationDetailsResponse": [
            ("host_id", "string"),
            ("operation", "OperationType"),
            ("profile_name", "string"),
            ("action_password", "string"),
        ],
        "ActivationResultRequest": [("host_id", "string"), ("activation_status", "ActivationStatus")],
        "ActivationResultResponse": [],
    },
    methods=[
        ("ReportAMTStatus", "AMTStatusRequest", "AMTStatusResponse"),
        ("RetrieveActivationDetails", "ActivationRequest", "ActivationDetailsResponse"),
        ("ReportActivationResults", "ActivationResultRequest", "ActivationResultResponse"),
    ],
)

SERVICE = _SCHEMA.service

AMTStatusRequest = _SCHEMA.message("AMTStatusRequest")
AMTStatusResponse = _SCHEMA.message("AMTStatusResponse")
ActivationRequest = _SCHEMA.message("ActivationRequest")
ActivationDetailsResponse = _SCHEMA.message("ActivationDetailsResponse")
ActivationResultRequest = _SCHEMA.message("ActivationResultRequest")
ActivationResultResponse = _SCHEMA.message("ActivationResultResponse")

method_path = _SCHEMA.method_path
