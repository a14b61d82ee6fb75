from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Operation(enum.IntEnum):
    UNSPECIFIED = 0
    ACTIVATE = 1
    DEACTIVATE = 2


class ActivationStatus(enum.IntEnum):
    UNSPECIFIED = 0
    ACTIVATING = 1
    ACTIVATED = 2
    ACTIVATION_FAILED = 3


class AMTStatus(enum.IntEnum):
    DISABLED = 0
    ENABLED = 1


class Features(enum.Enum):
    AMT_PRO_CORPORATE = "AMT_PRO_CORPORATE"
    ISM_CORPORATE = "ISM_CORPORATE"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"


class RasStatus(str, enum.Enum):
    NOT_CONNECTED = "not connected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNKNOWN = "unknown"


AMT_FEATURE = "AMT"
ISM_FEATURE = "ISM"


@dataclass(frozen=True)
class ActivationIntent:
    host_id: str
    operation: Operation
    profile_name: str = ""
    action_password: str = field(default="", repr=False)


@dataclass(frozen=True)
class AMTSnapshot:
    features: Features = Features.UNKNOWN
    ras_remote_status: RasStatus = RasStatus.UNKNOWN
    control_mode: str = ""
    driver_present: bool = True
    provisioned_marker: bool = False
