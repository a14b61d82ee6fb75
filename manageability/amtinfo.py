"""Parse ``rpc amtinfo`` text output into an AMTSnapshot."""

from __future__ import annotations

import re
from typing import Optional, Union

from .model import AMT_FEATURE, ISM_FEATURE, AMTSnapshot, Features, RasStatus

AMT_PRO_MARKER = "AMT Pro Corporate"
ISM_MARKER = "Intel Standard Manageability Corporate"
DRIVER_MISSING_MARKER = "HECIDriverNotDetected"
CIRA_CONFIGURED_MARKER = 'msg="CIRA: Configured"'

_RAS_VALUES = {status.value: status for status in RasStatus}


def _text(output: Union[bytes, str, None]) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def parse_field(output: Union[bytes, str, None], key: str) -> Optional[str]:
    """Value of the first ``<key> :`` line, trimmed; None when absent."""
    pattern = re.compile(r"^" + re.escape(key) + r"\s*:(.*)$")
    for line in _text(output).splitlines():
        m = pattern.match(line)
        if m:
            return m.group(1).strip()
    return None


def classify_features(value: Optional[str]) -> Features:
    if value is None:
        return Features.UNKNOWN
    if AMT_PRO_MARKER in value:
        return Features.AMT_PRO_CORPORATE
    if ISM_MARKER in value:
        return Features.ISM_CORPORATE
    return Features.OTHER


def normalize_ras(value: Optional[str]) -> RasStatus:
    if value is None:
        return RasStatus.UNKNOWN
    return _RAS_VALUES.get(value.strip().lower(), RasStatus.UNKNOWN)


def parse_amtinfo(output: Union[bytes, str, None]) -> AMTSnapshot:
    text = _text(output)
    return AMTSnapshot(
        features=classify_features(parse_field(text, "Features")),
        ras_remote_status=normalize_ras(parse_field(text, "RAS Remote Status")),
        control_mode=parse_field(text, "Control Mode") or "",
        driver_present=DRIVER_MISSING_MARKER not in text,
        provisioned_marker=CIRA_CONFIGURED_MARKER in text,
    )


def amt_feature_label(features: Features) -> str:
    if features is Features.AMT_PRO_CORPORATE:
        return AMT_FEATURE
    if features is Features.ISM_CORPORATE:
        return ISM_FEATURE
    return ""
