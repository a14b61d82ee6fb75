"""Host bring-up once AMT is known to be enabled: MEI driver and the LMS service."""

from __future__ import annotations

import subprocess

from .executil import error, info, run

MEI_MODULE = "mei_me"
LMS_SERVICE = "lms.service"
SERVICE_ACTIONS = ("unmask", "enable", "start")


def _module_loaded(name: str) -> bool:
    try:
        res = run(["lsmod"], check=False, timeout=15)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return any(line.split()[:1] == [name] for line in res.out.splitlines())


def load_module(name: str = MEI_MODULE) -> bool:
    if _module_loaded(name):
        info("host.module_present", module=name)
        return True
    try:
        run(["sudo", "modprobe", name], check=True, timeout=30)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        error("host.module_load_failed", module=name, error=str(exc))
        return False
    info("host.module_loaded", module=name)
    return True


def _service_active(service: str) -> bool:
    try:
        res = run(["systemctl", "is-active", service], check=False, timeout=15)
    except (OSError, subprocess.TimeoutExpired):
        return False
    return res.rc == 0 and res.out.strip() == "active"


def enable_service(action: str, service: str = LMS_SERVICE) -> bool:
    if action not in SERVICE_ACTIONS:
        raise ValueError(f"unsupported service action: {action!r}")
    if _service_active(service):
        info("host.service_active", service=service, skipped=action)
        return True
    try:
        run(["sudo", "systemctl", action, service], check=True, timeout=60)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        error("host.service_failed", service=service, action=action, error=str(exc))
        return False
    info("host.service_ok", service=service, action=action)
    return True


def ensure_lms() -> bool:
    """Load the MEI driver and bring up LMS. Failures are logged, not raised."""
    ok = load_module()
    for action in SERVICE_ACTIONS:
        ok = enable_service(action) and ok
    return ok
