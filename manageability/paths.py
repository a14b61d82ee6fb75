from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/platform-manageability-agent"
DEFAULT_CONFIG_PATH = "/etc/edge-node/platform-manageability/confs/platform-manageability-agent.yaml"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def pma_base_path() -> str:
    """Return the base directory for agent state and logs.

    The location can be overridden via the ``PMA_BASE_PATH`` environment
    variable, which the test suite and local runs use to stay out of
    ``/var/lib``.
    """

    override = os.environ.get("PMA_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def pma_logs_dir() -> str:
    return str(Path(pma_base_path()) / "logs")
