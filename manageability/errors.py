"""Exception types shared across the agent."""

from __future__ import annotations

import subprocess


class AgentError(Exception):
    """Base class for agent failures the periodic driver logs and retries."""


class ConfigError(AgentError):
    pass


class ToolError(subprocess.CalledProcessError):
    """The ``rpc`` tool exited non-zero or timed out.

    ``output`` holds the combined stdout/stderr so callers can still scan it
    for status markers.
    """

    def __init__(self, returncode: int, cmd, output: str = "", reason: str | None = None):
        super().__init__(returncode, cmd, output or "")
        self.reason = reason

    def __str__(self) -> str:
        if self.reason:
            return f"command {self.cmd!r} {self.reason}"
        return super().__str__()


class DMError(AgentError):
    """A Device-Manager RPC failed with anything but FAILED_PRECONDITION."""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


class ActivationSkipped(AgentError):
    """Device-Manager answered FAILED_PRECONDITION: nothing to do this cycle."""


class ActivationNotRequested(AgentError):
    """The Device-Manager intent for this host is not ACTIVATE."""

    def __init__(self, host_id: str, operation):
        super().__init__(f"activation not requested for host {host_id} (operation={operation.name})")
        self.host_id = host_id
        self.operation = operation


class StatusError(AgentError):
    """A call to the node status server failed."""
