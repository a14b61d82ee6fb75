"""Runs the ``rpc`` AMT provisioning tool (amtinfo / activate / deactivate)."""

from __future__ import annotations

import os
import subprocess
from typing import Optional

from .config import RPC_BINARY_DEFAULT
from .errors import ToolError
from .executil import run, trace

AMTINFO_TIMEOUT = 60.0
ACTIVATE_TIMEOUT = 300.0
DEACTIVATE_TIMEOUT = 180.0


def rps_activate_url(rps_address: str) -> str:
    return f"wss://{rps_address}/activate"


class RpcTool:
    """Thin, stateless wrapper around the ``rpc`` binary.

    Each call returns the combined stdout/stderr text, or raises ``ToolError``
    with that same text attached. There are no retries here; the controller
    decides what a failure means.
    """

    def __init__(self, binary: str = RPC_BINARY_DEFAULT, sudo: bool = True):
        self.binary = binary
        self.sudo = sudo

    def _argv(self, *args: str, keep_env: bool = False) -> list[str]:
        cmd = [self.binary, *args]
        if self.sudo:
            cmd = ["sudo", "-E", *cmd] if keep_env else ["sudo", *cmd]
        return cmd

    def _invoke(self, cmd: list[str], timeout: float, deadline=None, extra_env: Optional[dict] = None) -> str:
        if deadline is not None:
            timeout = deadline.bound(timeout)
            if timeout is not None and timeout <= 0:
                raise ToolError(-1, cmd, "", reason="skipped: deadline exceeded")
        env = None
        if extra_env:
            env = os.environ.copy()
            env.update(extra_env)
        try:
            return run(cmd, check=True, timeout=timeout, env=env).out
        except subprocess.CalledProcessError as exc:
            raise ToolError(exc.returncode, cmd, exc.output) from exc
        except subprocess.TimeoutExpired as exc:
            raise ToolError(-1, cmd, exc.output or "", reason=f"timed out after {timeout}s") from exc
        except OSError as exc:
            raise ToolError(-1, cmd, "", reason=f"could not be started: {exc}") from exc

    def amtinfo(self, deadline=None) -> str:
        return self._invoke(self._argv("amtinfo"), AMTINFO_TIMEOUT, deadline)

    def activate(self, rps_url: str, profile: str, password: str, deadline=None) -> str:
        trace("rpc.activate", url=rps_url, profile=profile)
        cmd = self._argv("activate", "-u", rps_url, "-n", keep_env=True)
        return self._invoke(
            cmd,
            ACTIVATE_TIMEOUT,
            deadline,
            extra_env={"AMT_PASSWORD": password, "PROFILE": profile},
        )

    def deactivate(self, rps_url: str, password: str, deadline=None) -> str:
        trace("rpc.deactivate", url=rps_url)
        cmd = self._argv("deactivate", "-u", rps_url, "-n", keep_env=True)
        return self._invoke(cmd, DEACTIVATE_TIMEOUT, deadline, extra_env={"AMT_PASSWORD": password})
