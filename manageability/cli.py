from __future__ import annotations

import argparse
import signal
import sys
from typing import Optional

from . import __version__, executil
from .config import load_config
from .controller import ActivationController
from .deadline import Deadline
from .dmclient import build_credentials, connect_to_dm_manager
from .driver import PeriodicDriver
from .errors import AgentError, ConfigError
from .executil import info, warn
from .host_services import ensure_lms
from .paths import DEFAULT_CONFIG_PATH
from .rpc_tool import RpcTool
from .status import StatusClient, StatusReporter

AGENT_NAME = "platform-manageability-agent"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=AGENT_NAME, add_help=True)
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--host-id", dest="host_id", default=None)
    parser.add_argument("command", nargs="?", choices=["run", "version"], default="run")
    return parser


def _install_signal_handlers(stop: Deadline) -> None:
    def _handler(signum, _frame):
        info("agent.signal", signal=signal.Signals(signum).name)
        stop.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "version":
        print(f"{AGENT_NAME} {__version__}")
        return 0

    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(f"{AGENT_NAME}: {exc}", file=sys.stderr)
        return 1

    executil.ECHO_STDERR = True
    if not executil.set_level(cfg.log_level):
        executil.set_level("info")
        warn("agent.log_level_unknown", requested=cfg.log_level, using="info")
    info("agent.start", version=__version__, config=args.config)

    host_id = args.host_id or cfg.guid
    if not host_id:
        print(f"{AGENT_NAME}: no host id (pass --host-id or set GUID)", file=sys.stderr)
        return 1
    if not cfg.manageability.enabled:
        info("agent.manageability_disabled", host_id=host_id)
        return 0

    stop = Deadline()
    _install_signal_handlers(stop)

    try:
        credentials = build_credentials(cfg.tls)
    except AgentError as exc:
        print(f"{AGENT_NAME}: {exc}", file=sys.stderr)
        return 1
    dm = connect_to_dm_manager(
        cfg.manageability.service_url,
        credentials,
        stop,
        token_path=cfg.access_token_path,
    )
    if dm is None:
        info("agent.stopped_before_connect", host_id=host_id)
        return 0

    status_client = None
    try:
        controller = ActivationController(
            RpcTool(cfg.rpc.binary, sudo=cfg.rpc.sudo),
            dm,
            connecting_timeout=cfg.manageability.connecting_timeout,
            on_amt_enabled=ensure_lms,
        )
        driver = PeriodicDriver(controller, host_id, cfg, stop=stop)
        if cfg.status_endpoint:
            status_client = StatusClient(cfg.status_endpoint)
            StatusReporter(status_client, driver, AGENT_NAME, stop).start()
        else:
            warn("agent.status_disabled", reason="no statusEndpoint configured")
        driver.run()
    finally:
        dm.close()
        if status_client is not None:
            status_client.close()
    info("agent.exit", host_id=host_id)
    return 0
