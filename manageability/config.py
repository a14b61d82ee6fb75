from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .paths import DEFAULT_CONFIG_PATH

HEARTBEAT_DEFAULT = 10.0
CONNECTING_TIMEOUT_DEFAULT = 180.0
RPC_BINARY_DEFAULT = "/usr/bin/rpc"

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 1e-3, "us": 1e-6, "ns": 1e-9}


def parse_duration(value: Any) -> float:
    """Seconds from a Go-style duration (``10s``, ``1m30s``, ``500ms``) or a number."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        raise ConfigError("empty duration")
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
        pos = m.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration: {value!r}")
    return total


@dataclass
class ManageabilityConfig:
    enabled: bool = True
    service_url: str = ""
    heartbeat_interval: float = HEARTBEAT_DEFAULT
    rps_address: str = ""
    connecting_timeout: float = CONNECTING_TIMEOUT_DEFAULT


@dataclass
class RpcConfig:
    binary: str = RPC_BINARY_DEFAULT
    sudo: bool = True


@dataclass
class TLSConfig:
    ca_cert_path: Optional[str] = None
    client_cert_path: Optional[str] = None
    client_key_path: Optional[str] = None


@dataclass(repr=False)
class AgentConfig:
    version: str = ""
    log_level: str = "info"
    guid: str = ""
    manageability: ManageabilityConfig = field(default_factory=ManageabilityConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)
    access_token_path: Optional[str] = None
    status_endpoint: str = ""

    @property
    def rps_address(self) -> str:
        return self.manageability.rps_address

    @property
    def heartbeat_interval(self) -> float:
        return self.manageability.heartbeat_interval

    def __repr__(self) -> str:
        # token and key paths are not secrets, but keep the repr short
        return (
            "AgentConfig("
            f"version={self.version!r}, "
            f"log_level={self.log_level!r}, "
            f"guid={self.guid!r}, "
            f"service_url={self.manageability.service_url!r}, "
            f"rps_address={self.manageability.rps_address!r}, "
            f"heartbeat_interval={self.manageability.heartbeat_interval!r}"
            ")"
        )


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"config section {name!r} must be a mapping")
    return value


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def config_from_dict(data: Dict[str, Any]) -> AgentConfig:
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    cfg = AgentConfig()
    cfg.version = str(data.get("version") or "")
    cfg.log_level = str(data.get("logLevel") or "info").strip().lower()
    cfg.guid = str(data.get("GUID") or "").strip()

    mgr = _section(data, "manageability")
    m = cfg.manageability
    if "enabled" in mgr:
        m.enabled = bool(mgr["enabled"])
    m.service_url = str(mgr.get("serviceURL") or "").strip()
    m.rps_address = str(mgr.get("rpsAddress") or data.get("rpsAddress") or "").strip()
    if mgr.get("heartbeatInterval"):
        m.heartbeat_interval = parse_duration(mgr["heartbeatInterval"])
    if mgr.get("connectingTimeout"):
        m.connecting_timeout = parse_duration(mgr["connectingTimeout"])
    if m.heartbeat_interval <= 0:
        m.heartbeat_interval = HEARTBEAT_DEFAULT

    rpc = _section(data, "rpc")
    if rpc.get("binary"):
        cfg.rpc.binary = str(rpc["binary"])
    if "sudo" in rpc:
        cfg.rpc.sudo = bool(rpc["sudo"])

    tls = _section(data, "tls")
    cfg.tls.ca_cert_path = _optional_str(tls.get("caCertPath"))
    cfg.tls.client_cert_path = _optional_str(tls.get("clientCertPath"))
    cfg.tls.client_key_path = _optional_str(tls.get("clientKeyPath"))

    auth = _section(data, "auth")
    cfg.access_token_path = _optional_str(auth.get("accessTokenPath"))
    cfg.status_endpoint = str(data.get("statusEndpoint") or "").strip()

    if not m.service_url:
        raise ConfigError("manageability.serviceURL is required")
    if not m.rps_address:
        raise ConfigError("manageability.rpsAddress is required")
    if bool(cfg.tls.client_cert_path) != bool(cfg.tls.client_key_path):
        raise ConfigError("tls.clientCertPath and tls.clientKeyPath must be set together")
    return cfg


def load_config(path: Optional[str] = None) -> AgentConfig:
    p = Path(path or DEFAULT_CONFIG_PATH)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to read config file {p}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config file {p}: {exc}") from exc
    return config_from_dict(data or {})
