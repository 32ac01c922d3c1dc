"""
Connection settings for the obs-websocket client.

Values come from, lowest priority first:
- ConnectionConfig defaults
- an optional YAML file with a top-level ``obs:`` mapping
- environment variables OBSWS_URL, OBSWS_HOST, OBSWS_PORT, OBSWS_PASSWORD

Example YAML::

    obs:
      host: 192.168.1.20
      port: 4455
      password: hunter2
      event_subscriptions: 33
      request_timeout: 15
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import yaml

from shared.log import get_logger
from shared.opcodes import DEFAULT_EVENT_SUBSCRIPTIONS, RPC_VERSION
from shared.utils import is_valid_port

logger = get_logger(__name__)

DEFAULT_PORT = 4455


class ConfigError(ValueError):
    """Raised when a setting is missing its expected type or range."""
    pass


@dataclass(frozen=True)
class ConnectionConfig:
    host: str = "localhost"
    port: int = DEFAULT_PORT
    password: str = ""
    rpc_version: int = RPC_VERSION
    event_subscriptions: int = DEFAULT_EVENT_SUBSCRIPTIONS
    request_timeout: Optional[float] = 30.0
    handshake_timeout: Optional[float] = 10.0
    use_tls: bool = False

    @property
    def url(self) -> str:
        scheme = "wss" if self.use_tls else "ws"
        return f"{scheme}://{self.host}:{self.port}"

    def __repr__(self) -> str:
        # keep the password out of logs and tracebacks
        return (f"ConnectionConfig(url={self.url!r}, rpc_version={self.rpc_version}, "
                f"event_subscriptions={self.event_subscriptions}, request_timeout={self.request_timeout})")

    def validate(self) -> "ConnectionConfig":
        if not isinstance(self.host, str) or not self.host:
            raise ConfigError("host must be a non-empty string")
        if not is_valid_port(self.port):
            raise ConfigError(f"port must be in 1..65535, got {self.port!r}")
        if not isinstance(self.password, str):
            raise ConfigError("password must be a string")
        if not isinstance(self.event_subscriptions, int) or self.event_subscriptions < 0:
            raise ConfigError("event_subscriptions must be a non-negative integer")
        for name in ("request_timeout", "handshake_timeout"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                raise ConfigError(f"{name} must be a positive number or null")
        return self


def _from_mapping(base: ConnectionConfig, data: Mapping[str, Any]) -> ConnectionConfig:
    known = {f.name for f in fields(ConnectionConfig)}
    unknown = set(data) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
    return replace(base, **{k: v for k, v in data.items() if k in known})


def _apply_url(base: ConnectionConfig, url: str) -> ConnectionConfig:
    parsed = urlparse(url)
    if parsed.scheme not in ("ws", "wss") or not parsed.hostname:
        raise ConfigError(f"OBSWS_URL must look like ws://host:port, got {url!r}")
    try:
        port = parsed.port or DEFAULT_PORT
    except ValueError as e:
        raise ConfigError(f"Invalid port in {url!r}: {e}")
    return replace(base, host=parsed.hostname, port=port, use_tls=parsed.scheme == "wss")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Read the ``obs:`` section of a YAML file. Missing file -> empty dict."""
    if not path.exists():
        logger.info(f"No config file at {path}; using defaults")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    section = data.get("obs", {})
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: 'obs' must be a mapping")
    return section


def load_config(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ConnectionConfig:
    """
    Build a validated ConnectionConfig.

    Args:
        path: optional YAML file
        env: environment mapping (defaults to os.environ)
        **overrides: explicit values (e.g. from CLI flags); None values are skipped
    """
    env = os.environ if env is None else env
    config = ConnectionConfig()

    if path is not None:
        config = _from_mapping(config, load_yaml(Path(path).expanduser()))

    if env.get("OBSWS_URL"):
        config = _apply_url(config, env["OBSWS_URL"])
    if env.get("OBSWS_HOST"):
        config = replace(config, host=env["OBSWS_HOST"])
    if env.get("OBSWS_PORT"):
        try:
            config = replace(config, port=int(env["OBSWS_PORT"]))
        except ValueError:
            raise ConfigError(f"OBSWS_PORT must be an integer, got {env['OBSWS_PORT']!r}")
    if "OBSWS_PASSWORD" in env:
        config = replace(config, password=env["OBSWS_PASSWORD"])

    config = _from_mapping(config, {k: v for k, v in overrides.items() if v is not None})
    return config.validate()
