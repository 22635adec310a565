"""Configuration file handling for the Powerwall exporter.

The config file is YAML with a ``web`` and a ``device`` section::

    web:
      listen-address: ":9871"
      metrics-path: "/metrics"
    device:
      gateway-address: "192.168.1.10"
      login-email: "powerwall_exporter@example.org"
      login-password: "secret"
      tls-cert-file: "powerwall.pem"
      retry-interval: "1s"
      retry-timeout: "0s"

Device credentials missing from the file are taken from the environment
(POWERWALL_GATEWAY_ADDRESS, POWERWALL_LOGIN_EMAIL, POWERWALL_LOGIN_PASSWORD),
which may itself be populated from a .env file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from powerwall_exporter import util

CONSOLE = util.CONSOLE

DEFAULT_CONFIG_FILE = "powerwall_exporter.yaml"
DEFAULT_LISTEN_ADDRESS = ":9871"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_LOGIN_EMAIL = "powerwall_exporter@example.org"
DEFAULT_RETRY_INTERVAL = "1s"
DEFAULT_RETRY_TIMEOUT = "0s"  # Retries disabled by default

_ENV_FALLBACKS = {
    "gateway-address": "POWERWALL_GATEWAY_ADDRESS",
    "login-email": "POWERWALL_LOGIN_EMAIL",
    "login-password": "POWERWALL_LOGIN_PASSWORD",
}


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is incomplete."""


@dataclass(frozen=True)
class WebConfig:
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    metrics_path: str = DEFAULT_METRICS_PATH

    def host_port(self) -> Tuple[Optional[str], int]:
        """Split the listen address into (host, port); an empty host means all interfaces."""
        host, sep, port = self.listen_address.rpartition(":")
        if not sep:
            host, port = "", self.listen_address
        try:
            port_num = int(port)
        except ValueError as err:
            raise ConfigError(f"Invalid listen address {self.listen_address!r}") from err
        host = host.strip("[]")
        return (host or None), port_num


@dataclass(frozen=True)
class DeviceConfig:
    gateway_address: str = ""
    login_email: str = DEFAULT_LOGIN_EMAIL
    login_password: str = field(default="", repr=False)
    tls_cert_file: str = ""
    retry_interval: float = 1.0
    retry_timeout: float = 0.0


@dataclass(frozen=True)
class Config:
    web: WebConfig = field(default_factory=WebConfig)
    device: DeviceConfig = field(default_factory=DeviceConfig)


def _section(data: Dict[str, Any], name: str, allowed: Tuple[str, ...]) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    unknown = sorted(set(section) - set(allowed))
    if unknown:
        raise ConfigError(f"Unknown field(s) in section '{name}': {', '.join(unknown)}")
    return dict(section)


def _string(section: Dict[str, Any], key: str, default: str) -> str:
    value = section.get(key)
    if value is None:
        return default
    return str(value)


def _duration(section: Dict[str, Any], key: str, default: str) -> float:
    value = section.get(key, default)
    try:
        seconds = util.parse_duration(value)
    except ValueError as err:
        raise ConfigError(f"Invalid value for device.{key}: {err}") from err
    if seconds < 0:
        raise ConfigError(f"Invalid value for device.{key}: must not be negative")
    return seconds


def parse_config(data: Any) -> Config:
    """Build a validated Config from already parsed YAML data."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping at the top level")
    unknown = sorted(set(data) - {"web", "device"})
    if unknown:
        raise ConfigError(f"Unknown section(s) in config file: {', '.join(unknown)}")

    web = _section(data, "web", ("listen-address", "metrics-path"))
    device = _section(
        data,
        "device",
        (
            "gateway-address",
            "login-email",
            "login-password",
            "tls-cert-file",
            "retry-interval",
            "retry-timeout",
        ),
    )

    for key, env_name in _ENV_FALLBACKS.items():
        if not device.get(key) and os.getenv(env_name):
            device[key] = os.getenv(env_name)

    config = Config(
        web=WebConfig(
            listen_address=_string(web, "listen-address", DEFAULT_LISTEN_ADDRESS),
            metrics_path=_string(web, "metrics-path", DEFAULT_METRICS_PATH),
        ),
        device=DeviceConfig(
            gateway_address=_string(device, "gateway-address", ""),
            login_email=_string(device, "login-email", DEFAULT_LOGIN_EMAIL),
            login_password=_string(device, "login-password", ""),
            tls_cert_file=_string(device, "tls-cert-file", ""),
            retry_interval=_duration(device, "retry-interval", DEFAULT_RETRY_INTERVAL),
            retry_timeout=_duration(device, "retry-timeout", DEFAULT_RETRY_TIMEOUT),
        ),
    )

    # Check required fields
    if not config.device.gateway_address:
        raise ConfigError("Required parameter device.gateway-address not specified in config file")
    if not config.device.login_password:
        raise ConfigError("Required parameter device.login-password not specified in config file")
    if not config.web.metrics_path.startswith("/"):
        raise ConfigError("web.metrics-path must start with '/'")
    config.web.host_port()
    return config


def load_config(filename: str | os.PathLike) -> Config:
    """Read and validate the YAML config file."""
    path = Path(filename)
    CONSOLE.info("Loading config", extra={"fields": {"file": str(path.resolve())}})
    load_dotenv()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as err:
        raise ConfigError(f"Unable to read config file: {err}") from err
    except yaml.YAMLError as err:
        raise ConfigError(f"Unable to parse config file: {err}") from err
    return parse_config(data)
