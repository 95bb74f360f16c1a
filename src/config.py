# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Configuration of the certificate controller processes.

Settings are resolved in order: built-in defaults, an optional YAML file, environment
variables, then explicit overrides (typically command line flags).
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from utils import is_valid_timespec, parse_duration

logger = logging.getLogger(__name__)

ALLOWED_LOG_LEVELS = ["debug", "info", "warn", "error", "fatal"]

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}

ENV_VARS = {
    "VAULT_ADDR": "vault_addr",
    "VAULT_CONTROLLER_ADDR": "vault_controller_addr",
    "POD_NAME": "name",
    "POD_NAMESPACE": "namespace",
    "SERVICE_NAME": "service_name",
    "CLUSTER_DOMAIN": "cluster_domain",
    "CERT_CONTROLLER_LOG_LEVEL": "log_level",
}


class ConfigError(Exception):
    """Configuration specific errors."""

    pass


@dataclass(frozen=True)
class ControllerConfig:
    """Scalar settings shared by every controller component."""

    vault_addr: str = "http://vault:8200"
    vault_controller_addr: str = "http://vault-controller"
    name: str = ""
    namespace: str = "default"
    service_name: str = ""
    cluster_domain: str = "cluster.local"
    pki_ttl: str = "24h"
    role_max_ttl: str = "72h"
    rotation_threshold: str = "60s"
    rotation_interval: str = "5m"
    retry_timeout: int = 1
    callback_timeout: str = "30s"
    retry_delay: str = "5s"
    broker_host: str = "0.0.0.0"
    broker_port: int = 80
    watch_namespace: str = ""
    secrets_dir: str = "/var/run/secrets/vaultproject.io"
    event_queue_size: int = 1
    api_timeout: float = 10.0
    log_level: str = "info"

    @property
    def rotation_threshold_seconds(self) -> float:
        """Remaining validity below which a certificate gets rotated.

        A bare number is read as minutes.
        """
        return parse_duration(self.rotation_threshold, bare_unit="m")

    @property
    def rotation_interval_seconds(self) -> float:
        """Pause between two rotation sweeps."""
        return parse_duration(self.rotation_interval)

    @property
    def callback_timeout_seconds(self) -> float:
        """How long to wait for the wrapped token to be delivered."""
        return parse_duration(self.callback_timeout)

    @property
    def retry_delay_seconds(self) -> float:
        """Pause between two failed token or certificate requests."""
        return parse_duration(self.retry_delay)

    @property
    def retry_budget(self) -> int:
        """Number of retries allowed within `retry_timeout` minutes."""
        delay = self.retry_delay_seconds or 1
        return max(1, int(self.retry_timeout * 60 / delay))

    @property
    def token_file(self) -> Path:
        """Marker file holding the unwrapped token once it has been obtained."""
        return Path(self.secrets_dir) / "secret.json"

    @property
    def python_log_level(self) -> int:
        """The configured log level, as understood by the `logging` module.

        Invalid values are not fatal: they are reported and DEBUG is used instead.
        """
        log_level = self.log_level.lower()

        if log_level not in ALLOWED_LOG_LEVELS:
            logger.warning(
                "Invalid loglevel: %s given, %s allowed. defaulting to DEBUG loglevel.",
                log_level,
                "/".join(ALLOWED_LOG_LEVELS),
            )
            log_level = "debug"
        return _LOG_LEVELS[log_level]

    def validate(self) -> "ControllerConfig":
        """Check that every duration and number is usable.

        Returns:
            The config itself, to allow chaining.

        Raises:
            ConfigError: naming the first invalid setting.
        """
        for key in ("pki_ttl", "role_max_ttl"):
            if not is_valid_timespec(getattr(self, key)):
                raise ConfigError(f"Invalid time spec for {key}: {getattr(self, key)!r}")

        for key in ("rotation_threshold", "rotation_interval", "callback_timeout", "retry_delay"):
            try:
                parse_duration(getattr(self, key))
            except ValueError as e:
                raise ConfigError(f"Invalid duration for {key}: {e}") from e

        if self.retry_timeout < 0:
            raise ConfigError("retry_timeout must not be negative")
        if self.event_queue_size < 0:
            raise ConfigError("event_queue_size must not be negative")
        if not 0 <= self.broker_port <= 65535:
            raise ConfigError(f"Invalid broker port: {self.broker_port}")
        return self


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw value to the type declared by the `ControllerConfig` field `key`."""
    field_type = {f.name: f.type for f in fields(ControllerConfig)}[key]
    try:
        if field_type in (int, "int"):
            return int(value)
        if field_type in (float, "float"):
            return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e
    return str(value)


def _from_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must hold a mapping")

    known = {f.name for f in fields(ControllerConfig)}
    settings = {}
    for key, value in raw.items():
        attr = str(key).replace("-", "_")
        if attr not in known:
            logger.warning("Ignoring unknown config option %s", key)
            continue
        settings[attr] = value
    return settings


def load_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ControllerConfig:
    """Resolve the controller configuration.

    Args:
        path: Optional; YAML file with dash separated keys, e.g. `vault-addr`.
        env: Optional; environment to read, defaults to `os.environ`.
        overrides: Optional; settings that win over everything else. `None` values
            are ignored so unset command line flags fall through.

    Returns:
        A validated `ControllerConfig`.

    Raises:
        ConfigError: if the file cannot be read or a value is invalid.
    """
    env = os.environ if env is None else env
    settings: Dict[str, Any] = {}

    if path:
        settings.update(_from_yaml(Path(path)))

    for var, attr in ENV_VARS.items():
        if env.get(var):
            settings[attr] = env[var]

    for attr, value in (overrides or {}).items():
        if value is not None:
            settings[attr] = value

    config = replace(
        ControllerConfig(), **{key: _coerce(key, value) for key, value in settings.items()}
    )
    return config.validate()
