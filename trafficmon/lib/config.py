import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from trafficmon.lib import constants
from trafficmon.lib.log import LOG_LEVELS


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class TrafficMonitorConfig:
    """
    Runtime configuration, built once at startup and handed to every component.
    """

    # MQTT broker
    broker: str = constants.MQTT_BROKER
    broker_port: int = constants.MQTT_PORT
    mqtt_user: str | None = None
    mqtt_password: str | None = None
    mqtt_client_id: str | None = None
    mqtt_keepalive: int = constants.MQTT_KEEPALIVE_SECONDS
    mqtt_publish_timeout: float = constants.MQTT_PUBLISH_TIMEOUT_SECONDS
    base_topic: str = constants.MQTT_BASE_TOPIC
    discovery_prefix: str = constants.MQTT_DISCOVERY_PREFIX
    dry_run: bool = False

    # nftables
    table_family: str = constants.NFT_TABLE_FAMILY
    table_name: str = constants.NFT_TABLE_NAME
    chain_name: str = constants.NFT_CHAIN_NAME
    tag: str = constants.NFT_RULE_TAG

    leases_file: str = constants.DHCP_LEASE_FILE_PATH

    bw_interval: float = constants.BW_INTERVAL_SECONDS

    # Baseline persistence
    state_backend: str = constants.STATE_BACKEND
    state_dir: str = constants.STATE_DIR_PATH
    redis_url: str = constants.REDIS_URL
    redis_prefix: str = constants.REDIS_KEY_PREFIX

    # Daemon mode
    sync_interval: float = constants.SYNC_INTERVAL_SECONDS
    publish_interval: float = constants.PUBLISH_INTERVAL_SECONDS
    watch_leases: bool = True

    log_level: str = constants.LOG_LEVEL
    log_format: str = constants.LOG_FORMAT

    def validate(self) -> "TrafficMonitorConfig":
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got '{self.log_level}'")
        if self.log_format not in ("json", "console"):
            raise ConfigError(f"log_format must be 'json' or 'console', got '{self.log_format}'")
        if self.state_backend not in ("file", "redis"):
            raise ConfigError(f"state_backend must be 'file' or 'redis', got '{self.state_backend}'")
        for name in ("bw_interval", "sync_interval", "publish_interval", "mqtt_publish_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")
        if not 0 < self.broker_port < 65536:
            raise ConfigError(f"broker_port out of range: {self.broker_port}")
        if not self.tag or ":" in self.tag:
            raise ConfigError(f"tag must be non-empty and must not contain ':', got '{self.tag}'")
        return self


_FIELD_TYPES = {f.name: f.type for f in fields(TrafficMonitorConfig)}

# Names kept from the original router scripts
_LEGACY_ENV = {
    "log_level": "LOG_LEVEL",
}


def _coerce(name: str, raw: Any) -> Any:
    if raw is None:
        return None

    kind = _FIELD_TYPES[name]
    try:
        if kind is bool:
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off"):
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if kind is int:
            return int(raw)
        if kind is float:
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {e}") from e

    return str(raw)


def _load_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at top level")

    out: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in _FIELD_TYPES:
            raise ConfigError(f"Unknown config key: {key}")
        out[name] = value
    return out


def _from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in _FIELD_TYPES:
        env_name = f"TMON_{name.upper()}"
        if env_name in environ:
            out[name] = environ[env_name]
        elif name in _LEGACY_ENV and _LEGACY_ENV[name] in environ:
            out[name] = environ[_LEGACY_ENV[name]]
    return out


def load_config(
    config_path: str | Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> TrafficMonitorConfig:
    """
    Build the configuration from defaults, an optional YAML file, TMON_* environment
    variables and explicit overrides (command-line flags), in that order of precedence.
    """
    if environ is None:
        environ = os.environ

    layered: dict[str, Any] = {}
    if config_path:
        layered.update(_load_yaml(str(config_path)))
    layered.update(_from_env(environ))
    for name, value in (overrides or {}).items():
        if value is not None:
            layered[name] = value

    cfg = replace(TrafficMonitorConfig(), **{name: _coerce(name, value) for name, value in layered.items()})
    return cfg.validate()
