"""User configuration management.

Handles persistent configuration stored in ~/.kubestrap/config.yaml (or a
file given with ``--config``). Supports environment variable overrides and
CLI flag precedence.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .shared.paths import DEFAULT_ROOT, KUBESTRAP_DIR
from .supervisor import (
    DEFAULT_BACKOFF_INITIAL,
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_GRACE_PERIOD,
    DEFAULT_READINESS_POLL,
    DEFAULT_START_ATTEMPTS,
    SupervisorSettings,
)

# Default values
DEFAULT_CIDR = "10.10.0.0/16"
DEFAULT_SERVICE_CIDR = "10.96.0.0/16"
DEFAULT_NODES = 1
DEFAULT_LOG_LEVEL = "info"
DEFAULT_PROBE_INTERVAL = 5.0
DEFAULT_CRYPTO_TIMEOUT = 60.0
DEFAULT_MAX_WORKERS = 4

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

# Environment variable mappings
ENV_VARS = {
    "root": "KUBESTRAP_ROOT",
    "cidr": "KUBESTRAP_CIDR",
    "service_cidr": "KUBESTRAP_SERVICE_CIDR",
    "nodes": "KUBESTRAP_NODES",
    "log_level": "KUBESTRAP_LOG_LEVEL",
}


@dataclass
class KubestrapConfig:
    """Run configuration.

    Retry, probe and timeout values are tunable defaults, not tuned ones.
    """

    root: Path = DEFAULT_ROOT
    cidr: str = DEFAULT_CIDR
    service_cidr: str = DEFAULT_SERVICE_CIDR
    nodes: int = DEFAULT_NODES
    pods_per_node: int = 110
    log_level: str = DEFAULT_LOG_LEVEL
    json_logs: bool = False
    log_file: Path | None = None

    start_attempts: int = DEFAULT_START_ATTEMPTS
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    probe_interval: float = DEFAULT_PROBE_INTERVAL
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    grace_period: float = DEFAULT_GRACE_PERIOD
    readiness_poll: float = DEFAULT_READINESS_POLL
    crypto_timeout: float = DEFAULT_CRYPTO_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    manage_network: bool = True

    binaries: dict[str, str] = field(default_factory=dict)
    ports: dict[str, int] = field(default_factory=dict)
    ready_timeouts: dict[str, float] = field(default_factory=dict)
    cni_plugin_dir: str = "/opt/cni/bin"

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict, repr=False)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def supervisor_settings(self) -> SupervisorSettings:
        return SupervisorSettings(
            start_attempts=self.start_attempts,
            backoff_initial=self.backoff_initial,
            backoff_multiplier=self.backoff_multiplier,
            failure_threshold=self.failure_threshold,
            grace_period=self.grace_period,
            readiness_poll=self.readiness_poll,
        )

    def validate(self) -> None:
        """Reject values no run can work with.

        Network and port checks happen in plan_cluster, which knows the host.

        Raises:
            ConfigError: Naming the invalid field.
        """
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(
                f"Unknown log level '{self.log_level}', expected one of {', '.join(LOG_LEVELS)}",
                field="log_level",
            )
        for name in ("start_attempts", "failure_threshold", "max_workers"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1", field=name)
        for name in (
            "backoff_initial",
            "probe_interval",
            "grace_period",
            "readiness_poll",
            "crypto_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive", field=name)
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be at least 1", field="backoff_multiplier")


def get_config_path() -> Path:
    """Get the default config file path.

    Returns:
        Path to ~/.kubestrap/config.yaml
    """
    return KUBESTRAP_DIR / "config.yaml"


_FIELD_TYPES = {f.name: f.type for f in fields(KubestrapConfig) if not f.name.startswith("_")}

# Value types of the mapping settings
_MAPPING_VALUES = {"binaries": str, "ports": int, "ready_timeouts": float}


def _coerce(key: str, value: Any) -> Any:
    """Convert a file or environment value to the field's type."""
    default = getattr(KubestrapConfig(), key)
    try:
        if key in ("root", "log_file"):
            return Path(str(value)).expanduser()
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, dict):
            if not isinstance(value, dict):
                raise TypeError(f"expected a mapping, got {type(value).__name__}")
            convert = _MAPPING_VALUES[key]
            return {str(k): convert(v) for k, v in value.items()}
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value {value!r}", field=key, cause=str(e)) from e


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> KubestrapConfig:
    """Load run configuration.

    Precedence (highest to lowest):
    1. CLI flags (``overrides``, None values are ignored)
    2. Environment variables
    3. Config file (``config_path`` or ~/.kubestrap/config.yaml)
    4. Defaults

    Args:
        config_path: Explicit config file. Must exist when given.
        overrides: Values from command-line flags.

    Returns:
        KubestrapConfig with values and sources

    Raises:
        ConfigError: If the file is unreadable or a value has the wrong type.
    """
    config = KubestrapConfig()
    sources: dict[str, str] = {key: "default" for key in _FIELD_TYPES}

    # Load from config file
    path = Path(config_path).expanduser() if config_path else get_config_path()
    if config_path and not path.exists():
        raise ConfigError(f"Config file {path} not found", field="config")
    if path.exists():
        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Unable to read config file {path}", field="config", cause=str(e)) from e
        if not isinstance(file_config, dict):
            raise ConfigError(f"Config file {path} must contain a mapping", field="config")

        for key, value in file_config.items():
            key = str(key).replace("-", "_")
            if key not in _FIELD_TYPES:
                raise ConfigError(f"Unknown setting '{key}' in {path}", field=key)
            setattr(config, key, _coerce(key, value))
            sources[key] = "config file"

    # Override with environment variables
    for key, env_var in ENV_VARS.items():
        value = os.environ.get(env_var)
        if value:
            setattr(config, key, _coerce(key, value))
            sources[key] = "environment"

    # Override with CLI flags
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        setattr(config, key, _coerce(key, value))
        sources[key] = "flag"

    config.log_level = config.log_level.lower()
    config._sources = sources
    config.validate()
    return config
