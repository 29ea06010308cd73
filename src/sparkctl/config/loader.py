"""
Configuration loading and validation for sparkctl.
"""
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ..utils.exceptions import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".sparkctl" / "config.yaml"
CONFIG_ENV_VAR = "SPARKCTL_CONFIG"


class PathsConfig(BaseModel):
    """Filesystem locations used on the coordinator."""
    data_root: Path = Path("/root/spark/data")
    state_dir: Path = Path("/root")
    slaves_file: Path = Path("/root/slaves")
    exports_file: Path = Path("/etc/exports")
    app_jar: Path = Path("/root/spark/lda-prototype.jar")


class ClusterMemoryProfile(BaseModel):
    """Reserves used when writing permanent cluster memory settings."""
    os_reserve_mb: int = Field(default=8192, ge=0)
    daemon_reserve_mb: int = Field(default=1024, ge=0)


class LocalRunProfile(BaseModel):
    """Ratios used to size the driver for a single-node run."""
    driver_fraction: float = 0.7
    result_fraction: float = 0.5

    @field_validator("driver_fraction", "result_fraction")
    @classmethod
    def validate_fraction(cls, v):
        """Fractions must be in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError("fraction must be greater than 0 and at most 1")
        return v


class MemoryConfig(BaseModel):
    """Memory budget profiles. The two call sites are tuned separately."""
    cluster: ClusterMemoryProfile = Field(default_factory=ClusterMemoryProfile)
    local_run: LocalRunProfile = Field(default_factory=LocalRunProfile)


class TelemetryConfig(BaseModel):
    """Background collector settings."""
    disk_interval_seconds: float = Field(default=5, gt=0)
    disk_volume: Path = Path("/")
    stats_interval_seconds: float = Field(default=1, gt=0)


class RunConfig(BaseModel):
    """Job run settings."""
    cooldown_seconds: float = Field(default=15, ge=0)


class ClusterConfig(BaseModel):
    """Coordinator daemon settings."""
    interface: str = "eth0:1"
    master_port: int = Field(default=7077, gt=0, lt=65536)
    settle_seconds: float = Field(default=10, ge=0)


class NFSConfig(BaseModel):
    """Shared data directory export settings."""
    shared_path: str = "/root/spark/data"
    prefix_length: int = Field(default=17, ge=0, le=128)
    options: str = "rw,sync,no_subtree_check,no_root_squash"

    @field_validator("shared_path")
    @classmethod
    def validate_shared_path(cls, v):
        """Export paths must be absolute and contain no whitespace."""
        if not v.startswith("/") or any(c.isspace() for c in v):
            raise ValueError("shared_path must be an absolute path without whitespace")
        return v


class RemoteConfig(BaseModel):
    """SSH settings for driving workers."""
    user: str = "root"
    identity_file: Path = Path("/root/.ssh/id_rsa")
    timeout_seconds: float = Field(default=30, gt=0)
    connect_timeout_seconds: int = Field(default=10, gt=0)
    command: str = "sparkctl"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True


class Config(BaseModel):
    """Main configuration object."""
    paths: PathsConfig = Field(default_factory=PathsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    nfs: NFSConfig = Field(default_factory=NFSConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load and parse a YAML file.

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML content as dictionary

    Raises:
        ConfigError: If file doesn't exist or is invalid
    """
    if not file_path.exists():
        raise ConfigError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, "r") as f:
            data = yaml.safe_load(f)
            if data is None:
                return {}
            return data
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {file_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Error reading {file_path}: {e}")


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Explicit path, then $SPARKCTL_CONFIG, then ~/.sparkctl/config.yaml."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load sparkctl configuration from YAML file.

    An explicitly requested file must exist. When falling back to the
    default location, a missing file yields the built-in defaults.

    Args:
        config_path: Path to config file

    Returns:
        Validated Config object

    Raises:
        ConfigError: If configuration is invalid
    """
    explicit = config_path is not None or bool(os.environ.get(CONFIG_ENV_VAR))
    path = resolve_config_path(config_path)

    if not explicit and not path.exists():
        return Config()

    data = load_yaml_file(path)

    try:
        return Config(**data)
    except Exception as e:
        raise ConfigError(f"Invalid configuration: {e}")


def save_config(config: Config, config_path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Config object to save
        config_path: Path to save configuration

    Raises:
        ConfigError: If unable to save configuration
    """
    try:
        config_dict = config.model_dump(mode="json", exclude_none=True)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error saving configuration: {e}")
