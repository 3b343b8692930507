"""K3S handshake configuration management.

Configuration is loaded from multiple sources with the following precedence:
1. Explicitly passed parameters (CLI options)
2. Environment variables (``JOINCTL_<SECTION>__<FIELD>``, e.g. ``JOINCTL_READINESS__TIMEOUT``)
3. Configuration files
4. Default values
"""
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from .readiness import DEFAULT_TIMEOUT, MAX_TIMEOUT, MIN_TIMEOUT

logger = logging.getLogger("k3s.config")

ENV_PREFIX = "JOINCTL_"
ENV_NESTED_DELIMITER = "__"

# Default configuration paths
DEFAULT_CONFIG_PATHS = [
    Path("/etc/joinctl/config.yaml"),
    Path("~/.config/joinctl/config.yaml").expanduser(),
    Path("joinctl-config.yaml").absolute(),
]


class SSHConfig(BaseModel):
    """SSH connection configuration."""
    user: str = Field(default="ubuntu", description="Default SSH username")
    key_path: str = Field(default="~/.ssh/id_rsa", description="Path to SSH private key")
    port: int = Field(default=22, description="SSH port number")
    connect_timeout: int = Field(default=10, description="SSH connection timeout in seconds")
    command_timeout: int = Field(default=300, description="SSH command execution timeout in seconds")
    strict_host_key: bool = Field(default=False, description="Reject unknown host keys")
    use_sudo: bool = Field(default=True, description="Run privileged commands through sudo")

    @field_validator('key_path')
    @classmethod
    def expand_key_path(cls, v: str) -> str:
        """Expand the user home directory in the key path."""
        return os.path.expanduser(v)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")

    @field_validator('level')
    @classmethod
    def check_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"invalid log level {v}")
        return level


class ReadinessConfig(BaseModel):
    """Server readiness gate timings."""
    timeout: int = Field(default=DEFAULT_TIMEOUT, description="Overall readiness budget in seconds")
    service_interval: int = Field(default=10, description="Seconds between service checks")
    node_interval: int = Field(default=15, description="Seconds between node Ready checks")
    node_max_attempts: int = Field(default=20, description="Maximum node Ready checks")
    token_interval: int = Field(default=10, description="Seconds between token checks")
    api_interval: int = Field(default=10, description="Seconds between API checks")
    api_max_attempts: int = Field(default=20, description="Maximum API checks")
    check_ssh: bool = Field(default=True, description="Gate on SSH reachability for remote hosts")
    token_files: List[str] = Field(
        default_factory=lambda: ['/var/lib/rancher/k3s/server/node-token', '/var/lib/rancher/k3s/server/token'],
        description="Token file locations in order of preference",
    )

    @field_validator('timeout')
    @classmethod
    def check_timeout(cls, v: int) -> int:
        if not MIN_TIMEOUT <= v <= MAX_TIMEOUT:
            raise ValueError(f"timeout must be between {MIN_TIMEOUT} and {MAX_TIMEOUT} seconds")
        return v


class CollectorConfig(BaseModel):
    """Agent-side collection settings."""
    timeout: int = Field(default=300, description="Collection budget in seconds")
    interval: int = Field(default=5, description="Seconds between channel polls")
    strategy: str = Field(default="fixed", description="Poll strategy: fixed or exponential")
    max_delay: int = Field(default=60, description="Upper bound for exponential backoff")
    jitter: float = Field(default=0.0, description="Jitter fraction applied to poll delays")
    wait_for_token: bool = Field(default=True, description="Fail instead of skipping when nothing is found")
    max_age: Optional[int] = Field(default=None, description="Reject records older than this many seconds")
    state_file: str = Field(default="~/.local/state/joinctl/agent_cluster_info.yaml",
                            description="Agent-local record of the collected cluster information")

    @field_validator('strategy')
    @classmethod
    def check_strategy(cls, v: str) -> str:
        if v not in ('fixed', 'exponential'):
            raise ValueError("strategy must be 'fixed' or 'exponential'")
        return v


class JoinConfig(BaseModel):
    """Agent join settings."""
    max_attempts: int = Field(default=3, description="Install attempts before giving up")
    backoff: int = Field(default=30, description="Seconds between install attempts")
    version: Optional[str] = Field(default=None, description="K3S version to install (INSTALL_K3S_VERSION)")
    log_lines: int = Field(default=50, description="Agent log lines attached to a join failure")


class LocksConfig(BaseModel):
    """Package manager lock handling."""
    enabled: bool = Field(default=True, description="Wait for and clear package manager locks")
    timeout: int = Field(default=300, description="Seconds to wait before clearing stale lock files")
    interval: int = Field(default=10, description="Seconds between lock checks")
    package_manager: str = Field(default="auto", description="auto, rpm or dpkg")


class ChannelConfig(BaseModel):
    """Publication channel settings."""
    type: str = Field(default="catalog", description="catalog, http, file or scan")
    catalog_path: str = Field(default="~/.local/state/joinctl/catalog.yaml", description="Catalog file")
    url: Optional[str] = Field(default=None, description="Catalog API URL for the http channel")
    api_key: Optional[str] = Field(default=None, description="Catalog API key for the http channel")
    directory: str = Field(default="/tmp", description="Export directory for the file channel")
    subnet: Optional[str] = Field(default=None, description="Subnet to scan for servers")
    tag: Optional[str] = Field(default=None, description="Only consider records with this tag")

    @field_validator('type')
    @classmethod
    def check_type(cls, v: str) -> str:
        if v not in ('catalog', 'http', 'file', 'scan'):
            raise ValueError("type must be one of catalog, http, file, scan")
        return v


class ClusterConfig(BaseModel):
    """Cluster-wide configuration."""
    name: Optional[str] = Field(default=None, description="Cluster name")
    expected_min_nodes: int = Field(default=1, description="Minimum node count after agents join")
    facts_file: str = Field(default="~/.local/state/joinctl/k3s_server_info.yaml",
                            description="Server facts written after publication")


class HandshakeConfig(BaseModel):
    """Join handshake configuration."""
    model_config = {"extra": "ignore"}

    ssh: SSHConfig = Field(default_factory=SSHConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    join: JoinConfig = Field(default_factory=JoinConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)
    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    config_path: Optional[Path] = Field(default=None, exclude=True)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'HandshakeConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}
        source = None

        # Try to load from explicit path if provided
        if config_path:
            source = Path(config_path).expanduser().absolute()
            if source.exists():
                config_data = cls._load_config_file(source)
        else:
            # Try default paths
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    source = path
                    break

        cls._apply_env_overrides(config_data)
        config = cls(**config_data)
        config.config_path = source
        return config

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}

    @classmethod
    def _apply_env_overrides(cls, config_data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> None:
        """Overlay ``JOINCTL_SECTION__FIELD`` variables onto the file values."""
        environ = os.environ if environ is None else environ
        sections = set(cls.model_fields) - {'config_path'}
        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX) or ENV_NESTED_DELIMITER not in key:
                continue
            section, _, field_name = key[len(ENV_PREFIX):].lower().partition(ENV_NESTED_DELIMITER)
            if section not in sections:
                continue
            if field_name == 'token_files':
                value = [item for item in value.split(',') if item]
            section_data = config_data.get(section) or {}
            section_data[field_name] = value
            config_data[section] = section_data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self.model_dump(mode='json', exclude={"config_path"}, exclude_none=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[HandshakeConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> HandshakeConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = HandshakeConfig.load(config_path)
    return _config


def set_config(config: Optional[HandshakeConfig]) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
