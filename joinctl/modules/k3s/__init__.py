"""
K3S Cluster Join Handshake

This package implements the automated exchange of the cluster-join token
between K3S servers and agents.

Key Features:
- Gated server readiness verification (service, node, token, API)
- Publication of validated cluster information over pluggable channels
  (in-process catalog, HTTP catalog API, file drop, subnet scan)
- Agent-side collection with completeness checks and bounded polling
- Bounded-retry agent join with package manager lock mitigation
- Post-join cluster membership verification
- Flexible configuration management with environment variable overrides
"""

from .errors import (
    HandshakeError,
    ConfigurationError,
    CommandError,
    GateTimeout,
    PublicationRefused,
    PayloadValidationError,
    CollectionTimeout,
    JoinFailed,
    MembershipError,
)
from .models import (
    NodeType,
    NodeIdentity,
    ClusterToken,
    ReadinessState,
    ReadinessReport,
    AgentState,
    CollectionResult,
    JoinResult,
    MembershipReport,
    HandshakeOutcome,
    HandshakeTrace,
)
from .retry import Clock, FixedInterval, ExponentialBackoff, JitteredBackoff, poll_until
from .runner import CommandSpec, LocalRunner, SSHRunner, remote_exec
from .host import K3sHost
from .token import CredentialStore, is_valid_token
from .readiness import ReadinessVerifier
from .catalog import CatalogStore
from .channel import CatalogChannel, FileChannel, HttpChannel, Publisher
from .discovery import ScanChannel, SubnetScanner
from .collector import Collector
from .installer import AgentInstaller, JoinCommandBuilder, JoinSpec
from .locks import PackageLockGuard
from .join import JoinOrchestrator
from .membership import ClusterVerifier, KubectlNodeSource, KubernetesNodeSource
from .handshake import server_handshake, agent_handshake, full_handshake

# Configuration management
from .config import HandshakeConfig, get_config, set_config, DEFAULT_CONFIG_PATHS
from .configure import create_config_file, validate_config_file, show_config

__all__ = [
    # Errors
    'HandshakeError',
    'ConfigurationError',
    'CommandError',
    'GateTimeout',
    'PublicationRefused',
    'PayloadValidationError',
    'CollectionTimeout',
    'JoinFailed',
    'MembershipError',

    # Models
    'NodeType',
    'NodeIdentity',
    'ClusterToken',
    'ReadinessState',
    'ReadinessReport',
    'AgentState',
    'CollectionResult',
    'JoinResult',
    'MembershipReport',
    'HandshakeOutcome',
    'HandshakeTrace',

    # Execution and polling
    'Clock',
    'FixedInterval',
    'ExponentialBackoff',
    'JitteredBackoff',
    'poll_until',
    'CommandSpec',
    'LocalRunner',
    'SSHRunner',
    'remote_exec',
    'K3sHost',

    # Handshake components
    'CredentialStore',
    'is_valid_token',
    'ReadinessVerifier',
    'CatalogStore',
    'CatalogChannel',
    'FileChannel',
    'HttpChannel',
    'ScanChannel',
    'SubnetScanner',
    'Publisher',
    'Collector',
    'AgentInstaller',
    'JoinCommandBuilder',
    'JoinSpec',
    'PackageLockGuard',
    'JoinOrchestrator',
    'ClusterVerifier',
    'KubectlNodeSource',
    'KubernetesNodeSource',
    'server_handshake',
    'agent_handshake',
    'full_handshake',

    # Configuration management
    'HandshakeConfig',
    'get_config',
    'set_config',
    'DEFAULT_CONFIG_PATHS',
    'create_config_file',
    'validate_config_file',
    'show_config',
]

__version__ = "0.1.0"
