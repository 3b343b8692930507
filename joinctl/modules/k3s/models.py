"""Data models for the K3S join handshake."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import time


class NodeType(str, Enum):
    """Node roles in a K3S cluster."""
    SERVER = 'server'
    AGENT = 'agent'


class ReadinessState(str, Enum):
    """States of a server's readiness verification run.

    The state names the last gate that passed. ``FAILED`` is terminal and
    reachable from any state once the budget runs out.
    """
    UNSTARTED = 'unstarted'
    SERVICE_ACTIVE = 'service_active'
    NODE_READY = 'node_ready'
    TOKEN_PRESENT = 'token_present'
    TOKEN_AUTHENTICATED = 'token_authenticated'
    API_REACHABLE = 'api_reachable'
    READY = 'ready'
    FAILED = 'failed'


class AgentState(str, Enum):
    """States of the agent-side join flow."""
    DISCOVERING = 'discovering'
    CANDIDATE_FOUND = 'candidate_found'
    VALIDATING = 'validating'
    VALIDATED = 'validated'
    JOINING = 'joining'
    JOINED = 'joined'
    JOIN_FAILED = 'join_failed'
    BACKOFF = 'backoff_then_retry'
    FATAL = 'fatal_failed'
    SKIPPED = 'skipped'


class PayloadFormat(str, Enum):
    """Encodings a payload can arrive in."""
    RECORD = 'record'  # already-decoded mapping from a structured store
    YAML = 'yaml'
    SHELL = 'shell'


class TokenStatus(str, Enum):
    """Classification of a token file read."""
    VALID = 'VALID'
    INVALID = 'INVALID'
    MISSING = 'MISSING'


@dataclass
class Node:
    """A reachable host with SSH access."""
    name: str
    ip: str
    ssh_user: str = 'ubuntu'
    ssh_key_path: Optional[str] = None
    port: int = 22


@dataclass(frozen=True)
class NodeIdentity:
    """Explicit identity of a publishing server node."""
    cluster_name: str
    server_node: str
    server_ip: str
    server_fqdn: Optional[str] = None
    api_port: int = 6443
    scheme: str = 'https'
    is_primary: bool = False
    tag: Optional[str] = None

    @property
    def key(self) -> str:
        return record_key(self.cluster_name, self.server_node)

    @property
    def server_url(self) -> str:
        return f"{self.scheme}://{self.server_ip}:{self.api_port}"


def record_key(cluster_name: str, server_node: str) -> str:
    """Key under which a server publishes its cluster information."""
    return f"{cluster_name}_{server_node}"


@dataclass(frozen=True)
class ClusterToken:
    """The credential a server exports for agents to join with."""
    cluster_name: str
    server_fqdn: str
    server_ip: str
    server_url: str
    server_node: str
    token: str
    is_primary: bool = False
    export_time: int = 0
    tag: str = ''

    @property
    def key(self) -> str:
        return record_key(self.cluster_name, self.server_node)

    @classmethod
    def from_identity(cls, identity: NodeIdentity, token: str,
                      export_time: Optional[int] = None) -> 'ClusterToken':
        return cls(
            cluster_name=identity.cluster_name,
            server_fqdn=identity.server_fqdn or identity.server_node,
            server_ip=identity.server_ip,
            server_url=identity.server_url,
            server_node=identity.server_node,
            token=token,
            is_primary=identity.is_primary,
            export_time=int(export_time if export_time is not None else time.time()),
            tag=identity.tag or f"k3s_cluster_{identity.cluster_name}",
        )

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the record was exported."""
        return (now if now is not None else time.time()) - self.export_time

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Payload:
    """A raw candidate found on a publication channel."""
    source: str
    format: PayloadFormat
    body: Any


@dataclass
class GateResult:
    """Outcome of a single readiness gate."""
    gate: str
    passed: bool
    attempts: int = 0
    duration: float = 0.0
    last_status: str = ''
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReadinessReport:
    """Result of ``ReadinessVerifier.verify_readiness``."""
    state: ReadinessState = ReadinessState.UNSTARTED
    gates: List[GateResult] = field(default_factory=list)
    token: Optional[str] = None
    failed_gate: Optional[str] = None
    transitions: List[ReadinessState] = field(default_factory=list)
    cluster_info: str = ''
    error: Optional[Exception] = None

    @property
    def ready(self) -> bool:
        return self.state == ReadinessState.READY and bool(self.token)

    @property
    def last_status(self) -> str:
        return self.gates[-1].last_status if self.gates else ''

    def advance(self, state: ReadinessState) -> None:
        self.state = state
        self.transitions.append(state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ready': self.ready,
            'state': self.state.value,
            'failed_gate': self.failed_gate,
            'last_status': self.last_status,
            'cluster_info': self.cluster_info,
            'error': str(self.error) if self.error else None,
            'gates': [
                {
                    'gate': g.gate,
                    'passed': g.passed,
                    'attempts': g.attempts,
                    'duration': round(g.duration, 1),
                    'last_status': g.last_status,
                }
                for g in self.gates
            ],
        }


@dataclass
class CollectionAttempt:
    """Agent-local state of one collection cycle."""
    cluster_name: str
    attempts: int = 0
    elapsed: float = 0.0
    last_error: Optional[str] = None
    candidate: Optional[ClusterToken] = None
    rejected: List[str] = field(default_factory=list)
    states: List[AgentState] = field(default_factory=list)


@dataclass
class CollectionResult:
    """Outcome of ``Collector.collect``."""
    collected: bool
    attempt: CollectionAttempt
    token: Optional[ClusterToken] = None

    @property
    def server_url(self) -> Optional[str]:
        return self.token.server_url if self.token else None


@dataclass
class JoinResult:
    """Outcome of a successful ``JoinOrchestrator.join``."""
    server_url: str
    attempts: int
    binary_path: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    states: List[AgentState] = field(default_factory=list)


@dataclass
class MembershipReport:
    """Outcome of ``ClusterVerifier.verify_membership``."""
    expected_min_nodes: int
    nodes: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    unready: List[str] = field(default_factory=list)
    logs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def ok(self) -> bool:
        return self.error is None and self.node_count >= self.expected_min_nodes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ok': self.ok,
            'expected_min_nodes': self.expected_min_nodes,
            'node_count': self.node_count,
            'nodes': dict(self.nodes),
            'missing': list(self.missing),
            'unready': list(self.unready),
            'logs': dict(self.logs),
            'error': self.error,
        }


class HandshakeOutcome(str, Enum):
    """How a handshake run ended."""
    SUCCESS = 'success'
    SERVER_NOT_READY = 'server_not_ready'
    PUBLICATION_FAILED = 'publication_failed'
    SERVER_NOT_FOUND = 'server_not_found'
    SKIPPED = 'proceed_without_automation'
    JOIN_FAILED = 'join_failed'
    MEMBERSHIP_INCOMPLETE = 'membership_incomplete'


@dataclass
class StepResult:
    """One line of the handshake trace."""
    name: str
    success: bool
    duration: float = 0.0
    detail: str = ''


@dataclass
class HandshakeTrace:
    """Step-by-step record of a handshake run."""
    steps: List[StepResult] = field(default_factory=list)
    outcome: Optional[HandshakeOutcome] = None
    server_url: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.outcome in (HandshakeOutcome.SUCCESS, HandshakeOutcome.SKIPPED)

    def record(self, name: str, success: bool, duration: float = 0.0, detail: str = '') -> StepResult:
        step = StepResult(name=name, success=success, duration=duration, detail=detail)
        self.steps.append(step)
        return step

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'outcome': self.outcome.value if self.outcome else None,
            'server_url': self.server_url,
            'error': self.error,
            'steps': [
                {
                    'name': s.name,
                    'success': s.success,
                    'duration': round(s.duration, 1),
                    'detail': s.detail,
                }
                for s in self.steps
            ],
        }
