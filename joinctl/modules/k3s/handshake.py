"""End-to-end handshake: readiness, publication, collection, join, membership.

Each phase appends steps to a :class:`HandshakeTrace`; the trace's outcome
tells apart a server that never became healthy, an agent that never found a
server, a failed join and an incomplete cluster.
"""

import logging
from typing import Dict, Optional

from .channel import Publisher
from .collector import Collector
from .errors import CollectionTimeout, HandshakeError, JoinFailed, PayloadValidationError
from .host import K3sHost
from .join import JoinOrchestrator
from .membership import ClusterVerifier
from .models import HandshakeOutcome, HandshakeTrace, ReadinessReport
from .readiness import DEFAULT_TIMEOUT, ReadinessVerifier
from .retry import Clock
from .state import write_server_facts

logger = logging.getLogger("k3s.handshake")


def _error(e: Exception) -> Dict:
    if isinstance(e, HandshakeError):
        return e.to_dict()
    return {'error': type(e).__name__, 'message': str(e)}


def server_handshake(
    verifier: ReadinessVerifier,
    publisher: Publisher,
    timeout: float = DEFAULT_TIMEOUT,
    clock: Optional[Clock] = None,
    trace: Optional[HandshakeTrace] = None,
    facts_path: Optional[str] = None,
) -> HandshakeTrace:
    """Verify the server and publish its token once every gate has passed."""
    clock = clock or Clock()
    trace = trace or HandshakeTrace()

    report: ReadinessReport = verifier.verify_readiness(timeout)
    for gate in report.gates:
        trace.record(f"server:{gate.gate}", gate.passed, gate.duration,
                     f"{gate.attempts} attempt(s), last status: {gate.last_status}")
    if not report.ready:
        trace.outcome = HandshakeOutcome.SERVER_NOT_READY
        trace.error = _error(report.error) if report.error else {'message': 'server not ready'}
        return trace

    start = clock.now()
    try:
        record = publisher.publish(report)
    except (HandshakeError, OSError) as e:
        trace.record('server:publish', False, clock.now() - start, str(e))
        trace.outcome = HandshakeOutcome.PUBLICATION_FAILED
        trace.error = _error(e)
        logger.error(f"❌ Publication failed: {e}")
        return trace
    trace.record('server:publish', True, clock.now() - start, f"published {record.key} via {publisher.channel.name}")
    trace.server_url = record.server_url
    if facts_path:
        write_server_facts(publisher.identity, facts_path, server_url=record.server_url)
    trace.outcome = HandshakeOutcome.SUCCESS
    return trace


def agent_handshake(
    collector: Collector,
    orchestrator: Optional[JoinOrchestrator],
    cluster_name: str,
    collect_timeout: float = 300,
    wait_for_token: bool = True,
    max_attempts: int = 3,
    backoff: float = 30,
    version: Optional[str] = None,
    clock: Optional[Clock] = None,
    trace: Optional[HandshakeTrace] = None,
) -> HandshakeTrace:
    """Collect cluster information and, with an orchestrator, join the cluster."""
    clock = clock or Clock()
    trace = trace or HandshakeTrace()

    start = clock.now()
    try:
        result = collector.collect(cluster_name, timeout=collect_timeout, wait_for_token=wait_for_token)
    except (CollectionTimeout, PayloadValidationError) as e:
        trace.record('agent:collect', False, clock.now() - start, e.message)
        trace.outcome = HandshakeOutcome.SERVER_NOT_FOUND
        trace.error = _error(e)
        return trace

    if not result.collected:
        trace.record('agent:collect', True, clock.now() - start, 'no cluster info, proceeding without automation')
        trace.outcome = HandshakeOutcome.SKIPPED
        return trace

    trace.record('agent:collect', True, clock.now() - start,
                 f"{result.attempt.attempts} attempt(s), server {result.token.server_node}")
    trace.server_url = result.server_url

    if orchestrator is not None:
        start = clock.now()
        try:
            joined = orchestrator.join(result.server_url, result.token.token,
                                       max_attempts=max_attempts, backoff=backoff, version=version)
        except JoinFailed as e:
            trace.record('agent:join', False, clock.now() - start, e.message)
            trace.outcome = HandshakeOutcome.JOIN_FAILED
            trace.error = _error(e)
            return trace
        trace.record('agent:join', True, clock.now() - start, f"joined after {joined.attempts} attempt(s)")

    trace.outcome = HandshakeOutcome.SUCCESS
    return trace


def membership_check(
    verifier: ClusterVerifier,
    expected_min_nodes: int,
    agents: Optional[Dict[str, K3sHost]] = None,
    clock: Optional[Clock] = None,
    trace: Optional[HandshakeTrace] = None,
) -> HandshakeTrace:
    clock = clock or Clock()
    trace = trace or HandshakeTrace()
    start = clock.now()
    report = verifier.verify_membership(expected_min_nodes, agents=agents)
    trace.record('cluster:membership', report.ok, clock.now() - start,
                 f"{report.node_count}/{expected_min_nodes} node(s)")
    if report.ok:
        trace.outcome = HandshakeOutcome.SUCCESS
    else:
        trace.outcome = HandshakeOutcome.MEMBERSHIP_INCOMPLETE
        trace.error = {'error': 'MembershipError', 'message': report.error, 'report': report.to_dict()}
    return trace


def full_handshake(
    verifier: ReadinessVerifier,
    publisher: Publisher,
    collector: Collector,
    orchestrator: Optional[JoinOrchestrator],
    cluster_verifier: Optional[ClusterVerifier],
    expected_min_nodes: int = 1,
    timeout: float = DEFAULT_TIMEOUT,
    collect_timeout: float = 300,
    max_attempts: int = 3,
    backoff: float = 30,
    clock: Optional[Clock] = None,
) -> HandshakeTrace:
    """Run the whole handshake for one server and one agent in sequence."""
    trace = HandshakeTrace()
    cluster_name = publisher.identity.cluster_name
    logger.info(f"🤝 Starting join handshake for cluster {cluster_name}")

    server_handshake(verifier, publisher, timeout=timeout, clock=clock, trace=trace)
    if not trace.success:
        return trace

    agent_handshake(collector, orchestrator, cluster_name, collect_timeout=collect_timeout,
                    max_attempts=max_attempts, backoff=backoff, clock=clock, trace=trace)
    if trace.outcome != HandshakeOutcome.SUCCESS or cluster_verifier is None:
        return trace

    membership_check(cluster_verifier, expected_min_nodes, clock=clock, trace=trace)
    if trace.success:
        logger.info(f"🎉 Handshake for cluster {cluster_name} completed")
    return trace
