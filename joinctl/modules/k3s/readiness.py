"""Server readiness verification.

A freshly booted server's join token is only safe to hand out once the whole
chain below has passed, in order:

    service active -> node Ready -> token present and well-formed
    -> token authenticates -> API reachable

Each gate polls with its own interval and attempt limit, and its own budget is
whatever is left of the overall timeout. Nothing here mutates the host.
"""

import logging
from typing import Callable, Optional, Tuple, Any

from .errors import ConfigurationError, GateTimeout
from .host import SERVER_SERVICE, K3sHost
from .models import GateResult, ReadinessReport, ReadinessState, TokenStatus
from .retry import Clock, FixedInterval, PollStrategy, poll_until
from .token import CredentialStore, describe_invalid

logger = logging.getLogger("k3s.readiness")

DEFAULT_TIMEOUT = 300
MIN_TIMEOUT = 30
MAX_TIMEOUT = 600


def validate_timeout(timeout: float) -> float:
    if not MIN_TIMEOUT <= timeout <= MAX_TIMEOUT:
        raise ConfigurationError(
            f"Readiness timeout must be between {MIN_TIMEOUT} and {MAX_TIMEOUT} seconds, got {timeout}",
            timeout=timeout,
        )
    return timeout


class ReadinessVerifier:
    """Runs the readiness gates against one server host."""

    def __init__(
        self,
        host: K3sHost,
        store: Optional[CredentialStore] = None,
        service_name: str = SERVER_SERVICE,
        node_name: Optional[str] = None,
        clock: Optional[Clock] = None,
        service_poll: Optional[PollStrategy] = None,
        node_poll: Optional[PollStrategy] = None,
        node_max_attempts: int = 20,
        token_poll: Optional[PollStrategy] = None,
        token_max_attempts: Optional[int] = None,
        api_poll: Optional[PollStrategy] = None,
        api_max_attempts: int = 20,
        check_ssh: bool = False,
        ssh_poll: Optional[PollStrategy] = None,
        ssh_max_attempts: int = 20,
    ):
        self.host = host
        self.store = store or CredentialStore(host)
        self.service_name = service_name
        self.node_name = node_name
        self.clock = clock or Clock()
        self.service_poll = service_poll or FixedInterval(10)
        self.node_poll = node_poll or FixedInterval(15)
        self.node_max_attempts = node_max_attempts
        self.token_poll = token_poll or FixedInterval(10)
        self.token_max_attempts = token_max_attempts
        self.api_poll = api_poll or FixedInterval(10)
        self.api_max_attempts = api_max_attempts
        self.check_ssh = check_ssh
        self.ssh_poll = ssh_poll or FixedInterval(5)
        self.ssh_max_attempts = ssh_max_attempts

    # -- probes ---------------------------------------------------------

    def _probe_ssh(self) -> Tuple[bool, Any, str]:
        ok = self.host.ping()
        return ok, None, 'reachable' if ok else 'unreachable'

    def _probe_service(self) -> Tuple[bool, Any, str]:
        status = self.host.service_status(self.service_name)
        return status == 'active', None, status

    def _probe_node(self) -> Tuple[bool, Any, str]:
        status = self.host.node_status(self.node_name)
        return status == 'Ready', None, status

    def _probe_token(self) -> Tuple[bool, Any, str]:
        status, token = self.store.read()
        if status == TokenStatus.VALID:
            return True, token, status.value
        if status == TokenStatus.INVALID:
            logger.warning(f"⚠️  Invalid token format: {describe_invalid(token)}")
            return False, None, f"{status.value}: {describe_invalid(token)}"
        return False, None, status.value

    def _probe_auth(self) -> Tuple[bool, Any, str]:
        status, token = self.store.read()
        if status != TokenStatus.VALID:
            return False, None, f"token {status.value}"
        if self.host.api_call('get nodes', token=token):
            return True, token, 'AUTH_SUCCESS'
        logger.warning("⚠️  Token exists but authentication failed, retrying...")
        return False, None, 'AUTH_FAILED'

    def _probe_api(self) -> Tuple[bool, Any, str]:
        if not self.host.port_open():
            return False, None, 'PORT_CLOSED'
        if not self.host.api_call('get nodes'):
            return False, None, 'API_NOT_READY'
        return True, self.host.cluster_info(), 'API_READY'

    # -- gates ----------------------------------------------------------

    def _run_gate(
        self,
        report: ReadinessReport,
        deadline: float,
        gate: str,
        probe: Callable[[], Tuple[bool, Any, str]],
        strategy: PollStrategy,
        max_attempts: Optional[int],
        next_state: Optional[ReadinessState],
    ) -> Optional[Any]:
        budget = max(0.0, deadline - self.clock.now())
        logger.info(f"🔍 Gate '{gate}' (budget {budget:.0f}s)")
        outcome = poll_until(
            probe,
            timeout=budget,
            strategy=strategy,
            clock=self.clock,
            max_attempts=max_attempts,
            description=gate,
        )
        report.gates.append(GateResult(
            gate=gate,
            passed=outcome.success,
            attempts=outcome.attempts,
            duration=outcome.elapsed,
            last_status=outcome.last_status,
        ))

        if not outcome.success:
            report.failed_gate = gate
            report.error = GateTimeout(gate, outcome.elapsed, outcome.last_status)
            report.advance(ReadinessState.FAILED)
            logger.error(f"❌ Gate '{gate}' failed after {outcome.attempts} attempts "
                         f"({outcome.elapsed:.0f}s), last status: {outcome.last_status}")
            return None

        logger.info(f"✅ Gate '{gate}' passed after {outcome.attempts} attempt(s)")
        if next_state is not None:
            report.advance(next_state)
        return outcome.value if outcome.value is not None else True

    def verify_readiness(self, timeout: float = DEFAULT_TIMEOUT) -> ReadinessReport:
        """Run every gate in order within ``timeout`` seconds.

        Gate timeouts are not raised: the report comes back with
        ``ready == False``, ``failed_gate`` and the last observed status.

        Raises:
            ConfigurationError: If the timeout is outside 30-600 seconds
        """
        validate_timeout(timeout)
        logger.info(f"🔍 Verifying server readiness on {self.host.name} (timeout: {timeout}s)")
        return self._run_gates(self.clock.now() + timeout)

    def verify_once(self) -> ReadinessReport:
        """Run every gate exactly once, without waiting between probes.

        For servers found by scanning rather than configured: a server that
        is not ready right now is simply not a candidate yet.
        """
        logger.info(f"🔍 Checking server readiness on {self.host.name}")
        return self._run_gates(self.clock.now(), single=True)

    def _run_gates(self, deadline: float, single: bool = False) -> ReadinessReport:
        report = ReadinessReport()
        report.advance(ReadinessState.UNSTARTED)

        def limit(max_attempts: Optional[int]) -> Optional[int]:
            return 1 if single else max_attempts

        if self.check_ssh:
            if self._run_gate(report, deadline, 'ssh_reachable', self._probe_ssh,
                              self.ssh_poll, limit(self.ssh_max_attempts), None) is None:
                return report

        if self._run_gate(report, deadline, 'service_active', self._probe_service,
                          self.service_poll, limit(None), ReadinessState.SERVICE_ACTIVE) is None:
            return report

        if self._run_gate(report, deadline, 'node_ready', self._probe_node,
                          self.node_poll, limit(self.node_max_attempts), ReadinessState.NODE_READY) is None:
            return report

        if self._run_gate(report, deadline, 'token_present', self._probe_token,
                          self.token_poll, limit(self.token_max_attempts), ReadinessState.TOKEN_PRESENT) is None:
            return report

        token = self._run_gate(report, deadline, 'token_authenticates', self._probe_auth,
                               self.token_poll, limit(self.token_max_attempts), ReadinessState.TOKEN_AUTHENTICATED)
        if token is None:
            return report

        cluster_info = self._run_gate(report, deadline, 'api_reachable', self._probe_api,
                                      self.api_poll, limit(self.api_max_attempts), ReadinessState.API_REACHABLE)
        if cluster_info is None:
            return report

        report.cluster_info = cluster_info if isinstance(cluster_info, str) else ''
        if report.cluster_info:
            logger.info("📊 Cluster info:\n" + '\n'.join(f"     {line}" for line in report.cluster_info.splitlines()))

        report.token = token
        report.advance(ReadinessState.READY)
        logger.info(f"🎉 Server {self.host.name} is ready for agent connections")
        return report
