"""Bounded-retry agent join."""

import logging
from typing import List, Optional

from .errors import CommandError, ConfigurationError, JoinFailed
from .installer import AgentInstaller
from .locks import PackageLockGuard
from .models import AgentState, JoinResult, NodeType
from .retry import Clock
from .token import describe_invalid, is_valid_token

logger = logging.getLogger("k3s.join")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF = 30


class JoinOrchestrator:
    """Installs and starts the agent against a server, retrying a fixed number of times.

    Every failed attempt is followed by cleanup of the partial install. Between
    attempts the orchestrator sleeps ``backoff`` seconds and re-runs the
    package lock mitigation.
    """

    def __init__(
        self,
        installer: AgentInstaller,
        lock_guard: Optional[PackageLockGuard] = None,
        clock: Optional[Clock] = None,
        verify: bool = True,
        log_lines: int = 50,
    ):
        self.installer = installer
        self.lock_guard = lock_guard
        self.clock = clock or Clock()
        self.verify = verify
        self.log_lines = log_lines

    def _attempt(self, server_url: str, token: str, version: Optional[str]) -> str:
        path = self.installer.install(NodeType.AGENT, version=version, server_url=server_url, token=token)
        if self.verify:
            verification = self.installer.verify(server_url)
            if not verification.ok:
                raise CommandError('verify k3s-agent', 1, '', verification.logs or 'k3s-agent is not active')
        return path

    def join(
        self,
        server_url: str,
        token: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: float = DEFAULT_BACKOFF,
        version: Optional[str] = None,
    ) -> JoinResult:
        """Join this node to the cluster at ``server_url``.

        Raises:
            ConfigurationError: If the arguments are unusable
            JoinFailed: After ``max_attempts`` failed attempts, with the agent's recent logs
        """
        if max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {max_attempts}")
        if not server_url:
            raise ConfigurationError("A server URL is required to join")
        if not is_valid_token(token):
            raise ConfigurationError(f"Refusing to join with an invalid token: {describe_invalid(token or '')}")

        states: List[AgentState] = []
        errors: List[str] = []
        host = self.installer.host.name

        if self.lock_guard:
            self.lock_guard.acquire()
        try:
            for attempt in range(1, max_attempts + 1):
                states.append(AgentState.JOINING)
                logger.info(f"🚀 K3S agent join attempt {attempt}/{max_attempts} on {host} -> {server_url}")
                try:
                    path = self._attempt(server_url, token, version)
                except CommandError as e:
                    errors.append(f"attempt {attempt}: {e.message}")
                    states.append(AgentState.JOIN_FAILED)
                    logger.error(f"❌ Join attempt {attempt} failed: {e.message}")
                    self.installer.cleanup(NodeType.AGENT)
                    if attempt < max_attempts:
                        states.append(AgentState.BACKOFF)
                        logger.info(f"⏳ Retrying in {backoff} seconds...")
                        self.clock.sleep(backoff)
                        if self.lock_guard:
                            self.lock_guard.quiesce()
                            self.lock_guard.wait_for_lock()
                    continue

                states.append(AgentState.JOINED)
                logger.info(f"✅ K3S agent joined {server_url} on attempt {attempt}")
                return JoinResult(server_url=server_url, attempts=attempt, binary_path=path,
                                  errors=errors, states=states)
        finally:
            if self.lock_guard:
                self.lock_guard.release()

        states.append(AgentState.FATAL)
        logs = self.installer.service_logs(lines=self.log_lines)
        logger.error(f"❌ All {max_attempts} K3S agent join attempts failed on {host}")
        raise JoinFailed(
            f"Agent failed to join {server_url} after {max_attempts} attempts",
            attempts=max_attempts, logs=logs, errors=errors,
        )
