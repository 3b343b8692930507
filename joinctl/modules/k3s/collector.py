"""Agent-side collection of published cluster information."""

import logging
from typing import Any, Optional, Tuple

from .channel import PublicationChannel
from .codec import decode_payload, validate_record
from .errors import CollectionTimeout, PayloadValidationError
from .models import AgentState, CollectionAttempt, CollectionResult
from .retry import Clock, FixedInterval, PollStrategy, poll_until
from .state import AgentStateStore

logger = logging.getLogger("k3s.collector")

DEFAULT_COLLECT_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 5


class Collector:
    """Polls a publication channel until a complete, valid record appears.

    Incomplete or malformed candidates are rejected and polling continues;
    with several servers publishing (HA) the first valid candidate wins.
    """

    def __init__(
        self,
        channel: PublicationChannel,
        state_store: Optional[AgentStateStore] = None,
        clock: Optional[Clock] = None,
        strategy: Optional[PollStrategy] = None,
        max_age: Optional[float] = None,
    ):
        self.channel = channel
        self.state_store = state_store or AgentStateStore(path=None)
        self.clock = clock or Clock()
        self.strategy = strategy or FixedInterval(DEFAULT_POLL_INTERVAL)
        self.max_age = max_age
        self._last_validation_error: Optional[PayloadValidationError] = None
        self._deadline: Optional[float] = None

    def _advance(self, attempt: CollectionAttempt, state: AgentState) -> None:
        if not attempt.states or attempt.states[-1] != state:
            attempt.states.append(state)

    def _probe(self, cluster_name: str, attempt: CollectionAttempt) -> Tuple[bool, Any, str]:
        attempt.attempts += 1
        self._last_validation_error = None
        self._advance(attempt, AgentState.DISCOVERING)
        remaining = None if self._deadline is None else max(0.0, self._deadline - self.clock.now())
        payloads = self.channel.query(cluster_name, timeout=remaining)
        if not payloads:
            attempt.last_error = 'no cluster info published yet'
            return False, None, 'NO_CANDIDATES'

        self._advance(attempt, AgentState.CANDIDATE_FOUND)
        for payload in payloads:
            self._advance(attempt, AgentState.VALIDATING)
            try:
                record = validate_record(decode_payload(payload), source=payload.source)
            except PayloadValidationError as e:
                attempt.last_error = e.message
                attempt.rejected.append(payload.source)
                self._last_validation_error = e
                logger.warning(f"⚠️  Rejected candidate from {payload.source}: {e.message}")
                continue

            if record.cluster_name != cluster_name:
                attempt.last_error = f"candidate belongs to cluster {record.cluster_name}"
                attempt.rejected.append(payload.source)
                continue
            if self.max_age is not None and record.age(self.clock.wall()) > self.max_age:
                attempt.last_error = f"candidate {record.key} is stale ({record.age(self.clock.wall()):.0f}s old)"
                attempt.rejected.append(payload.source)
                logger.warning(f"⚠️  Ignoring stale record {record.key}")
                continue

            attempt.candidate = record
            self._advance(attempt, AgentState.VALIDATED)
            return True, record, f"VALID from {payload.source}"

        return False, None, f"REJECTED: {attempt.last_error}"

    def collect(
        self,
        cluster_name: str,
        timeout: float = DEFAULT_COLLECT_TIMEOUT,
        wait_for_token: bool = True,
    ) -> CollectionResult:
        """Poll for cluster information for at most ``timeout`` seconds.

        Returns:
            A collected result, or with ``wait_for_token=False`` an uncollected
            result that means "proceed without automation"

        Raises:
            CollectionTimeout: Nothing valid appeared and ``wait_for_token`` is set
            PayloadValidationError: The budget ran out while the only candidates
                seen were structurally incomplete
        """
        attempt = CollectionAttempt(cluster_name=cluster_name)
        self._last_validation_error = None
        self._deadline = self.clock.now() + timeout
        logger.info(f"🔍 Collecting cluster information for {cluster_name} via {self.channel.name} "
                    f"channel (timeout: {timeout}s)")

        outcome = poll_until(
            lambda: self._probe(cluster_name, attempt),
            timeout=timeout,
            strategy=self.strategy,
            clock=self.clock,
            description=f"cluster info for {cluster_name}",
        )
        attempt.elapsed = outcome.elapsed

        if outcome.success:
            token = outcome.value
            self.state_store.record_success(token)
            logger.info(f"✅ Collected cluster information: server_url={token.server_url}, "
                        f"server_node={token.server_node} after {attempt.attempts} attempt(s)")
            return CollectionResult(collected=True, attempt=attempt, token=token)

        attempt.last_error = attempt.last_error or outcome.last_status
        self.state_store.record_failure(cluster_name, attempt.last_error)

        structural = self._last_validation_error
        if structural is not None and structural.missing:
            logger.error(f"❌ Only incomplete cluster information found for {cluster_name}: {structural.message}")
            raise structural

        if wait_for_token:
            raise CollectionTimeout(
                f"No cluster info found for {cluster_name} after {outcome.elapsed:.0f}s",
                cluster_name=cluster_name, attempts=attempt.attempts, last_error=attempt.last_error,
            )

        attempt.states.append(AgentState.SKIPPED)
        logger.warning(f"⚠️  No cluster info found for {cluster_name}; proceeding without automation")
        return CollectionResult(collected=False, attempt=attempt)
