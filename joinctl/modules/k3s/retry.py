"""Polling, backoff and deadline handling.

Every wait in the handshake goes through :func:`poll_until` with an injectable
:class:`PollStrategy` and :class:`Clock`, so tests can simulate minutes of
polling without sleeping.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .errors import CommandError

logger = logging.getLogger("k3s.retry")

# Raised by probes for conditions that are expected to clear up on their own
TRANSIENT_ERRORS = (CommandError, ConnectionError, TimeoutError, OSError)


class Clock:
    """Wall and monotonic time plus sleeping."""

    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class PollStrategy:
    """Decides how long to wait after a failed attempt."""

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-based) attempt."""
        raise NotImplementedError


class FixedInterval(PollStrategy):
    def __init__(self, interval: float):
        self.interval = interval

    def delay(self, attempt: int) -> float:
        return self.interval

    def __repr__(self) -> str:
        return f"FixedInterval({self.interval})"


class ExponentialBackoff(PollStrategy):
    def __init__(self, initial: float = 1.0, factor: float = 2.0, max_delay: float = 60.0):
        self.initial = initial
        self.factor = factor
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.initial * (self.factor ** max(0, attempt - 1)))

    def __repr__(self) -> str:
        return f"ExponentialBackoff({self.initial}, {self.factor}, {self.max_delay})"


class JitteredBackoff(PollStrategy):
    """Wraps another strategy and spreads its delays by +/- ``jitter`` (a fraction)."""

    def __init__(self, base: PollStrategy, jitter: float = 0.1, rng: Optional[random.Random] = None):
        self.base = base
        self.jitter = jitter
        self.rng = rng or random.Random()

    def delay(self, attempt: int) -> float:
        delay = self.base.delay(attempt)
        return max(0.0, delay * (1 + self.rng.uniform(-self.jitter, self.jitter)))


def make_strategy(kind: str, interval: float, max_delay: float = 60.0, jitter: float = 0.0) -> PollStrategy:
    """Build a strategy from configuration values."""
    if kind == 'fixed':
        strategy: PollStrategy = FixedInterval(interval)
    elif kind == 'exponential':
        strategy = ExponentialBackoff(initial=interval, max_delay=max_delay)
    else:
        raise ValueError(f"Unknown poll strategy: {kind}")
    if jitter:
        strategy = JitteredBackoff(strategy, jitter)
    return strategy


@dataclass
class PollOutcome:
    """What a polling loop saw."""
    success: bool
    attempts: int
    elapsed: float
    value: Any = None
    last_status: str = ''


# A probe returns (done, value, status)
Probe = Callable[[], Tuple[bool, Any, str]]


def poll_until(
    probe: Probe,
    timeout: float,
    strategy: PollStrategy,
    clock: Optional[Clock] = None,
    max_attempts: Optional[int] = None,
    description: str = 'condition',
    log_every: int = 1,
) -> PollOutcome:
    """Call ``probe`` until it reports done, the deadline passes or attempts run out.

    The loop overshoots the deadline by at most one probe call: the last sleep
    is clipped to the remaining budget.
    """
    clock = clock or Clock()
    start = clock.now()
    deadline = start + timeout
    attempt = 0
    last_status = ''

    while True:
        attempt += 1
        try:
            done, value, status = probe()
        except TRANSIENT_ERRORS as e:
            done, value, status = False, None, f"{type(e).__name__}: {e}"
        last_status = status

        if done:
            return PollOutcome(True, attempt, clock.now() - start, value, status)

        if log_every and attempt % log_every == 0:
            limit = f"/{max_attempts}" if max_attempts else ''
            logger.info(f"⏳ Waiting for {description}: {status} (attempt {attempt}{limit})")

        if max_attempts and attempt >= max_attempts:
            break
        remaining = deadline - clock.now()
        if remaining <= 0:
            break
        clock.sleep(min(strategy.delay(attempt), remaining))

    return PollOutcome(False, attempt, clock.now() - start, None, last_status)
