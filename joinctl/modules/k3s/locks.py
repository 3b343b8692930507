"""Package manager lock mitigation before agent installs.

The K3S installer pulls packages (selinux policy on RPM systems), so it fails
whenever cloud-init, packagekit or the SSM agent is holding the package
database. Before each install attempt we wait for the lock, clear stale lock
files only once that wait has run out, stop competing processes and services,
and bring the services back after the installer is done.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .host import K3sHost
from .retry import Clock, FixedInterval, PollStrategy, poll_until
from .runner import CommandSpec

logger = logging.getLogger("k3s.locks")

DEFAULT_LOCK_TIMEOUT = 300
DEFAULT_LOCK_POLL = 10
SETTLE_SECONDS = 5

LOCK_PROFILES: Dict[str, Dict[str, List[str]]] = {
    'rpm': {
        'locks': ['/var/lib/rpm/.rpm.lock', '/var/lib/rpm/.dbenv.lock'],
        'processes': ['yum', 'dnf', 'rpm', 'packagekit'],
        'services': ['packagekit', 'amazon-ssm-agent'],
    },
    'dpkg': {
        'locks': ['/var/lib/dpkg/lock-frontend', '/var/lib/dpkg/lock'],
        'processes': ['apt-get', 'apt', 'dpkg', 'packagekit'],
        'services': ['packagekit', 'amazon-ssm-agent'],
    },
}


@dataclass
class LockWaitResult:
    """What happened while waiting for the package lock."""
    package_manager: Optional[str]
    released: bool
    waited: float = 0.0
    attempts: int = 0
    cleared: List[str] = field(default_factory=list)


class PackageLockGuard:
    """Waits out, and if needed breaks, the package manager lock on a host.

    Usable as a context manager around an install: ``acquire`` on entry,
    ``release`` (restart stopped services) on exit.
    """

    def __init__(
        self,
        host: K3sHost,
        clock: Optional[Clock] = None,
        strategy: Optional[PollStrategy] = None,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        package_manager: str = 'auto',
    ):
        self.host = host
        self.clock = clock or Clock()
        self.strategy = strategy or FixedInterval(DEFAULT_LOCK_POLL)
        self.timeout = timeout
        self._package_manager = None if package_manager == 'auto' else package_manager
        self._detected = package_manager != 'auto'
        self._stopped: List[str] = []

    @property
    def package_manager(self) -> Optional[str]:
        """'rpm', 'dpkg' or None when the host has neither database."""
        if not self._detected:
            if self.host.file_exists('/var/lib/rpm'):
                self._package_manager = 'rpm'
            elif self.host.file_exists('/var/lib/dpkg'):
                self._package_manager = 'dpkg'
            self._detected = True
            logger.debug(f"[{self.host.name}] Package manager: {self._package_manager or 'none'}")
        return self._package_manager

    @property
    def profile(self) -> Dict[str, List[str]]:
        return LOCK_PROFILES.get(self.package_manager or '', {'locks': [], 'processes': [], 'services': []})

    def _sudo(self, argv: List[str], timeout: int = 30):
        return self.host.run(CommandSpec(argv=argv, sudo=self.host.use_sudo, timeout=timeout))

    def lock_held(self) -> bool:
        """True while some process has one of the lock files open."""
        locks = self.profile['locks']
        if not locks:
            return False
        return self._sudo(['fuser'] + locks).ok

    def _probe_lock(self):
        held = self.lock_held()
        return not held, None, 'locked' if held else 'free'

    def wait_for_lock(self) -> LockWaitResult:
        """Poll until the lock is free; remove the lock files once the timeout expires."""
        manager = self.package_manager
        if manager is None:
            return LockWaitResult(package_manager=None, released=True)

        logger.info(f"🔍 Checking for {manager} locks on {self.host.name}...")
        outcome = poll_until(
            self._probe_lock,
            timeout=self.timeout,
            strategy=self.strategy,
            clock=self.clock,
            description=f"{manager} lock",
        )
        result = LockWaitResult(package_manager=manager, released=outcome.success,
                                waited=outcome.elapsed, attempts=outcome.attempts)
        if outcome.success:
            return result

        logger.warning(f"⏰ Timeout waiting for {manager} lock after {outcome.elapsed:.0f}s, "
                       f"forcing cleanup of stale lock files")
        for path in self.profile['locks']:
            self._sudo(['rm', '-f', path])
            result.cleared.append(path)
        return result

    def quiesce(self) -> None:
        """Kill competing package manager processes and stop services that restart them."""
        logger.info(f"🧹 Cleaning up hanging package processes on {self.host.name}...")
        for name in self.profile['processes']:
            self._sudo(['pkill', '-f', name])
        for service in self.profile['services']:
            if self.host.service_status(service) == 'active':
                self._sudo(['systemctl', 'stop', service], timeout=60)
                self._stopped.append(service)
        if self.profile['processes']:
            self.clock.sleep(SETTLE_SECONDS)

    def restore(self) -> None:
        """Start the services ``quiesce`` stopped."""
        if self._stopped:
            logger.info(f"🔄 Restarting system services on {self.host.name}: {', '.join(self._stopped)}")
        for service in self._stopped:
            self._sudo(['systemctl', 'start', service], timeout=60)
        self._stopped = []

    def acquire(self) -> LockWaitResult:
        result = self.wait_for_lock()
        self.quiesce()
        return result

    def release(self) -> None:
        self.restore()

    def __enter__(self) -> 'PackageLockGuard':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return None
