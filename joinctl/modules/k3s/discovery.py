"""Server discovery for agents with no shared catalog.

Agents probe every address of a subnet for an open K3S API port, rank the
responders by connect latency and then fetch cluster information from them
over SSH: the exported info files first, the raw token file as a fallback.

The raw token is only offered when the server's facts file names the wanted
cluster and the server passes every readiness gate right now.
"""

import ipaddress
import logging
import socket
import time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import yaml

from .channel import FileChannel, PublicationChannel
from .host import K3S_API_PORT, K3sHost
from .models import ClusterToken, Payload, PayloadFormat
from .readiness import ReadinessVerifier
from .runner import CommandRunner, SSHRunner
from .state import DEFAULT_SERVER_FACTS
from .token import CredentialStore

logger = logging.getLogger("k3s.discovery")

# (host, port, timeout) -> connected socket
Connector = Callable[[Tuple[str, int], float], socket.socket]

# (ip, seconds left or None) -> runner for that host
RunnerFactory = Callable[[str, Optional[float]], CommandRunner]


def _remaining(deadline: Optional[float]) -> Optional[float]:
    return None if deadline is None else deadline - time.monotonic()


def _remote_path(path: str) -> str:
    # SSH sessions start in the login user's home directory
    return path[2:] if path.startswith('~/') else path


class SubnetScanner:
    """Finds hosts with the K3S API port open."""

    def __init__(
        self,
        subnet: str,
        port: int = K3S_API_PORT,
        connect_timeout: float = 1.0,
        max_hosts: int = 1024,
        exclude: Iterable[str] = (),
        connector: Optional[Connector] = None,
    ):
        self.network = ipaddress.ip_network(subnet, strict=False)
        self.port = port
        self.connect_timeout = connect_timeout
        self.max_hosts = max_hosts
        self.exclude = set(exclude)
        self.connector = connector or socket.create_connection

    def candidates(self) -> List[str]:
        hosts = [str(ip) for ip in self.network.hosts()] or [str(self.network.network_address)]
        return [ip for ip in hosts if ip not in self.exclude][:self.max_hosts]

    def probe(self, ip: str, timeout: Optional[float] = None) -> Optional[float]:
        """Connect latency in seconds, or None if the port is closed."""
        start = time.monotonic()
        try:
            sock = self.connector((ip, self.port), timeout or self.connect_timeout)
        except OSError:
            return None
        sock.close()
        return time.monotonic() - start

    def scan(self, timeout: Optional[float] = None) -> List[Tuple[str, float]]:
        """Responding hosts ordered by latency, fastest first.

        With ``timeout`` the scan stops probing once that many seconds have
        passed and each connect is capped at the time left.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        found = []
        for ip in self.candidates():
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                logger.warning(f"⚠️  Scan of {self.network} stopped at {ip}: time is up")
                break
            connect_timeout = self.connect_timeout if remaining is None else min(self.connect_timeout, remaining)
            latency = self.probe(ip, connect_timeout)
            if latency is not None:
                logger.debug(f"Port {self.port} open on {ip} ({latency * 1000:.1f}ms)")
                found.append((ip, latency))
        found.sort(key=lambda item: item[1])
        logger.info(f"🔍 Found {len(found)} host(s) with port {self.port} open in {self.network}")
        return found


class ScanChannel(PublicationChannel):
    """Read side of the file channel for agents that do not know the server.

    Publishing writes to the local file drop.
    """

    name = 'scan'

    def __init__(
        self,
        scanner: SubnetScanner,
        ssh_user: str = 'ubuntu',
        key_path: Optional[str] = None,
        directory: str = '/tmp',
        token_files: Optional[Sequence[str]] = None,
        facts_file: str = DEFAULT_SERVER_FACTS,
        runner_factory: Optional[RunnerFactory] = None,
        connect_timeout: int = 10,
        use_sudo: bool = True,
    ):
        self.scanner = scanner
        self.directory = directory
        self.token_files = token_files
        self.facts_file = facts_file
        self.use_sudo = use_sudo
        self.runner_factory = runner_factory or (
            lambda ip, timeout: SSHRunner(
                ip, ssh_user, key_path=key_path,
                connect_timeout=connect_timeout if timeout is None else max(1, min(connect_timeout, timeout)),
                max_timeout=None if timeout is None else max(1, timeout),
            )
        )
        self.local = FileChannel(directory)

    def publish(self, record: ClusterToken) -> str:
        return self.local.publish(record)

    def retract(self, cluster_name: str, server_node: str) -> bool:
        return self.local.retract(cluster_name, server_node)

    def _server_facts(self, host: K3sHost) -> dict:
        content = host.read_file(_remote_path(self.facts_file))
        if not content:
            return {}
        try:
            facts = yaml.safe_load(content)
        except yaml.YAMLError as e:
            logger.warning(f"⚠️  Unreadable server facts on {host.name}: {e}")
            return {}
        return facts if isinstance(facts, dict) else {}

    def _from_token_file(self, ip: str, host: K3sHost, cluster_name: str) -> Optional[Payload]:
        facts = self._server_facts(host)
        if facts.get('cluster_name') != cluster_name:
            logger.debug(f"{ip} does not declare cluster {cluster_name}, skipping its token file")
            return None

        report = ReadinessVerifier(host, store=CredentialStore(host, self.token_files)).verify_once()
        if not report.ready:
            logger.info(f"Server {ip} is not ready yet (gate {report.failed_gate}: {report.last_status})")
            return None

        logger.info(f"Retrieved raw token from ready server {ip}")
        return Payload(
            source=f"{ip}:token-file",
            format=PayloadFormat.RECORD,
            body={
                'cluster_name': facts['cluster_name'],
                'server_url': f"https://{ip}:{self.scanner.port}",
                'server_ip': ip,
                'server_fqdn': ip,
                'server_node': facts.get('server_node') or ip,
                'token': report.token,
            },
        )

    def _query_host(self, ip: str, runner: CommandRunner, cluster_name: str) -> List[Payload]:
        host = K3sHost(runner, use_sudo=self.use_sudo)
        found = FileChannel(self.directory, host=host).query(cluster_name)
        if found:
            return found
        fallback = self._from_token_file(ip, host, cluster_name)
        return [fallback] if fallback else []

    def query(self, cluster_name: str, timeout: Optional[float] = None) -> List[Payload]:
        deadline = None if timeout is None else time.monotonic() + timeout
        payloads: List[Payload] = []
        for ip, _latency in self.scanner.scan(timeout):
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                break
            runner = self.runner_factory(ip, remaining)
            try:
                payloads.extend(self._query_host(ip, runner, cluster_name))
            finally:
                runner.close()
        return payloads
