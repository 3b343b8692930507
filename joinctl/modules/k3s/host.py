"""Operations on a K3S host (local or over SSH).

This is the thin adapter between the handshake and the machine it runs
against: service status and logs, file reads, kubectl calls and port probes.
Every method returns a plain value; command failures are reported as
"inactive", "not found" or False instead of raising, so polling loops can
keep going.
"""

import logging
import shlex
from typing import Dict, Optional

from .runner import CommandResult, CommandRunner, CommandSpec, LocalRunner
from .utils import parse_kubectl_output

logger = logging.getLogger("k3s.host")

K3S_API_PORT = 6443
SERVER_SERVICE = 'k3s'
AGENT_SERVICE = 'k3s-agent'


class K3sHost:
    """A host running (or about to run) K3S."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        use_sudo: bool = True,
        kubectl: str = 'k3s kubectl',
        api_port: int = K3S_API_PORT,
        request_timeout: int = 10,
    ):
        self.runner = runner or LocalRunner()
        self.use_sudo = use_sudo
        self.kubectl = shlex.split(kubectl)
        self.api_port = api_port
        self.request_timeout = request_timeout

    @property
    def name(self) -> str:
        return getattr(self.runner, 'name', 'host')

    def run(self, spec: CommandSpec) -> CommandResult:
        return self.runner.run(spec)

    def _spec(self, argv, **kwargs) -> CommandSpec:
        return CommandSpec(argv=list(argv), sudo=self.use_sudo, **kwargs)

    def ping(self) -> bool:
        """True if a trivial command succeeds (SSH reachable)."""
        result = self.run(CommandSpec(argv=['echo', 'ok'], timeout=15))
        return result.ok and 'ok' in result.stdout

    def read_file(self, path: str) -> Optional[str]:
        """File content, or None if it does not exist or cannot be read."""
        result = self.run(self._spec(['cat', path], timeout=30))
        if not result.ok:
            return None
        return result.stdout

    def file_exists(self, path: str) -> bool:
        return self.run(self._spec(['test', '-e', path], timeout=30)).ok

    def service_status(self, name: str) -> str:
        """'active' or 'inactive' (anything systemd reports besides active)."""
        result = self.run(self._spec(['systemctl', 'is-active', name], timeout=30))
        status = result.output.splitlines()[-1].strip() if result.output else ''
        return 'active' if status == 'active' else 'inactive'

    def service_logs(self, name: str, lines: int = 50) -> str:
        """Last ``lines`` lines of the unit's journal."""
        result = self.run(self._spec(
            ['journalctl', '-u', name, '--no-pager', '-n', str(lines)], timeout=60
        ))
        if not result.ok:
            return f"No service logs available for {name}: {result.stderr.strip()}"
        return result.stdout

    def kubectl_cmd(self, *args: str, token: Optional[str] = None) -> CommandSpec:
        """Build a kubectl invocation; a token travels as a secret, never in argv."""
        argv = self.kubectl + list(args) + [f"--request-timeout={self.request_timeout}s"]
        if token is None:
            return self._spec(argv, timeout=self.request_timeout + 20)
        script = 'exec "$@" --token="$K3S_AUTH_TOKEN"'
        return self._spec(['sh', '-c', script, 'kubectl'] + argv,
                          secret_env={'K3S_AUTH_TOKEN': token},
                          timeout=self.request_timeout + 20)

    def api_call(self, query: str = 'get nodes', token: Optional[str] = None) -> bool:
        """Run a read-only kubectl query; True if it succeeded."""
        result = self.run(self.kubectl_cmd(*shlex.split(query), token=token))
        if not result.ok:
            logger.debug(f"[{self.name}] kubectl {query} failed: {result.stderr.strip()}")
        return result.ok

    def list_nodes(self) -> Dict[str, str]:
        """Map of node name to STATUS column, empty if the API is not serving."""
        result = self.run(self.kubectl_cmd('get', 'nodes', '--no-headers'))
        if not result.ok:
            return {}
        rows = parse_kubectl_output('NAME STATUS ROLES AGE VERSION\n' + result.stdout)
        return {row['NAME']: row['STATUS'] for row in rows}

    def node_status(self, node_name: Optional[str] = None) -> str:
        """STATUS of this node (or the first node listed), 'NotReady' if unknown."""
        nodes = self.list_nodes()
        if not nodes:
            return 'NotReady'
        if node_name and node_name in nodes:
            return nodes[node_name]
        return next(iter(nodes.values()))

    def port_open(self, port: Optional[int] = None, host: str = 'localhost') -> bool:
        """TCP connect test run on the host itself."""
        port = port or self.api_port
        script = f'timeout 5 bash -c "echo >/dev/tcp/{host}/{int(port)}"'
        return self.run(CommandSpec(argv=['bash', '-c', script], timeout=15)).ok

    def cluster_info(self, lines: int = 2) -> str:
        """First lines of ``kubectl cluster-info`` for reports."""
        result = self.run(self.kubectl_cmd('cluster-info'))
        if not result.ok:
            return ''
        return '\n'.join(result.stdout.strip().splitlines()[:lines])
