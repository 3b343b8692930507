"""K3S installation through the upstream install script.

The join credential never appears in a command line: :class:`JoinCommandBuilder`
produces a :class:`CommandSpec` where ``K3S_TOKEN`` is a secret environment
variable and everything else is a plain argument or variable.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .host import AGENT_SERVICE, K3S_API_PORT, SERVER_SERVICE, K3sHost
from .models import NodeType
from .retry import Clock
from .runner import CommandSpec

logger = logging.getLogger("k3s.installer")

INSTALLER_URL = 'https://get.k3s.io'
K3S_BINARY = '/usr/local/bin/k3s'
INSTALL_TIMEOUT = 600


@dataclass
class JoinSpec:
    """Everything the install script needs to set up a node."""
    node_type: NodeType = NodeType.AGENT
    server_url: Optional[str] = None
    token: Optional[str] = None
    version: Optional[str] = None
    exec_args: List[str] = field(default_factory=list)
    installer_url: str = INSTALLER_URL


class JoinCommandBuilder:
    """Builds typed install commands for server and agent nodes."""

    def __init__(self, use_sudo: bool = True, timeout: int = INSTALL_TIMEOUT):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def environment(self, spec: JoinSpec) -> Dict[str, str]:
        env = {}
        if spec.server_url:
            env['K3S_URL'] = spec.server_url
        if spec.version:
            env['INSTALL_K3S_VERSION'] = spec.version
        return env

    def build(self, spec: JoinSpec) -> CommandSpec:
        """Install command for ``spec``.

        Raises:
            ValueError: If an agent spec lacks a server URL or token
        """
        if spec.node_type == NodeType.AGENT and not (spec.server_url and spec.token):
            raise ValueError("Agent installs need both a server URL and a token")
        script = 'curl -sfL "$1" | sh -s - "$2" "${@:3}"'
        return CommandSpec(
            argv=['bash', '-c', script, 'k3s-install', spec.installer_url, spec.node_type.value] + list(spec.exec_args),
            env=self.environment(spec),
            secret_env={'K3S_TOKEN': spec.token} if spec.token else {},
            sudo=self.use_sudo,
            timeout=self.timeout,
        )


@dataclass
class InstallVerification:
    """Post-install checks on an agent."""
    unit_present: bool = False
    service_active: bool = False
    server_reachable: bool = False
    logs: str = ''

    @property
    def ok(self) -> bool:
        return self.unit_present and self.service_active


class AgentInstaller:
    """Installs, verifies and cleans up K3S on a single host."""

    def __init__(
        self,
        host: K3sHost,
        builder: Optional[JoinCommandBuilder] = None,
        clock: Optional[Clock] = None,
        binary_path: str = K3S_BINARY,
        start_wait: float = 10,
    ):
        self.host = host
        self.builder = builder or JoinCommandBuilder(use_sudo=host.use_sudo)
        self.clock = clock or Clock()
        self.binary_path = binary_path
        self.start_wait = start_wait

    @staticmethod
    def service_for(node_type: NodeType) -> str:
        return SERVER_SERVICE if node_type == NodeType.SERVER else AGENT_SERVICE

    @staticmethod
    def unit_path(service: str) -> str:
        return f"/etc/systemd/system/{service}.service"

    def service_status(self, name: str = AGENT_SERVICE) -> str:
        return self.host.service_status(name)

    def service_logs(self, name: str = AGENT_SERVICE, lines: int = 50) -> str:
        return self.host.service_logs(name, lines)

    def is_installed(self, node_type: NodeType = NodeType.AGENT) -> bool:
        return (self.host.file_exists(self.binary_path)
                and self.service_status(self.service_for(node_type)) == 'active')

    def install(
        self,
        node_type: NodeType = NodeType.AGENT,
        version: Optional[str] = None,
        server_url: Optional[str] = None,
        token: Optional[str] = None,
    ) -> str:
        """Install K3S and return the path of the installed binary.

        A node whose binary exists and whose service is already active is
        left untouched.

        Raises:
            CommandError: If the install script fails
        """
        if self.is_installed(node_type):
            logger.info(f"✅ K3S {node_type.value} is already installed and running on {self.host.name}")
            return self.binary_path

        spec = JoinSpec(node_type=node_type, server_url=server_url, token=token, version=version)
        command = self.builder.build(spec)
        logger.info(f"📦 Installing K3S {node_type.value} on {self.host.name}"
                    f"{f' (version {version})' if version else ''}...")
        logger.debug(f"Install command: {command.display()}")
        self.host.runner.check(command)

        result = self.host.run(CommandSpec(argv=['sh', '-c', 'command -v k3s'], timeout=30))
        path = result.output or self.binary_path
        logger.info(f"✅ K3S {node_type.value} installed at {path} on {self.host.name}")
        return path

    def cleanup(self, node_type: NodeType = NodeType.AGENT) -> None:
        """Remove a partial installation. Failures are logged, never raised."""
        service = self.service_for(node_type)
        logger.info(f"🧹 Cleaning up partial K3S {node_type.value} installation on {self.host.name}")
        steps = [
            ['systemctl', 'stop', service],
            ['rm', '-f', self.binary_path],
            ['rm', '-f', self.unit_path(service)],
            ['systemctl', 'daemon-reload'],
        ]
        for argv in steps:
            result = self.host.run(CommandSpec(argv=argv, sudo=self.host.use_sudo, timeout=60))
            if not result.ok:
                logger.debug(f"Cleanup step '{' '.join(argv)}' failed: {result.stderr.strip()}")

    def verify(self, server_url: Optional[str] = None, node_type: NodeType = NodeType.AGENT) -> InstallVerification:
        """Check the unit exists and is active (starting it once), then test reachability of the server."""
        service = self.service_for(node_type)
        verification = InstallVerification()

        units = self.host.run(CommandSpec(argv=['systemctl', 'list-unit-files', f"{service}.service"],
                                          sudo=self.host.use_sudo, timeout=30))
        verification.unit_present = units.ok and service in units.stdout
        if not verification.unit_present:
            logger.error(f"❌ K3S {node_type.value} service not found on {self.host.name}")
            return verification

        if self.service_status(service) != 'active':
            logger.warning(f"⚠️  {service} is not active on {self.host.name}, attempting to start...")
            self.host.run(CommandSpec(argv=['systemctl', 'start', service], sudo=self.host.use_sudo, timeout=60))
            self.clock.sleep(self.start_wait)
        verification.service_active = self.service_status(service) == 'active'
        if not verification.service_active:
            verification.logs = self.service_logs(service, 10)
            logger.error(f"❌ Failed to start {service} on {self.host.name}")
            return verification

        if server_url:
            parsed = urlparse(server_url)
            verification.server_reachable = self.host.port_open(parsed.port or K3S_API_PORT, parsed.hostname)
            if verification.server_reachable:
                logger.info(f"✅ Can reach K3S server at {parsed.hostname}:{parsed.port or K3S_API_PORT}")
            else:
                logger.warning(f"⚠️  Cannot reach K3S server at {parsed.hostname}:{parsed.port or K3S_API_PORT}, "
                               f"this might be a network/firewall issue")
        return verification
