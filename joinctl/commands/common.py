"""Shared builders for the command groups."""
import ipaddress
import socket
from typing import Any, Optional

import typer

from joinctl.config import Config
from joinctl.modules.k3s.catalog import CatalogStore
from joinctl.modules.k3s.channel import CatalogChannel, FileChannel, HttpChannel, PublicationChannel
from joinctl.modules.k3s.config import HandshakeConfig, get_config
from joinctl.modules.k3s.discovery import ScanChannel, SubnetScanner
from joinctl.modules.k3s.errors import ConfigurationError
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.runner import CommandSpec, LocalRunner, SSHRunner
from joinctl.utils import to_json

CHANNEL_TYPES = ('catalog', 'http', 'file', 'scan')


def make_host(
    address: Optional[str] = None,
    ssh_user: Optional[str] = None,
    ssh_key: Optional[str] = None,
    config: Optional[HandshakeConfig] = None,
) -> K3sHost:
    """Local host when no address is given, otherwise an SSH host."""
    config = config or get_config()
    if not address:
        return K3sHost(LocalRunner(default_timeout=config.ssh.command_timeout), use_sudo=config.ssh.use_sudo)
    runner = SSHRunner(
        address,
        ssh_user or config.ssh.user,
        key_path=ssh_key or config.ssh.key_path,
        port=config.ssh.port,
        connect_timeout=config.ssh.connect_timeout,
        command_timeout=config.ssh.command_timeout,
        strict_host_key=config.ssh.strict_host_key,
    )
    return K3sHost(runner, use_sudo=config.ssh.use_sudo)


def make_channel(
    kind: Optional[str] = None,
    config: Optional[HandshakeConfig] = None,
    url: Optional[str] = None,
    api_key: Optional[str] = None,
    directory: Optional[str] = None,
    subnet: Optional[str] = None,
    catalog_path: Optional[str] = None,
    host: Optional[K3sHost] = None,
) -> PublicationChannel:
    """Build the publication channel named by ``kind`` (or the configured one).

    Raises:
        ConfigurationError: If the channel type is unknown or lacks its settings
    """
    config = config or get_config()
    settings = config.channel
    kind = kind or settings.type
    if kind == 'catalog':
        return CatalogChannel(CatalogStore(catalog_path or Config.CATALOG_PATH or settings.catalog_path),
                              tag=settings.tag)
    if kind == 'http':
        base_url = url or settings.url
        if not base_url:
            raise ConfigurationError("The http channel needs --url or channel.url")
        return HttpChannel(base_url, api_key or settings.api_key or Config.API_KEY,
                           timeout=Config.API_TIMEOUT, tag=settings.tag)
    if kind == 'file':
        return FileChannel(directory or settings.directory, host=host)
    if kind == 'scan':
        network = subnet or settings.subnet
        if not network:
            raise ConfigurationError("The scan channel needs --subnet or channel.subnet")
        return ScanChannel(
            SubnetScanner(network),
            ssh_user=config.ssh.user,
            key_path=config.ssh.key_path,
            directory=directory or settings.directory,
            token_files=config.readiness.token_files,
            facts_file=config.cluster.facts_file,
            connect_timeout=config.ssh.connect_timeout,
            use_sudo=config.ssh.use_sudo,
        )
    raise ConfigurationError(f"Unknown channel type {kind!r}, expected one of {', '.join(CHANNEL_TYPES)}")


def detect_ip(host: K3sHost) -> str:
    """First address reported by ``hostname -I`` on the host."""
    result = host.run(CommandSpec(argv=['hostname', '-I'], timeout=15))
    if result.ok and result.output:
        return result.output.split()[0]
    return socket.gethostbyname(socket.gethostname())


def server_address(address: Optional[str], host: K3sHost) -> str:
    """IP address agents should use for a server reached at ``address``.

    Literal addresses are kept, names are resolved, and without an address
    (or when the name does not resolve) the host reports its own.
    """
    if address:
        try:
            return str(ipaddress.ip_address(address))
        except ValueError:
            pass
        try:
            return socket.gethostbyname(address)
        except socket.gaierror:
            pass
    return detect_ip(host)


def detect_hostname(host: K3sHost) -> str:
    result = host.run(CommandSpec(argv=['hostname', '-s'], timeout=15))
    return result.output if result.ok and result.output else socket.gethostname()


def emit(data: Any, as_json: bool) -> None:
    """Print a structured result as redacted JSON."""
    if as_json:
        typer.echo(to_json(data))


def finish(success: bool) -> None:
    """Exit 0 on success and 1 otherwise."""
    raise typer.Exit(code=0 if success else 1)
