import typer
from typing import Optional

from joinctl.commands.common import detect_hostname, emit, finish, make_channel, make_host, server_address
from joinctl.modules.k3s.channel import Publisher
from joinctl.modules.k3s.config import get_config
from joinctl.modules.k3s.errors import HandshakeError
from joinctl.modules.k3s.handshake import server_handshake
from joinctl.modules.k3s.models import NodeIdentity
from joinctl.modules.k3s.readiness import ReadinessVerifier
from joinctl.modules.k3s.retry import FixedInterval
from joinctl.modules.k3s.token import CredentialStore

app = typer.Typer()


def _verifier(host, node_name: Optional[str], remote: bool) -> ReadinessVerifier:
    config = get_config().readiness
    return ReadinessVerifier(
        host,
        store=CredentialStore(host, config.token_files),
        node_name=node_name,
        service_poll=FixedInterval(config.service_interval),
        node_poll=FixedInterval(config.node_interval),
        node_max_attempts=config.node_max_attempts,
        token_poll=FixedInterval(config.token_interval),
        api_poll=FixedInterval(config.api_interval),
        api_max_attempts=config.api_max_attempts,
        check_ssh=remote and config.check_ssh,
    )


@app.command("verify")
def verify_server(
    host: Optional[str] = typer.Option(None, help="Server address (SSH); local when omitted"),
    ssh_user: Optional[str] = typer.Option(None, help="SSH user"),
    ssh_key: Optional[str] = typer.Option(None, help="SSH private key"),
    node_name: Optional[str] = typer.Option(None, help="Kubernetes node name of the server"),
    timeout: Optional[int] = typer.Option(None, help="Overall readiness timeout (30-600s)"),
    as_json: bool = typer.Option(False, "--json", help="Print the readiness report as JSON"),
):
    """Check that a server is ready to hand out its join token."""
    k3s_host = make_host(host, ssh_user, ssh_key)
    verifier = _verifier(k3s_host, node_name, remote=bool(host))
    try:
        report = verifier.verify_readiness(timeout or get_config().readiness.timeout)
    except HandshakeError as e:
        typer.echo(f"❌ {e.message}", err=True)
        finish(False)
    emit(report.to_dict(), as_json)
    if not as_json:
        if report.ready:
            typer.echo(f"✅ Server {k3s_host.name} is ready")
        else:
            typer.echo(f"❌ Server {k3s_host.name} not ready: gate '{report.failed_gate}' "
                       f"(last status: {report.last_status})")
    finish(report.ready)


@app.command("publish")
def publish_server(
    cluster_name: Optional[str] = typer.Option(None, help="Cluster name"),
    host: Optional[str] = typer.Option(None, help="Server address (SSH); local when omitted"),
    ssh_user: Optional[str] = typer.Option(None, help="SSH user"),
    ssh_key: Optional[str] = typer.Option(None, help="SSH private key"),
    server_node: Optional[str] = typer.Option(None, help="Server node name (default: hostname)"),
    server_ip: Optional[str] = typer.Option(None, help="Server IP (default: detected)"),
    server_fqdn: Optional[str] = typer.Option(None, help="Server FQDN (default: node name)"),
    primary: bool = typer.Option(False, "--primary", help="Mark this server as the primary"),
    tag: Optional[str] = typer.Option(None, help="Record tag (default: k3s_cluster_<name>)"),
    channel: Optional[str] = typer.Option(None, help="catalog, http, file or scan"),
    url: Optional[str] = typer.Option(None, help="Catalog API URL for the http channel"),
    api_key: Optional[str] = typer.Option(None, help="Catalog API key for the http channel"),
    directory: Optional[str] = typer.Option(None, help="Export directory for the file channel"),
    timeout: Optional[int] = typer.Option(None, help="Overall readiness timeout (30-600s)"),
    as_json: bool = typer.Option(False, "--json", help="Print the handshake trace as JSON"),
):
    """Verify server readiness, then publish its cluster information."""
    config = get_config()
    cluster_name = cluster_name or config.cluster.name
    if not cluster_name:
        typer.echo("❌ --cluster-name is required (or set cluster.name)", err=True)
        finish(False)

    k3s_host = make_host(host, ssh_user, ssh_key)
    try:
        publication = make_channel(channel, url=url, api_key=api_key, directory=directory,
                                   host=k3s_host if host else None)
        node = server_node or detect_hostname(k3s_host)
        identity = NodeIdentity(
            cluster_name=cluster_name,
            server_node=node,
            server_ip=server_ip or server_address(host, k3s_host),
            server_fqdn=server_fqdn,
            is_primary=primary,
            tag=tag or config.channel.tag,
        )
        trace = server_handshake(
            _verifier(k3s_host, node, remote=bool(host)),
            Publisher(publication, identity),
            timeout=timeout or config.readiness.timeout,
            facts_path=None if host else config.cluster.facts_file,
        )
    except HandshakeError as e:
        typer.echo(f"❌ {e.message}", err=True)
        finish(False)

    emit(trace.to_dict(), as_json)
    if not as_json:
        for step in trace.steps:
            typer.echo(f"{'✅' if step.success else '❌'} {step.name}: {step.detail}")
        if trace.success:
            typer.echo(f"🎉 Published {identity.key} ({trace.server_url})")
        else:
            typer.echo(f"❌ {trace.outcome.value}: {(trace.error or {}).get('message', '')}")
    finish(trace.success)


@app.command("retract")
def retract_server(
    cluster_name: str = typer.Option(..., help="Cluster name"),
    server_node: str = typer.Option(..., help="Server node name"),
    channel: Optional[str] = typer.Option(None, help="catalog, http, file or scan"),
    url: Optional[str] = typer.Option(None, help="Catalog API URL for the http channel"),
    api_key: Optional[str] = typer.Option(None, help="Catalog API key for the http channel"),
    directory: Optional[str] = typer.Option(None, help="Export directory for the file channel"),
):
    """Remove a server's published cluster information."""
    try:
        publication = make_channel(channel, url=url, api_key=api_key, directory=directory)
        removed = publication.retract(cluster_name, server_node)
    except (HandshakeError, OSError) as e:
        typer.echo(f"❌ {e}", err=True)
        finish(False)
    typer.echo(f"🗑️  Retracted {cluster_name}_{server_node}" if removed
               else f"Nothing published for {cluster_name}_{server_node}")
    finish(True)
