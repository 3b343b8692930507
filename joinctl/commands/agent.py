import typer
from typing import Optional

from joinctl.commands.common import emit, finish, make_channel, make_host
from joinctl.logging import mask_token
from joinctl.modules.k3s.collector import Collector
from joinctl.modules.k3s.config import get_config
from joinctl.modules.k3s.errors import CollectionTimeout, HandshakeError, JoinFailed, PayloadValidationError
from joinctl.modules.k3s.handshake import agent_handshake
from joinctl.modules.k3s.installer import AgentInstaller
from joinctl.modules.k3s.join import JoinOrchestrator
from joinctl.modules.k3s.locks import PackageLockGuard
from joinctl.modules.k3s.retry import FixedInterval, make_strategy
from joinctl.modules.k3s.state import AgentStateStore

app = typer.Typer()


def _collector(channel_kind, url, api_key, directory, subnet) -> Collector:
    config = get_config()
    settings = config.collector
    return Collector(
        make_channel(channel_kind, url=url, api_key=api_key, directory=directory, subnet=subnet),
        state_store=AgentStateStore(settings.state_file),
        strategy=make_strategy(settings.strategy, settings.interval, settings.max_delay, settings.jitter),
        max_age=settings.max_age,
    )


def _orchestrator(host, ssh_user, ssh_key, fix_locks: bool) -> JoinOrchestrator:
    config = get_config()
    k3s_host = make_host(host, ssh_user, ssh_key)
    guard = None
    if fix_locks and config.locks.enabled:
        guard = PackageLockGuard(k3s_host, strategy=FixedInterval(config.locks.interval),
                                 timeout=config.locks.timeout, package_manager=config.locks.package_manager)
    return JoinOrchestrator(AgentInstaller(k3s_host), lock_guard=guard, log_lines=config.join.log_lines)


@app.command("collect")
def collect_cluster_info(
    cluster_name: Optional[str] = typer.Option(None, help="Cluster name"),
    channel: Optional[str] = typer.Option(None, help="catalog, http, file or scan"),
    url: Optional[str] = typer.Option(None, help="Catalog API URL for the http channel"),
    api_key: Optional[str] = typer.Option(None, help="Catalog API key for the http channel"),
    directory: Optional[str] = typer.Option(None, help="Export directory for the file channel"),
    subnet: Optional[str] = typer.Option(None, help="Subnet to scan for servers"),
    timeout: Optional[int] = typer.Option(None, help="Collection timeout in seconds"),
    wait: Optional[bool] = typer.Option(None, "--wait/--no-wait", help="Fail when nothing is found"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Wait for a server's cluster information and store it locally."""
    config = get_config()
    cluster_name = cluster_name or config.cluster.name
    if not cluster_name:
        typer.echo("❌ --cluster-name is required (or set cluster.name)", err=True)
        finish(False)
    wait_for_token = config.collector.wait_for_token if wait is None else wait

    try:
        result = _collector(channel, url, api_key, directory, subnet).collect(
            cluster_name, timeout=timeout or config.collector.timeout, wait_for_token=wait_for_token)
    except (CollectionTimeout, PayloadValidationError) as e:
        emit(e.to_dict(), as_json)
        typer.echo(f"❌ {e.message}", err=True)
        finish(False)
    except HandshakeError as e:
        typer.echo(f"❌ {e.message}", err=True)
        finish(False)

    data = {
        'collected': result.collected,
        'cluster_name': cluster_name,
        'server_url': result.server_url,
        'server_node': result.token.server_node if result.token else None,
        'attempts': result.attempt.attempts,
        'elapsed': round(result.attempt.elapsed, 1),
        'rejected': result.attempt.rejected,
        'states': [s.value for s in result.attempt.states],
    }
    emit(data, as_json)
    if not as_json:
        if result.collected:
            typer.echo(f"✅ Collected {cluster_name}: server_url={result.server_url}, "
                       f"token={mask_token(result.token.token)}")
        else:
            typer.echo(f"⚠️  No cluster info for {cluster_name}, proceeding without automation")
    finish(True)


@app.command("join")
def join_cluster(
    cluster_name: Optional[str] = typer.Option(None, help="Cluster name to collect credentials for"),
    server_url: Optional[str] = typer.Option(None, help="Join this server directly (skips collection)"),
    token: Optional[str] = typer.Option(None, envvar="K3S_TOKEN", help="Join token (with --server-url)"),
    host: Optional[str] = typer.Option(None, help="Agent address (SSH); local when omitted"),
    ssh_user: Optional[str] = typer.Option(None, help="SSH user"),
    ssh_key: Optional[str] = typer.Option(None, help="SSH private key"),
    channel: Optional[str] = typer.Option(None, help="catalog, http, file or scan"),
    url: Optional[str] = typer.Option(None, help="Catalog API URL for the http channel"),
    api_key: Optional[str] = typer.Option(None, help="Catalog API key for the http channel"),
    directory: Optional[str] = typer.Option(None, help="Export directory for the file channel"),
    subnet: Optional[str] = typer.Option(None, help="Subnet to scan for servers"),
    timeout: Optional[int] = typer.Option(None, help="Collection timeout in seconds"),
    max_attempts: Optional[int] = typer.Option(None, help="Join attempts"),
    backoff: Optional[int] = typer.Option(None, help="Seconds between join attempts"),
    version: Optional[str] = typer.Option(None, help="K3S version to install"),
    fix_locks: bool = typer.Option(True, "--fix-locks/--no-fix-locks", help="Handle package manager locks"),
    as_json: bool = typer.Option(False, "--json", help="Print the handshake trace as JSON"),
):
    """Join an agent to the cluster, collecting credentials first unless given."""
    config = get_config()
    attempts = max_attempts or config.join.max_attempts
    delay = config.join.backoff if backoff is None else backoff
    orchestrator = _orchestrator(host, ssh_user, ssh_key, fix_locks)

    if server_url:
        if not token:
            typer.echo("❌ --token (or K3S_TOKEN) is required with --server-url", err=True)
            finish(False)
        try:
            result = orchestrator.join(server_url, token, max_attempts=attempts, backoff=delay,
                                       version=version or config.join.version)
        except JoinFailed as e:
            emit(e.to_dict(), as_json)
            typer.echo(f"❌ {e.message}", err=True)
            if e.logs:
                typer.echo(e.logs, err=True)
            finish(False)
        except HandshakeError as e:
            typer.echo(f"❌ {e.message}", err=True)
            finish(False)
        emit({'joined': True, 'server_url': result.server_url, 'attempts': result.attempts}, as_json)
        if not as_json:
            typer.echo(f"✅ Joined {result.server_url} after {result.attempts} attempt(s)")
        finish(True)

    cluster_name = cluster_name or config.cluster.name
    if not cluster_name:
        typer.echo("❌ --cluster-name or --server-url is required", err=True)
        finish(False)
    try:
        trace = agent_handshake(
            _collector(channel, url, api_key, directory, subnet),
            orchestrator,
            cluster_name,
            collect_timeout=timeout or config.collector.timeout,
            wait_for_token=config.collector.wait_for_token,
            max_attempts=attempts,
            backoff=delay,
            version=version or config.join.version,
        )
    except HandshakeError as e:
        typer.echo(f"❌ {e.message}", err=True)
        finish(False)

    emit(trace.to_dict(), as_json)
    if not as_json:
        for step in trace.steps:
            typer.echo(f"{'✅' if step.success else '❌'} {step.name}: {step.detail}")
        typer.echo(f"Outcome: {trace.outcome.value}")
    finish(trace.success)
