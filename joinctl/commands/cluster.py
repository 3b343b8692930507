import typer
from typing import List, Optional

from joinctl.commands.common import emit, finish, make_host
from joinctl.modules.k3s.config import get_config
from joinctl.modules.k3s.membership import ClusterVerifier, KubectlNodeSource, KubernetesNodeSource

cluster_app = typer.Typer()


@cluster_app.command("verify")
def verify_cluster(
    host: Optional[str] = typer.Option(None, help="Server address (SSH) to run kubectl on"),
    ssh_user: Optional[str] = typer.Option(None, help="SSH user"),
    ssh_key: Optional[str] = typer.Option(None, help="SSH private key"),
    kubeconfig: Optional[str] = typer.Option(None, help="Use the Kubernetes API with this kubeconfig"),
    expected_min_nodes: Optional[int] = typer.Option(None, help="Minimum node count"),
    agent: List[str] = typer.Option([], help="Agent node as name=address; logs are pulled when it is missing"),
    as_json: bool = typer.Option(False, "--json", help="Print the membership report as JSON"),
):
    """Check that the cluster has converged to the expected membership."""
    config = get_config()
    if kubeconfig:
        source = KubernetesNodeSource(kubeconfig)
    else:
        source = KubectlNodeSource(make_host(host, ssh_user, ssh_key))

    agents = {}
    for item in agent:
        name, _, address = item.partition('=')
        agents[name] = make_host(address or name, ssh_user, ssh_key)

    expected = expected_min_nodes or config.cluster.expected_min_nodes
    report = ClusterVerifier(source).verify_membership(expected, agents=agents)
    emit(report.to_dict(), as_json)
    if not as_json:
        for name, status in sorted(report.nodes.items()):
            typer.echo(f"{'✅' if status == 'Ready' else '⚠️ '} {name}: {status}")
        if report.ok:
            typer.echo(f"✅ Cluster has {report.node_count}/{expected} node(s)")
        else:
            typer.echo(f"❌ {report.error}")
            for name, logs in report.logs.items():
                typer.echo(f"📋 Logs from {name}:\n{logs}")
    finish(report.ok)
