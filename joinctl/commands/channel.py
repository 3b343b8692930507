import typer
from typing import Optional

from joinctl.commands.common import emit, finish, make_channel
from joinctl.config import Config
from joinctl.modules.k3s.codec import decode_payload
from joinctl.modules.k3s.errors import HandshakeError
from joinctl.utils import redact_sensitive_data

app = typer.Typer()


@app.command("serve")
def serve_catalog(
    host: str = typer.Option(Config.API_HOST, help="Address to bind"),
    port: int = typer.Option(Config.API_PORT, help="Port to listen on"),
    catalog: Optional[str] = typer.Option(None, help="Catalog file (in-memory when omitted)"),
    api_key: Optional[str] = typer.Option(None, envvar="JOINCTL_API_KEY", help="API key clients must send"),
):
    """Serve the catalog API agents and servers exchange cluster information through."""
    import uvicorn

    from joinctl.api.main import create_app
    from joinctl.modules.k3s.catalog import CatalogStore

    store = CatalogStore(catalog or Config.CATALOG_PATH or None)
    typer.echo(f"🚀 Serving catalog on http://{host}:{port} ({store.path or 'in-memory'})")
    uvicorn.run(create_app(store, api_key=api_key), host=host, port=port)


@app.command("list")
def list_records(
    cluster_name: str = typer.Option(..., help="Cluster name"),
    channel: Optional[str] = typer.Option(None, help="catalog, http, file or scan"),
    url: Optional[str] = typer.Option(None, help="Catalog API URL for the http channel"),
    api_key: Optional[str] = typer.Option(None, help="Catalog API key for the http channel"),
    directory: Optional[str] = typer.Option(None, help="Export directory for the file channel"),
    subnet: Optional[str] = typer.Option(None, help="Subnet to scan for servers"),
    as_json: bool = typer.Option(False, "--json", help="Print records as JSON"),
):
    """List the cluster information published for a cluster (tokens redacted)."""
    try:
        payloads = make_channel(channel, url=url, api_key=api_key, directory=directory,
                                subnet=subnet).query(cluster_name)
    except (HandshakeError, OSError) as e:
        typer.echo(f"❌ {e}", err=True)
        finish(False)

    rows = []
    for payload in payloads:
        try:
            data = decode_payload(payload)
        except HandshakeError as e:
            data = {'error': str(e)}
        rows.append({'source': payload.source, 'format': payload.format.value,
                     **redact_sensitive_data(data)})
    emit(rows, as_json)
    if not as_json:
        if not rows:
            typer.echo(f"No cluster information published for {cluster_name}")
        for row in rows:
            typer.echo(f"📄 {row['source']}: server_url={row.get('server_url')} "
                       f"server_node={row.get('server_node')} export_time={row.get('export_time')}")
    finish(True)
