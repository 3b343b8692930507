import pytest

from fakes import VALID_TOKEN, WALL_EPOCH, FakeClock, make_server_runner
from joinctl.modules.k3s.config import HandshakeConfig, set_config
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.models import ClusterToken, NodeIdentity


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity():
    return NodeIdentity(cluster_name='prod', server_node='server-1', server_ip='10.0.1.5',
                        server_fqdn='server-1.example.internal', is_primary=True)


@pytest.fixture
def record(identity):
    return ClusterToken.from_identity(identity, VALID_TOKEN, export_time=WALL_EPOCH)


@pytest.fixture
def server_host(clock):
    return K3sHost(make_server_runner(clock), use_sudo=False)


@pytest.fixture(autouse=True)
def default_config(tmp_path, monkeypatch):
    """Isolated configuration for every test."""
    monkeypatch.setenv('HOME', str(tmp_path))
    config = HandshakeConfig()
    config.channel.catalog_path = str(tmp_path / 'catalog.yaml')
    config.collector.state_file = str(tmp_path / 'agent_state.yaml')
    config.cluster.facts_file = str(tmp_path / 'k3s_server_info.yaml')
    set_config(config)
    yield config
    set_config(None)
