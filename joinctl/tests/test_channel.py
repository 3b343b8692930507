import base64
import os
from dataclasses import replace

import pytest

from fakes import VALID_TOKEN, WALL_EPOCH, FakeClock, FakeRunner
from joinctl.modules.k3s.catalog import CatalogStore
from joinctl.modules.k3s.channel import CatalogChannel, FileChannel, Publisher
from joinctl.modules.k3s.errors import PublicationRefused
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.models import PayloadFormat, ReadinessReport, ReadinessState


def _ready_report(token=VALID_TOKEN):
    report = ReadinessReport(token=token)
    report.advance(ReadinessState.READY)
    return report


def test_republish_replaces_record(tmp_path, record):
    store = CatalogStore(tmp_path / 'catalog.yaml')
    channel = CatalogChannel(store)

    channel.publish(record)
    channel.publish(replace(record, export_time=WALL_EPOCH + 60))

    assert len(store) == 1
    assert store.get('prod_server-1').export_time == WALL_EPOCH + 60
    assert os.stat(tmp_path / 'catalog.yaml').st_mode & 0o777 == 0o600


def test_ha_servers_publish_side_by_side(tmp_path, record):
    channel = CatalogChannel(CatalogStore(tmp_path / 'catalog.yaml'))
    channel.publish(record)
    channel.publish(replace(record, server_node='server-2', server_ip='10.0.1.6',
                            server_url='https://10.0.1.6:6443', is_primary=False))
    channel.publish(replace(record, cluster_name='staging'))

    payloads = channel.query('prod')
    assert sorted(p.source for p in payloads) == ['catalog:prod_server-1', 'catalog:prod_server-2']
    assert all(p.format == PayloadFormat.RECORD for p in payloads)


def test_catalog_survives_reload(tmp_path, record):
    CatalogChannel(CatalogStore(tmp_path / 'catalog.yaml')).publish(record)
    assert CatalogStore(tmp_path / 'catalog.yaml').get(record.key) == record


def test_tag_filter(tmp_path, record):
    store = CatalogStore(tmp_path / 'catalog.yaml')
    store.put(record)
    assert CatalogChannel(store, tag='k3s_cluster_prod').query('prod')
    assert CatalogChannel(store, tag='other').query('prod') == []


def test_retract(tmp_path, record):
    channel = CatalogChannel(CatalogStore())
    channel.publish(record)
    assert channel.retract('prod', 'server-1')
    assert not channel.retract('prod', 'server-1')
    assert channel.query('prod') == []


def test_file_channel_writes_both_encodings(tmp_path, record):
    channel = FileChannel(str(tmp_path))
    channel.publish(record)

    yaml_path, sh_path = channel.paths('prod', 'server-1')
    assert yaml_path.endswith('k3s_cluster_info_prod_server-1.yaml')
    assert os.stat(yaml_path).st_mode & 0o777 == 0o644
    assert os.stat(sh_path).st_mode & 0o777 == 0o755

    payloads = channel.query('prod')
    assert len(payloads) == 1
    assert payloads[0].format == PayloadFormat.YAML

    os.unlink(yaml_path)
    assert channel.query('prod')[0].format == PayloadFormat.SHELL

    assert channel.retract('prod', 'server-1')
    assert channel.query('prod') == []


def test_file_channel_ignores_other_clusters(tmp_path, record):
    channel = FileChannel(str(tmp_path))
    channel.publish(replace(record, cluster_name='staging'))
    (tmp_path / 'unrelated.yaml').write_text('a: 1\n')
    assert channel.query('prod') == []


def test_remote_file_channel_keeps_token_out_of_argv(record):
    runner = FakeRunner()
    channel = FileChannel('/tmp', host=K3sHost(runner, use_sudo=True))
    channel.publish(record)

    writes = [spec for spec in runner.calls if 'K3S_INFO_B64' in spec.secret_env]
    assert len(writes) == 2
    for spec in writes:
        assert VALID_TOKEN not in ' '.join(spec.argv)
        assert spec.sudo
    assert VALID_TOKEN in base64.b64decode(writes[0].secret_env['K3S_INFO_B64']).decode()
    assert writes[0].argv[-2] == '/tmp/k3s_cluster_info_prod_server-1.yaml'
    assert writes[1].argv[-1] == '755'


def test_publisher_refuses_unready_report(identity):
    store = CatalogStore()
    publisher = Publisher(CatalogChannel(store), identity, clock=FakeClock())

    report = ReadinessReport(token=VALID_TOKEN)
    report.advance(ReadinessState.TOKEN_AUTHENTICATED)
    with pytest.raises(PublicationRefused):
        publisher.publish(report)
    assert len(store) == 0


def test_publisher_exports_verified_token(identity):
    store = CatalogStore()
    published = Publisher(CatalogChannel(store), identity, clock=FakeClock(30)).publish(_ready_report())

    assert published.key == 'prod_server-1'
    assert published.export_time == WALL_EPOCH + 30
    assert published.server_url == 'https://10.0.1.5:6443'
    assert published.tag == 'k3s_cluster_prod'
    assert store.get('prod_server-1') == published


def test_publisher_retract(identity):
    store = CatalogStore()
    publisher = Publisher(CatalogChannel(store), identity, clock=FakeClock())
    publisher.publish(_ready_report())
    assert publisher.retract()
    assert len(store) == 0
