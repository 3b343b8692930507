import pytest

from fakes import VALID_TOKEN, FakeClock, FakeRunner
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.installer import AgentInstaller, JoinCommandBuilder, JoinSpec
from joinctl.modules.k3s.models import NodeType


def test_agent_command_carries_token_as_secret():
    spec = JoinCommandBuilder().build(JoinSpec(server_url='https://10.0.1.5:6443', token=VALID_TOKEN))

    assert spec.argv[:2] == ['bash', '-c']
    assert spec.argv[-2:] == ['https://get.k3s.io', 'agent']
    assert spec.env == {'K3S_URL': 'https://10.0.1.5:6443'}
    assert spec.secret_env == {'K3S_TOKEN': VALID_TOKEN}
    assert spec.sudo
    assert VALID_TOKEN not in spec.display()
    assert VALID_TOKEN not in spec.render()[0]


def test_server_command_with_exec_args():
    spec = JoinCommandBuilder(use_sudo=False).build(
        JoinSpec(node_type=NodeType.SERVER, version='v1.28.5+k3s1', exec_args=['--cluster-init']))

    assert spec.argv[-3:] == ['https://get.k3s.io', 'server', '--cluster-init']
    assert spec.env == {'INSTALL_K3S_VERSION': 'v1.28.5+k3s1'}
    assert spec.secret_env == {}


@pytest.mark.parametrize('server_url, token', [(None, VALID_TOKEN), ('https://10.0.1.5:6443', None)])
def test_agent_command_needs_url_and_token(server_url, token):
    with pytest.raises(ValueError):
        JoinCommandBuilder().build(JoinSpec(server_url=server_url, token=token))


def test_verify_starts_inactive_agent_once():
    state = {'active': False}
    clock = FakeClock()

    def handler(line, spec):
        if line.startswith('systemctl list-unit-files'):
            return 0, 'k3s-agent.service disabled\n', ''
        if line == 'systemctl is-active k3s-agent':
            return (0, 'active\n', '') if state['active'] else (3, 'inactive\n', '')
        if line == 'systemctl start k3s-agent':
            state['active'] = True
        if '/dev/tcp/' in line:
            return 1, '', 'Connection refused'
        return 0, '', ''

    runner = FakeRunner(handler)
    verification = AgentInstaller(K3sHost(runner), clock=clock).verify('https://10.0.1.5:6443')

    assert verification.ok
    assert not verification.server_reachable
    assert clock.sleeps == [10]
    assert len(runner.lines('systemctl start k3s-agent')) == 1


def test_verify_reports_missing_unit():
    verification = AgentInstaller(K3sHost(FakeRunner(lambda line, spec: (1, '', ''))),
                                  clock=FakeClock()).verify()
    assert not verification.unit_present
    assert not verification.ok


def test_cleanup_never_raises():
    runner = FakeRunner(lambda line, spec: (5, '', 'Unit k3s-agent.service not loaded.'))
    AgentInstaller(K3sHost(runner), clock=FakeClock()).cleanup()
    assert [spec.argv[0] for spec in runner.calls] == ['systemctl', 'rm', 'rm', 'systemctl']
