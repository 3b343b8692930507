import logging
from types import SimpleNamespace

import pytest

from fakes import VALID_TOKEN, FakeRunner
from joinctl.logging import TokenRedactingFilter, mask_token
from joinctl.modules.k3s.errors import CommandError
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.runner import CommandSpec, SSHRunner
from joinctl.utils import redact_sensitive_data, to_json


def test_display_masks_secrets():
    spec = CommandSpec(argv=['k3s', 'kubectl', 'get', 'nodes'], env={'K3S_URL': 'https://10.0.1.5:6443'},
                       secret_env={'K3S_TOKEN': VALID_TOKEN}, sudo=True)
    shown = spec.display()
    assert VALID_TOKEN not in shown
    assert 'K3S_TOKEN=***' in shown
    assert shown.startswith('sudo K3S_URL=https://10.0.1.5:6443')


def test_render_sends_secrets_on_stdin():
    spec = CommandSpec(argv=['sh', '-c', 'echo "$K3S_TOKEN" | wc -c'], env={'A': 'b c'},
                       secret_env={'K3S_TOKEN': VALID_TOKEN}, sudo=True)
    command, stdin_data = spec.render()
    assert VALID_TOKEN not in command
    assert stdin_data == VALID_TOKEN + "\n"
    assert command.startswith('sudo -n sh -c')
    assert 'IFS= read -r K3S_TOKEN; export K3S_TOKEN;' in command
    assert "'A=b c'" in command


def test_render_without_secrets():
    command, stdin_data = CommandSpec(argv=['systemctl', 'is-active', 'k3s']).render()
    assert command == 'systemctl is-active k3s'
    assert stdin_data == ''


def test_check_raises_command_error():
    runner = FakeRunner(lambda line, spec: (2, '', 'boom'))
    with pytest.raises(CommandError) as exc:
        runner.check(CommandSpec(argv=['false']))
    assert exc.value.exit_status == 2
    assert 'boom' in exc.value.message


def test_kubectl_token_travels_as_secret():
    host = K3sHost(FakeRunner(), use_sudo=False)
    spec = host.kubectl_cmd('get', 'nodes', token=VALID_TOKEN)
    assert VALID_TOKEN not in ' '.join(spec.argv)
    assert spec.secret_env == {'K3S_AUTH_TOKEN': VALID_TOKEN}
    assert spec.argv[-1] == '--request-timeout=10s'


def test_host_reports_instead_of_raising():
    host = K3sHost(FakeRunner(lambda line, spec: (1, '', 'unit not found')), use_sudo=False)
    assert host.service_status('k3s') == 'inactive'
    assert host.read_file('/nope') is None
    assert host.list_nodes() == {}
    assert host.node_status() == 'NotReady'
    assert not host.port_open()
    assert 'No service logs available' in host.service_logs('k3s-agent')


class StubPool:
    def __init__(self):
        self.timeouts = []
        self.discarded = []

    def get_connection(self, **kwargs):
        def execute(command, stdin_data=None, timeout=None):
            self.timeouts.append(timeout)
            return 0, 'ok\n', ''
        return SimpleNamespace(execute=execute)

    def discard(self, host, username, port=22):
        self.discarded.append((host, username, port))


def test_ssh_runner_caps_timeout_and_releases_connection():
    pool = StubPool()
    runner = SSHRunner('10.0.1.5', 'ubuntu', pool=pool, max_timeout=4)

    assert runner.run(CommandSpec(argv=['cat', '/tmp/info'], timeout=30)).ok
    runner.close()

    assert pool.timeouts == [4]
    assert pool.discarded == [('10.0.1.5', 'ubuntu', 22)]


def test_token_redacting_filter():
    record = logging.LogRecord('k3s', logging.INFO, __file__, 1, "joining with %s", (VALID_TOKEN,), None)
    assert TokenRedactingFilter().filter(record)
    message = record.getMessage()
    assert VALID_TOKEN not in message
    assert mask_token(VALID_TOKEN) in message


def test_redact_sensitive_data():
    data = {'token': VALID_TOKEN, 'api_key': 'k', 'password': None,
            'nested': [{'note': f"token is {VALID_TOKEN}"}], 'server_url': 'https://10.0.1.5:6443'}
    redacted = redact_sensitive_data(data)
    assert redacted['token'] == '[REDACTED]'
    assert redacted['api_key'] == '[REDACTED]'
    assert redacted['password'] is None
    assert VALID_TOKEN not in redacted['nested'][0]['note']
    assert redacted['server_url'] == 'https://10.0.1.5:6443'
    assert VALID_TOKEN not in to_json(data)
