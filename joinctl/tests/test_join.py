import pytest

from fakes import VALID_TOKEN, FakeRunner
from joinctl.modules.k3s.errors import ConfigurationError, JoinFailed
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.installer import AgentInstaller
from joinctl.modules.k3s.join import JoinOrchestrator
from joinctl.modules.k3s.locks import PackageLockGuard
from joinctl.modules.k3s.models import AgentState
from joinctl.modules.k3s.retry import FixedInterval

SERVER_URL = 'https://10.0.1.5:6443'


class AgentMachine:
    """Scripted agent host: the install script succeeds from attempt ``succeed_on``."""

    def __init__(self, clock, succeed_on=None, lock_until=0, active_services=()):
        self.clock = clock
        self.succeed_on = succeed_on
        self.lock_until = lock_until
        self.active_services = set(active_services)
        self.installs = 0
        self.install_times = []
        self.installed = False
        self.runner = FakeRunner(self.handle, name='agent-1')

    def handle(self, line, spec):
        if line.startswith('test -e '):
            path = line[len('test -e '):]
            exists = path == '/var/lib/rpm' or (path == '/usr/local/bin/k3s' and self.installed)
            return (0, '', '') if exists else (1, '', '')
        if line.startswith('fuser '):
            return (0, '12345', '') if self.clock.now() < self.lock_until else (1, '', '')
        if line.startswith('bash -c curl'):
            self.installs += 1
            self.install_times.append(self.clock.now())
            if self.succeed_on and self.installs >= self.succeed_on:
                self.installed = True
                self.active_services.add('k3s-agent')
                return 0, '[INFO]  systemd: Starting k3s-agent\n', ''
            return 1, '', '[ERROR]  Download failed'
        if line == 'sh -c command -v k3s':
            return 0, '/usr/local/bin/k3s\n', ''
        if line.startswith('systemctl list-unit-files'):
            return (0, 'k3s-agent.service enabled\n', '') if self.installed else (1, '', '0 unit files listed.')
        if line.startswith('systemctl is-active '):
            name = line.rsplit(' ', 1)[-1]
            return (0, 'active\n', '') if name in self.active_services else (3, 'inactive\n', '')
        if line.startswith('systemctl stop '):
            self.active_services.discard(line.rsplit(' ', 1)[-1])
            return 0, '', ''
        if line.startswith('systemctl start '):
            self.active_services.add(line.rsplit(' ', 1)[-1])
            return 0, '', ''
        if line.startswith('journalctl'):
            return 0, 'level=error msg="failed to get CA certs"\n', ''
        return 0, '', ''


def _orchestrator(machine, clock, guard=False, verify=True):
    host = K3sHost(machine.runner, use_sudo=True)
    lock_guard = PackageLockGuard(host, clock=clock, strategy=FixedInterval(10), timeout=300) if guard else None
    installer = AgentInstaller(host, clock=clock)
    return JoinOrchestrator(installer, lock_guard=lock_guard, clock=clock, verify=verify)


def test_join_gives_up_after_three_attempts(clock):
    machine = AgentMachine(clock)

    with pytest.raises(JoinFailed) as exc:
        _orchestrator(machine, clock).join(SERVER_URL, VALID_TOKEN, max_attempts=3, backoff=30)

    assert machine.installs == 3
    assert clock.sleeps == [30, 30]
    assert len(machine.runner.lines('systemctl stop k3s-agent')) == 3
    assert len(machine.runner.lines('rm -f /usr/local/bin/k3s')) == 3
    assert len(machine.runner.lines('rm -f /etc/systemd/system/k3s-agent.service')) == 3
    assert len(machine.runner.lines('systemctl daemon-reload')) == 3
    assert exc.value.attempts == 3
    assert len(exc.value.errors) == 3
    assert 'failed to get CA certs' in exc.value.logs
    assert 'Download failed' in exc.value.errors[0]


def test_join_succeeds_on_second_attempt(clock):
    machine = AgentMachine(clock, succeed_on=2)

    result = _orchestrator(machine, clock).join(SERVER_URL, VALID_TOKEN, max_attempts=3, backoff=30)

    assert result.attempts == 2
    assert result.binary_path == '/usr/local/bin/k3s'
    assert clock.sleeps == [30]
    assert result.states == [AgentState.JOINING, AgentState.JOIN_FAILED, AgentState.BACKOFF,
                             AgentState.JOINING, AgentState.JOINED]
    assert len(machine.runner.lines('systemctl daemon-reload')) == 1
    assert machine.runner.lines('/dev/tcp/10.0.1.5/6443')


def test_join_is_idempotent_when_agent_already_runs(clock):
    machine = AgentMachine(clock, active_services=['k3s-agent'])
    machine.installed = True

    result = _orchestrator(machine, clock).join(SERVER_URL, VALID_TOKEN)

    assert result.attempts == 1
    assert machine.installs == 0


def test_verification_failure_counts_as_failed_attempt(clock):
    machine = AgentMachine(clock, succeed_on=1)
    original = machine.handle

    def never_active(line, spec):
        if line == 'systemctl is-active k3s-agent':
            return 3, 'failed\n', ''
        return original(line, spec)

    machine.runner.handler = never_active
    with pytest.raises(JoinFailed):
        _orchestrator(machine, clock).join(SERVER_URL, VALID_TOKEN, max_attempts=2, backoff=5)
    assert len(machine.runner.lines('systemctl start k3s-agent')) == 2


def test_token_never_reaches_the_command_line(clock):
    machine = AgentMachine(clock, succeed_on=1)
    _orchestrator(machine, clock).join(SERVER_URL, VALID_TOKEN, version='v1.28.5+k3s1')

    install = next(spec for spec in machine.runner.calls if spec.argv[:2] == ['bash', '-c'])
    assert install.secret_env == {'K3S_TOKEN': VALID_TOKEN}
    assert install.env == {'K3S_URL': SERVER_URL, 'INSTALL_K3S_VERSION': 'v1.28.5+k3s1'}
    command, stdin_data = install.render()
    assert VALID_TOKEN not in command
    assert VALID_TOKEN in stdin_data
    for spec in machine.runner.calls:
        assert VALID_TOKEN not in ' '.join(spec.argv)
        assert VALID_TOKEN not in spec.display()


@pytest.mark.parametrize('server_url, token, attempts', [
    (SERVER_URL, VALID_TOKEN, 0),
    ('', VALID_TOKEN, 3),
    (SERVER_URL, 'K10short', 3),
    (SERVER_URL, None, 3),
])
def test_join_rejects_bad_arguments(clock, server_url, token, attempts):
    machine = AgentMachine(clock)
    with pytest.raises(ConfigurationError):
        _orchestrator(machine, clock).join(server_url, token, max_attempts=attempts)
    assert machine.runner.calls == []


def test_lock_mitigation_runs_between_attempts(clock):
    machine = AgentMachine(clock, active_services=['amazon-ssm-agent'])

    with pytest.raises(JoinFailed):
        _orchestrator(machine, clock, guard=True).join(SERVER_URL, VALID_TOKEN, max_attempts=2, backoff=30)

    lines = [' '.join(spec.argv) for spec in machine.runner.calls]
    first_install = next(i for i, line in enumerate(lines) if line.startswith('bash -c curl'))
    assert any(line.startswith('fuser ') for line in lines[:first_install])
    assert any(line.startswith('pkill ') for line in lines[:first_install])

    second_install = max(i for i, line in enumerate(lines) if line.startswith('bash -c curl'))
    between = lines[first_install:second_install]
    assert between.index('pkill -f yum') < max(i for i, line in enumerate(between) if line.startswith('fuser '))

    assert clock.sleeps == [5, 30, 5]
    assert 'amazon-ssm-agent' in machine.active_services


def test_join_waits_for_held_package_lock(clock):
    machine = AgentMachine(clock, succeed_on=1, lock_until=45)

    result = _orchestrator(machine, clock, guard=True).join(SERVER_URL, VALID_TOKEN)

    assert result.attempts == 1
    assert machine.installs == 1
    assert machine.install_times[0] >= 45
    assert machine.runner.lines('fuser ')
    assert machine.runner.lines('rm -f /var/lib/rpm') == []
