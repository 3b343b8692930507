"""Fakes shared by the test modules: a manual clock and scripted hosts."""
import itertools
from typing import Callable, List, Optional

from joinctl.modules.k3s.runner import CommandResult, CommandRunner, CommandSpec

VALID_TOKEN = ("K1079b2e1f5a9d8c7b6a5f4e3d2c1b0a9f8e7d6c5b4a3f2e1d0c9b8a7f6e5d4c3b2"
               "::server:5f4e3d2c1b0a9f8e7d6c5b4a3f2e1d0c")
OTHER_TOKEN = ("K10aa11bb22cc33dd44ee55ff66aa77bb88cc99dd00ee11ff22aa33bb44cc55dd66"
               "::server:0a1b2c3d4e5f6a7b8c9d0e1f2a3b4c5d")
WALL_EPOCH = 1_700_000_000


class FakeClock:
    """Manual clock: sleeping advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def wall(self) -> float:
        return WALL_EPOCH + self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeRunner(CommandRunner):
    """Answers commands from a handler ``(line, spec) -> (exit, stdout, stderr)``."""

    name = 'fake-host'

    def __init__(self, handler: Optional[Callable] = None, name: str = 'fake-host'):
        self.handler = handler or (lambda line, spec: (0, '', ''))
        self.name = name
        self.calls: List[CommandSpec] = []

    def run(self, spec: CommandSpec) -> CommandResult:
        self.calls.append(spec)
        line = ' '.join(spec.argv)
        exit_status, stdout, stderr = self.handler(line, spec)
        return CommandResult(exit_status, stdout, stderr, spec.display())

    def lines(self, pattern: str = '') -> List[str]:
        return [' '.join(s.argv) for s in self.calls if pattern in ' '.join(s.argv)]


def token_sequence(*values):
    """Token file contents returned one per read; the last one repeats."""
    it = itertools.chain(values, itertools.repeat(values[-1]))
    return lambda t: next(it)


def make_server_runner(
    clock: FakeClock,
    service_at: float = 0,
    node_at: float = 15,
    token=VALID_TOKEN,
    token_at: float = 30,
    api_at: float = 45,
    node_name: str = 'server-1',
) -> FakeRunner:
    """A K3S server that comes up on a timeline driven by ``clock``."""

    def read_token(t):
        if callable(token):
            return token(t)
        return token if t >= token_at else None

    def handler(line, spec):
        t = clock.now()
        if line == 'echo ok':
            return 0, 'ok\n', ''
        if line.startswith('systemctl is-active'):
            return (0, 'active\n', '') if t >= service_at else (3, 'activating\n', '')
        if 'K3S_AUTH_TOKEN' in spec.secret_env:
            ok = spec.secret_env['K3S_AUTH_TOKEN'] == VALID_TOKEN
            return (0, f"{node_name}   Ready\n", '') if ok else (1, '', 'error: You must be logged in to the server (Unauthorized)')
        if line.startswith('cat '):
            if line.endswith('/node-token'):
                value = read_token(t)
                return (0, value + '\n', '') if value is not None else (1, '', 'No such file or directory')
            return 1, '', 'No such file or directory'
        if '/dev/tcp/' in line:
            return (0, '', '') if t >= api_at else (1, '', 'Connection refused')
        if 'get nodes --no-headers' in line:
            if t < service_at:
                return 1, '', 'The connection to the server 127.0.0.1:6443 was refused'
            status = 'Ready' if t >= node_at else 'NotReady'
            return 0, f"{node_name}   {status}   control-plane,master   1m   v1.28.5+k3s1\n", ''
        if 'get nodes' in line:
            return (0, f"{node_name}   Ready\n", '') if t >= api_at else (1, '', 'connection refused')
        if 'cluster-info' in line:
            return 0, ('Kubernetes control plane is running at https://127.0.0.1:6443\n'
                       'CoreDNS is running at https://127.0.0.1:6443/api/v1/namespaces/kube-system\n'), ''
        return 1, '', f"unexpected command: {line}"

    return FakeRunner(handler, name=node_name)

