import pytest

from fakes import VALID_TOKEN, make_server_runner, token_sequence
from joinctl.modules.k3s.errors import ConfigurationError, GateTimeout
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.models import ReadinessState
from joinctl.modules.k3s.readiness import ReadinessVerifier


def _verifier(clock, **runner_kwargs):
    host = K3sHost(make_server_runner(clock, **runner_kwargs), use_sudo=False)
    return ReadinessVerifier(host, node_name='server-1', clock=clock)


def test_server_becomes_ready(clock):
    report = _verifier(clock).verify_readiness(300)

    assert report.ready
    assert report.token == VALID_TOKEN
    assert clock.now() == 45
    assert report.transitions == [
        ReadinessState.UNSTARTED,
        ReadinessState.SERVICE_ACTIVE,
        ReadinessState.NODE_READY,
        ReadinessState.TOKEN_PRESENT,
        ReadinessState.TOKEN_AUTHENTICATED,
        ReadinessState.API_REACHABLE,
        ReadinessState.READY,
    ]
    assert [g.gate for g in report.gates] == [
        'service_active', 'node_ready', 'token_present', 'token_authenticates', 'api_reachable',
    ]
    assert 'Kubernetes control plane is running' in report.cluster_info


def test_malformed_token_keeps_polling(clock):
    verifier = _verifier(clock, token=token_sequence('K10short', 'K10short', 'K10short', VALID_TOKEN))
    report = verifier.verify_readiness(300)

    assert report.ready
    token_gate = next(g for g in report.gates if g.gate == 'token_present')
    assert token_gate.attempts == 4
    assert token_gate.last_status == 'VALID'


def test_malformed_token_is_never_ready(clock):
    report = _verifier(clock, token=token_sequence('K10short')).verify_readiness(120)

    assert not report.ready
    assert report.token is None
    assert report.failed_gate == 'token_present'
    assert report.state == ReadinessState.FAILED
    assert report.last_status.startswith('INVALID')
    assert 'K10short' not in report.last_status


def test_service_never_active_fails_first_gate(clock):
    report = _verifier(clock, service_at=10_000).verify_readiness(60)

    assert not report.ready
    assert report.failed_gate == 'service_active'
    assert report.last_status == 'inactive'
    assert isinstance(report.error, GateTimeout)
    assert clock.now() == 60
    assert report.transitions == [ReadinessState.UNSTARTED, ReadinessState.FAILED]


def test_node_gate_respects_attempt_limit(clock):
    report = _verifier(clock, node_at=10_000).verify_readiness(600)

    assert report.failed_gate == 'node_ready'
    node_gate = report.gates[-1]
    assert node_gate.attempts == 20
    assert node_gate.last_status == 'NotReady'


def test_token_that_does_not_authenticate(clock):
    other = 'K10' + 'f' * 60
    report = _verifier(clock, token=lambda t: other).verify_readiness(60)

    assert not report.ready
    assert report.failed_gate == 'token_authenticates'
    assert report.last_status == 'AUTH_FAILED'


def test_later_gates_share_the_overall_budget(clock):
    report = _verifier(clock, api_at=10_000).verify_readiness(100)

    assert report.failed_gate == 'api_reachable'
    assert clock.now() == 100
    assert report.gates[-1].last_status == 'PORT_CLOSED'


@pytest.mark.parametrize('timeout', [10, 29, 601, 700])
def test_timeout_out_of_range(clock, timeout):
    with pytest.raises(ConfigurationError):
        _verifier(clock).verify_readiness(timeout)


def test_ssh_gate_runs_first(clock):
    host = K3sHost(make_server_runner(clock), use_sudo=False)
    report = ReadinessVerifier(host, clock=clock, check_ssh=True).verify_readiness(300)

    assert report.ready
    assert report.gates[0].gate == 'ssh_reachable'
    assert host.runner.calls[0].argv == ['echo', 'ok']


def test_ssh_unreachable(clock):
    host = K3sHost(make_server_runner(clock), use_sudo=False)
    host.runner.handler = lambda line, spec: (255, '', 'NoValidConnectionsError')
    report = ReadinessVerifier(host, clock=clock, check_ssh=True,
                               ssh_max_attempts=3).verify_readiness(300)

    assert report.failed_gate == 'ssh_reachable'
    assert report.gates[0].attempts == 3
