from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from fakes import FakeRunner
from joinctl.modules.k3s.errors import MembershipError
from joinctl.modules.k3s.host import K3sHost
from joinctl.modules.k3s.membership import ClusterVerifier, KubectlNodeSource, KubernetesNodeSource

NODES = (
    "server-1   Ready      control-plane,master   10m   v1.28.5+k3s1\n"
    "agent-1    NotReady   <none>                 1m    v1.28.5+k3s1\n"
)


def _server(output=NODES):
    return K3sHost(FakeRunner(lambda line, spec: (0, output, '')), use_sudo=False)


def _agent(logs='level=error msg="failed to contact server"'):
    return K3sHost(FakeRunner(lambda line, spec: (0, logs, ''), name='agent-2'), use_sudo=False)


def test_membership_ok():
    report = ClusterVerifier(KubectlNodeSource(_server())).verify_membership(2)

    assert report.ok
    assert report.nodes == {'server-1': 'Ready', 'agent-1': 'NotReady'}
    assert report.unready == ['agent-1']
    assert report.logs == {}


def test_missing_agent_pulls_its_logs():
    agent = _agent()
    report = ClusterVerifier(KubectlNodeSource(_server())).verify_membership(2, agents={'agent-2': agent})

    assert not report.ok
    assert report.missing == ['agent-2']
    assert report.error == 'Missing nodes: agent-2'
    assert 'failed to contact server' in report.logs['agent-2']
    assert agent.runner.calls[0].argv[:3] == ['journalctl', '-u', 'k3s-agent']


def test_too_few_nodes():
    report = ClusterVerifier(KubectlNodeSource(_server())).verify_membership(3)

    assert not report.ok
    assert report.error == 'Expected at least 3 nodes, found 2'


def test_ensure_membership_raises_with_report():
    with pytest.raises(MembershipError) as exc:
        ClusterVerifier(KubectlNodeSource(_server(''))).ensure_membership(1)
    assert exc.value.context['report']['node_count'] == 0
    assert exc.value.to_dict()['error'] == 'MembershipError'


def _node(name, ready):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        status=SimpleNamespace(conditions=[
            SimpleNamespace(type='MemoryPressure', status='False'),
            SimpleNamespace(type='Ready', status=ready),
        ]),
    )


def test_kubernetes_node_source():
    api = SimpleNamespace(list_node=lambda: SimpleNamespace(items=[_node('server-1', 'True'),
                                                                     _node('agent-1', 'Unknown')]))
    assert KubernetesNodeSource(api=api).list_nodes() == {'server-1': 'Ready', 'agent-1': 'NotReady'}


def test_api_errors_are_reported():
    def list_node():
        raise ApiException(status=503, reason='Service Unavailable')

    report = ClusterVerifier(KubernetesNodeSource(api=SimpleNamespace(list_node=list_node))).verify_membership(1)

    assert not report.ok
    assert report.error.startswith('Failed to list nodes')
