"""Post-join cluster membership verification."""

import logging
from typing import Dict, Iterable, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from urllib3.exceptions import HTTPError

from ...utils.kube import load_kubeconfig
from .errors import HandshakeError, MembershipError
from .host import AGENT_SERVICE, K3sHost
from .models import MembershipReport

logger = logging.getLogger("k3s.membership")


class NodeSource:
    """Where the node list comes from."""

    def list_nodes(self) -> Dict[str, str]:
        raise NotImplementedError


class KubectlNodeSource(NodeSource):
    """Node list from ``kubectl get nodes`` on a server host."""

    def __init__(self, host: K3sHost):
        self.host = host

    def list_nodes(self) -> Dict[str, str]:
        return self.host.list_nodes()


class KubernetesNodeSource(NodeSource):
    """Node list from the Kubernetes API using a kubeconfig."""

    def __init__(self, kubeconfig: Optional[str] = None, api: Optional[client.CoreV1Api] = None):
        self.kubeconfig = kubeconfig
        self._api = api

    @property
    def api(self) -> client.CoreV1Api:
        if self._api is None:
            load_kubeconfig(self.kubeconfig)
            self._api = client.CoreV1Api()
        return self._api

    def list_nodes(self) -> Dict[str, str]:
        nodes = {}
        for node in self.api.list_node().items:
            ready = [c for c in (node.status.conditions or []) if c.type == 'Ready']
            nodes[node.metadata.name] = 'Ready' if ready and ready[0].status == 'True' else 'NotReady'
        return nodes


class ClusterVerifier:
    """Checks that the control plane sees the expected number of nodes."""

    def __init__(self, source: NodeSource, log_lines: int = 20):
        self.source = source
        self.log_lines = log_lines

    def _agent_logs(self, name: str, host: K3sHost) -> str:
        try:
            return host.service_logs(AGENT_SERVICE, self.log_lines)
        except (HandshakeError, OSError) as e:
            return f"Could not fetch logs from {name}: {e}"

    def verify_membership(
        self,
        expected_min_nodes: int,
        agents: Optional[Dict[str, K3sHost]] = None,
        expected_nodes: Iterable[str] = (),
    ) -> MembershipReport:
        """List nodes and compare against expectations.

        Args:
            expected_min_nodes: Minimum node count for success
            agents: Agent hosts by node name, used to pull logs of missing or
                unready agents
            expected_nodes: Node names that must be present
        """
        agents = agents or {}
        report = MembershipReport(expected_min_nodes=expected_min_nodes)
        try:
            report.nodes = self.source.list_nodes()
        except (ApiException, ConfigException, HTTPError, HandshakeError, OSError, ValueError) as e:
            report.error = f"Failed to list nodes: {e}"
            logger.error(f"❌ {report.error}")

        wanted = set(expected_nodes) | set(agents)
        report.missing = sorted(name for name in wanted if name not in report.nodes)
        report.unready = sorted(name for name, status in report.nodes.items() if status != 'Ready')

        if report.error is None and report.node_count < expected_min_nodes:
            report.error = f"Expected at least {expected_min_nodes} nodes, found {report.node_count}"
        if report.error is None and report.missing:
            report.error = f"Missing nodes: {', '.join(report.missing)}"

        if report.ok:
            logger.info(f"✅ Cluster has {report.node_count} node(s): "
                        f"{', '.join(f'{n} ({s})' for n, s in sorted(report.nodes.items()))}")
            return report

        logger.error(f"❌ Cluster membership incomplete: {report.error}")
        for name in report.missing + report.unready:
            if name in agents and name not in report.logs:
                report.logs[name] = self._agent_logs(name, agents[name])
        return report

    def ensure_membership(self, expected_min_nodes: int, **kwargs) -> MembershipReport:
        """Like :meth:`verify_membership` but raise when it fails.

        Raises:
            MembershipError: With the report attached as context
        """
        report = self.verify_membership(expected_min_nodes, **kwargs)
        if not report.ok:
            raise MembershipError(report.error or "membership incomplete", report=report.to_dict())
        return report
