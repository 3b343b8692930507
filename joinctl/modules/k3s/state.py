"""Node-local state files.

Agents keep the outcome of their last collection cycle in a small YAML record
(``{cluster_name, server_url, token, token_collected, collected_at, error}``);
servers drop a facts file describing their role once they have published.
Both are written atomically with mode 0600.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .models import ClusterToken, NodeIdentity, NodeType
from .utils import read_yaml_file, write_yaml_file

logger = logging.getLogger("k3s.state")

DEFAULT_AGENT_STATE = '~/.local/state/joinctl/agent_cluster_info.yaml'
DEFAULT_SERVER_FACTS = '~/.local/state/joinctl/k3s_server_info.yaml'


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


class AgentStateStore:
    """The agent's record of the cluster it is joining."""

    def __init__(self, path: Union[str, Path, None] = DEFAULT_AGENT_STATE):
        self.path = Path(path).expanduser() if path else None
        self._memory: Dict[str, Any] = {}

    def load(self) -> Dict[str, Any]:
        if self.path is None:
            return dict(self._memory)
        if not self.path.exists():
            return {}
        return read_yaml_file(self.path) or {}

    def _write(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.path is None:
            self._memory = dict(data)
        else:
            write_yaml_file(self.path, data)
        return data

    def record_success(self, token: ClusterToken) -> Dict[str, Any]:
        """Persist a validated credential."""
        logger.info(f"💾 Saving collected cluster information for {token.cluster_name}")
        return self._write({
            'cluster_name': token.cluster_name,
            'server_url': token.server_url,
            'server_node': token.server_node,
            'token': token.token,
            'token_collected': True,
            'collected_at': _utcnow(),
            'error': None,
        })

    def record_failure(self, cluster_name: str, error: str) -> Dict[str, Any]:
        return self._write({
            'cluster_name': cluster_name,
            'server_url': None,
            'server_node': None,
            'token': None,
            'token_collected': False,
            'collected_at': _utcnow(),
            'error': error,
        })

    def clear(self) -> None:
        self._memory = {}
        if self.path is not None and self.path.exists():
            self.path.unlink()


def write_server_facts(
    identity: NodeIdentity,
    path: Union[str, Path] = DEFAULT_SERVER_FACTS,
    node_type: NodeType = NodeType.SERVER,
    server_url: Optional[str] = None,
) -> Path:
    """Record which cluster this server belongs to and its role in it."""
    target = Path(path).expanduser()
    write_yaml_file(target, {
        'cluster_name': identity.cluster_name,
        'node_type': node_type.value,
        'server_node': identity.server_node,
        'is_primary': identity.is_primary,
        'server_url': server_url or identity.server_url,
        'installed_at': _utcnow(),
    })
    logger.debug(f"Wrote server facts to {target}")
    return target
