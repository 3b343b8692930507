"""Publication channels carrying cluster information from servers to agents.

All channels share one contract: ``publish`` stores a record under
``{cluster_name}_{server_node}`` (overwriting), ``retract`` removes it, and
``query`` returns every candidate payload for a cluster without validating
it; validation is the collector's job. The optional ``timeout`` caps how long
one query may take.
"""

import base64
import fnmatch
import logging
import os
from pathlib import Path
from typing import List, Optional

import requests

from .catalog import CatalogStore
from .codec import encode_shell, encode_yaml, validate_for_publication
from .errors import PublicationRefused
from .host import K3sHost
from .models import ClusterToken, NodeIdentity, Payload, PayloadFormat, ReadinessReport, record_key
from .retry import Clock
from .runner import CommandSpec
from .utils import atomic_write

logger = logging.getLogger("k3s.channel")

INFO_FILE_PREFIX = 'k3s_cluster_info_'


class PublicationChannel:
    """Interface every transport implements."""

    name = 'channel'

    def publish(self, record: ClusterToken) -> str:
        raise NotImplementedError

    def retract(self, cluster_name: str, server_node: str) -> bool:
        raise NotImplementedError

    def query(self, cluster_name: str, timeout: Optional[float] = None) -> List[Payload]:
        raise NotImplementedError


class CatalogChannel(PublicationChannel):
    """Channel backed directly by a :class:`CatalogStore`."""

    name = 'catalog'

    def __init__(self, store: CatalogStore, tag: Optional[str] = None):
        self.store = store
        self.tag = tag

    def publish(self, record: ClusterToken) -> str:
        return self.store.put(record)

    def retract(self, cluster_name: str, server_node: str) -> bool:
        return self.store.delete(record_key(cluster_name, server_node))

    def query(self, cluster_name: str, timeout: Optional[float] = None) -> List[Payload]:
        return [
            Payload(source=f"catalog:{record.key}", format=PayloadFormat.RECORD, body=record.to_dict())
            for record in self.store.query(cluster_name=cluster_name, tag=self.tag)
        ]


class HttpChannel(PublicationChannel):
    """Channel backed by the catalog served by ``joinctl channel serve``."""

    name = 'http'

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: int = 10,
        tag: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.tag = tag
        self.session = session or requests.Session()
        self.session.headers.update({'X-API-Key': api_key})

    def publish(self, record: ClusterToken) -> str:
        response = self.session.put(
            f"{self.base_url}/records/{record.key}", json=record.to_dict(), timeout=self.timeout
        )
        response.raise_for_status()
        return record.key

    def retract(self, cluster_name: str, server_node: str) -> bool:
        key = record_key(cluster_name, server_node)
        response = self.session.delete(f"{self.base_url}/records/{key}", timeout=self.timeout)
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def query(self, cluster_name: str, timeout: Optional[float] = None) -> List[Payload]:
        params = {'cluster_name': cluster_name}
        if self.tag:
            params['tag'] = self.tag
        request_timeout = self.timeout if timeout is None else min(self.timeout, max(timeout, 1))
        response = self.session.get(f"{self.base_url}/records", params=params, timeout=request_timeout)
        response.raise_for_status()
        return [
            Payload(source=f"{self.base_url}:{item.get('cluster_name')}_{item.get('server_node')}",
                    format=PayloadFormat.RECORD, body=item)
            for item in response.json()
        ]


class FileChannel(PublicationChannel):
    """Best-effort channel: YAML and shell files in a well-known directory.

    With ``host=None`` the directory is on this machine; otherwise it is read
    and written through the host's runner (typically SSH).
    """

    name = 'file'

    def __init__(self, directory: str = '/tmp', host: Optional[K3sHost] = None):
        self.directory = directory
        self.host = host

    def paths(self, cluster_name: str, server_node: str):
        base = os.path.join(self.directory, f"{INFO_FILE_PREFIX}{record_key(cluster_name, server_node)}")
        return f"{base}.yaml", f"{base}.sh"

    def _write(self, path: str, content: str, mode: int) -> None:
        if self.host is None:
            atomic_write(path, content, mode)
            return
        encoded = base64.b64encode(content.encode('utf-8')).decode('ascii')
        script = ('printf %s "$K3S_INFO_B64" | base64 -d > "$1.tmp" '
                  '&& chmod "$2" "$1.tmp" && mv -f "$1.tmp" "$1"')
        self.host.runner.check(CommandSpec(
            argv=['sh', '-c', script, 'sh', path, format(mode, 'o')],
            secret_env={'K3S_INFO_B64': encoded},
            sudo=self.host.use_sudo,
        ))

    def _remove(self, path: str) -> bool:
        if self.host is None:
            if os.path.exists(path):
                os.unlink(path)
                return True
            return False
        existed = self.host.file_exists(path)
        self.host.run(CommandSpec(argv=['rm', '-f', path], sudo=self.host.use_sudo))
        return existed

    def _read(self, path: str) -> Optional[str]:
        if self.host is None:
            try:
                return Path(path).read_text(encoding='utf-8')
            except OSError:
                return None
        return self.host.read_file(path)

    def _list(self) -> List[str]:
        if self.host is None:
            try:
                return sorted(os.listdir(self.directory))
            except OSError:
                return []
        result = self.host.run(CommandSpec(argv=['ls', '-1', self.directory], sudo=self.host.use_sudo))
        return sorted(result.stdout.split()) if result.ok else []

    def publish(self, record: ClusterToken) -> str:
        yaml_path, sh_path = self.paths(record.cluster_name, record.server_node)
        self._write(yaml_path, encode_yaml(record), 0o644)
        self._write(sh_path, encode_shell(record), 0o755)
        logger.info(f"Exported cluster information to {yaml_path} and {sh_path}")
        return record.key

    def retract(self, cluster_name: str, server_node: str) -> bool:
        removed = [self._remove(path) for path in self.paths(cluster_name, server_node)]
        return any(removed)

    def query(self, cluster_name: str, timeout: Optional[float] = None) -> List[Payload]:
        names = set(self._list())
        pattern = f"{INFO_FILE_PREFIX}{cluster_name}_*"
        payloads = []
        for stem in sorted({n.rsplit('.', 1)[0] for n in names if fnmatch.fnmatch(n, pattern)}):
            for suffix, fmt in (('.yaml', PayloadFormat.YAML), ('.sh', PayloadFormat.SHELL)):
                if stem + suffix not in names:
                    continue
                path = os.path.join(self.directory, stem + suffix)
                content = self._read(path)
                if content:
                    payloads.append(Payload(source=f"{self.host.name if self.host else 'local'}:{path}",
                                            format=fmt, body=content))
                    break
        return payloads


class Publisher:
    """Publishes a server's token, but only on the back of a passing readiness report."""

    def __init__(self, channel: PublicationChannel, identity: NodeIdentity, clock: Optional[Clock] = None):
        self.channel = channel
        self.identity = identity
        self.clock = clock or Clock()

    def publish(self, report: ReadinessReport) -> ClusterToken:
        """Export the verified token.

        Raises:
            PublicationRefused: If the report is not in the Ready state
            PayloadValidationError: If the record fails field validation
        """
        if not report.ready:
            raise PublicationRefused(
                f"Refusing to publish {self.identity.key}: readiness state is {report.state.value}",
                state=report.state.value, failed_gate=report.failed_gate,
            )
        record = ClusterToken.from_identity(self.identity, report.token, export_time=int(self.clock.wall()))
        validate_for_publication(record)
        self.channel.publish(record)
        logger.info(f"✅ Published cluster information {record.key} via {self.channel.name} channel")
        return record

    def retract(self) -> bool:
        removed = self.channel.retract(self.identity.cluster_name, self.identity.server_node)
        logger.info(f"{'Retracted' if removed else 'Nothing to retract for'} {self.identity.key}")
        return removed
