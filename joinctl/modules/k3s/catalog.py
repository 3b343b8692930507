"""Key-value catalog of exported cluster information.

Records are keyed by ``{cluster_name}_{server_node}``: putting a record under
an existing key replaces it, so re-publishing is idempotent and concurrent HA
servers never collide. The store can be purely in-memory or persisted to a
YAML file that is re-read on every operation and replaced atomically on every
write.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from .models import ClusterToken
from .utils import read_yaml_file, write_yaml_file

logger = logging.getLogger("k3s.catalog")


class CatalogStore:
    """Thread-safe record store with optional file persistence."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path).expanduser().absolute() if path else None
        self._records: Dict[str, ClusterToken] = {}
        self._lock = threading.RLock()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = read_yaml_file(self.path)
        except yaml.YAMLError:
            logger.error(f"Catalog file {self.path} is corrupt; keeping in-memory records")
            return
        self._records = {
            key: ClusterToken(**value) for key, value in (data.get('records') or {}).items()
        }

    def _save(self) -> None:
        if self.path is None:
            return
        write_yaml_file(self.path, {
            'records': {key: record.to_dict() for key, record in sorted(self._records.items())}
        })

    def put(self, record: ClusterToken) -> str:
        """Store ``record`` under its key, replacing any previous version."""
        with self._lock:
            self._load()
            replaced = record.key in self._records
            self._records[record.key] = record
            self._save()
        logger.info(f"{'Replaced' if replaced else 'Stored'} catalog record {record.key}")
        return record.key

    def get(self, key: str) -> Optional[ClusterToken]:
        with self._lock:
            self._load()
            return self._records.get(key)

    def delete(self, key: str) -> bool:
        """Remove a record; False if it was not there."""
        with self._lock:
            self._load()
            if key not in self._records:
                return False
            del self._records[key]
            self._save()
        logger.info(f"Removed catalog record {key}")
        return True

    def query(self, cluster_name: Optional[str] = None, tag: Optional[str] = None) -> List[ClusterToken]:
        """Records matching the filters, newest export first."""
        with self._lock:
            self._load()
            records = list(self._records.values())
        if cluster_name is not None:
            records = [r for r in records if r.cluster_name == cluster_name]
        if tag is not None:
            records = [r for r in records if r.tag == tag]
        return sorted(records, key=lambda r: r.export_time, reverse=True)

    def __len__(self) -> int:
        with self._lock:
            self._load()
            return len(self._records)
