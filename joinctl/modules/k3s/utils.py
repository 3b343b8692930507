"""Utility functions for the K3S handshake."""
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

logger = logging.getLogger("k3s.utils")


def parse_kubectl_output(output: str) -> List[Dict[str, str]]:
    """Parse tabular kubectl output into a list of dictionaries.

    Args:
        output: Raw kubectl command output, header line first

    Returns:
        List of dictionaries keyed by the header columns
    """
    if not output.strip():
        return []

    lines = output.strip().split('\n')
    headers = [h.strip() for h in lines[0].split()]
    result = []

    for line in lines[1:]:
        if not line.strip():
            continue

        # Split on whitespace, but keep quoted strings together
        parts = []
        current = ""
        in_quotes = False

        for char in line.strip():
            if char == '"':
                in_quotes = not in_quotes
            elif char.isspace() and not in_quotes:
                if current:
                    parts.append(current)
                    current = ""
                continue
            else:
                current += char

        if current:
            parts.append(current)

        if len(parts) >= 2:
            result.append(dict(zip(headers, parts)))

    return result


def atomic_write(path: Union[str, Path], content: str, mode: int = 0o644) -> None:
    """Write a file so readers see either the old or the complete new content.

    Args:
        path: Destination path
        content: Text to write
        mode: File permissions
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error(f"Failed to write {path}: {e}")
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_yaml_file(path: Union[str, Path], data: Dict[str, Any], mode: int = 0o600) -> None:
    """Atomically write a YAML file with the given data."""
    atomic_write(path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False), mode)


def read_yaml_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML file and return its contents as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.debug(f"YAML file not found: {path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        raise
