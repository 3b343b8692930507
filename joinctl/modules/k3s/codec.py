"""Encoding, decoding and validation of cluster information payloads.

Two encodings travel over the file-based channel: a YAML mapping and a
shell-sourceable ``export K3S_...=`` script. Structured stores hand over
mappings directly. Whatever the source, :func:`validate_record` is the single
gate a payload passes before it becomes a :class:`ClusterToken`.
"""

import ipaddress
import logging
import re
import shlex
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from jsonschema import Draft7Validator

from .errors import PayloadValidationError
from .models import ClusterToken, Payload, PayloadFormat
from .token import describe_invalid, is_valid_token

logger = logging.getLogger("k3s.codec")

REQUIRED_FIELDS = ('cluster_name', 'server_url', 'token')

CLUSTER_INFO_SCHEMA = {
    "type": "object",
    "properties": {
        "cluster_name": {"type": "string", "minLength": 1},
        "server_url": {"type": "string", "minLength": 1},
        "token": {"type": "string", "minLength": 1},
        "server_fqdn": {"type": ["string", "null"]},
        "server_ip": {"type": ["string", "null"]},
        "server_node": {"type": ["string", "null"]},
        "is_primary": {"type": ["boolean", "string", "null"]},
        "export_time": {"type": ["integer", "string", "null"]},
        "tag": {"type": ["string", "null"]},
    },
    "required": list(REQUIRED_FIELDS),
}

RESOURCE_NAME_RE = re.compile(r'^[a-zA-Z0-9_-]+$')
SERVER_URL_RE = re.compile(r'^https?://.+:\d+$')

# Shell variable name -> record field
SHELL_FIELDS = {
    'K3S_CLUSTER_NAME': 'cluster_name',
    'K3S_SERVER_FQDN': 'server_fqdn',
    'K3S_SERVER_IP': 'server_ip',
    'K3S_SERVER_URL': 'server_url',
    'K3S_SERVER_NODE': 'server_node',
    'K3S_IS_PRIMARY': 'is_primary',
    'K3S_NODE_TOKEN': 'token',
    'K3S_EXPORT_TIME': 'export_time',
    'K3S_TAG': 'tag',
}
SHELL_LINE_RE = re.compile(r'^\s*(?:export\s+)?(K3S_[A-Z_]+)=(.*)$')

_validator = Draft7Validator(CLUSTER_INFO_SCHEMA)


# -- encoders ---------------------------------------------------------------

def encode_yaml(record: ClusterToken) -> str:
    """YAML encoding of a record."""
    return yaml.safe_dump(record.to_dict(), default_flow_style=False, sort_keys=False)


def encode_shell(record: ClusterToken, generated_at: Optional[datetime] = None) -> str:
    """Shell-sourceable encoding of a record."""
    generated_at = generated_at or datetime.now()
    values = record.to_dict()
    lines = [
        '#!/bin/bash',
        f"# K3S Cluster Information for {record.cluster_name}",
        f"# Generated on {generated_at.isoformat(timespec='seconds')}",
        '',
    ]
    for var, field_name in SHELL_FIELDS.items():
        value = values[field_name]
        if isinstance(value, bool):
            value = str(value).lower()
        lines.append(f"export {var}={shlex.quote(str(value))}")
    lines += [
        '',
        '# Function to display cluster information',
        'show_cluster_info() {',
        '  echo "=== K3S Cluster Information ==="',
        '  echo "Cluster Name: $K3S_CLUSTER_NAME"',
        '  echo "Server FQDN: $K3S_SERVER_FQDN"',
        '  echo "Server URL: $K3S_SERVER_URL"',
        '  echo "Server Node: $K3S_SERVER_NODE"',
        '  echo "Is Primary: $K3S_IS_PRIMARY"',
        '  echo "Export Time: $K3S_EXPORT_TIME"',
        '  echo "=============================="',
        '}',
        '',
        '# Show info if script is executed directly',
        'if [[ "${BASH_SOURCE[0]}" == "${0}" ]]; then',
        '  show_cluster_info',
        'fi',
        '',
    ]
    return '\n'.join(lines)


# -- decoders ---------------------------------------------------------------

def decode_yaml(text: str) -> Dict[str, Any]:
    """Decode the YAML encoding. ``node_token`` is accepted as an alias of ``token``."""
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise PayloadValidationError(f"Expected a mapping, got {type(data).__name__}")
    if 'token' not in data and 'node_token' in data:
        data['token'] = data.pop('node_token')
    return data


def decode_shell(text: str) -> Dict[str, Any]:
    """Decode the ``export K3S_X=...`` encoding without executing it."""
    data: Dict[str, Any] = {}
    for line in text.splitlines():
        match = SHELL_LINE_RE.match(line)
        if not match:
            continue
        var, raw = match.groups()
        field_name = SHELL_FIELDS.get(var)
        if field_name is None:
            continue
        try:
            parts = shlex.split(raw, comments=True)
        except ValueError as e:
            raise PayloadValidationError(f"Unparseable value for {var}: {e}")
        data[field_name] = parts[0] if parts else ''
    return data


def decode_payload(payload: Payload) -> Dict[str, Any]:
    """Decode a payload according to its format."""
    if payload.format == PayloadFormat.RECORD:
        data = dict(payload.body)
        if 'token' not in data and 'node_token' in data:
            data['token'] = data.pop('node_token')
        return data
    if payload.format == PayloadFormat.YAML:
        try:
            return decode_yaml(payload.body)
        except yaml.YAMLError as e:
            raise PayloadValidationError(f"Invalid YAML payload: {e}", source=payload.source)
    if payload.format == PayloadFormat.SHELL:
        return decode_shell(payload.body)
    raise PayloadValidationError(f"Unknown payload format: {payload.format}", source=payload.source)


# -- validation -------------------------------------------------------------

def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1')
    return bool(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def missing_fields(data: Dict[str, Any]) -> List[str]:
    """Required fields that are absent or empty."""
    return [name for name in REQUIRED_FIELDS if not str(data.get(name) or '').strip()]


def validate_record(data: Dict[str, Any], source: str = '') -> ClusterToken:
    """Turn a decoded payload into a ClusterToken or raise.

    Raises:
        PayloadValidationError: On missing required fields, schema violations,
            a malformed server URL or a token failing the format check
    """
    missing = missing_fields(data)
    if missing:
        raise PayloadValidationError(
            f"Payload from {source or 'channel'} is missing required fields: {', '.join(missing)}",
            missing=missing, source=source,
        )

    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        raise PayloadValidationError(f"Payload from {source or 'channel'} failed schema validation: "
                                     f"{errors[0].message}", source=source)

    server_url = data['server_url'].strip()
    if not SERVER_URL_RE.match(server_url):
        raise PayloadValidationError(f"Invalid server_url {server_url!r}", source=source)

    token = data['token'].strip()
    if not is_valid_token(token):
        raise PayloadValidationError(f"Invalid token format: {describe_invalid(token)}", source=source)

    return ClusterToken(
        cluster_name=data['cluster_name'].strip(),
        server_fqdn=str(data.get('server_fqdn') or ''),
        server_ip=str(data.get('server_ip') or urlparse(server_url).hostname or ''),
        server_url=server_url,
        server_node=str(data.get('server_node') or ''),
        token=token,
        is_primary=_as_bool(data.get('is_primary', False)),
        export_time=_as_int(data.get('export_time')),
        tag=str(data.get('tag') or ''),
    )


def validate_for_publication(record: ClusterToken) -> None:
    """Field checks a server applies before exporting its own record.

    Raises:
        PayloadValidationError: If any field is unacceptable
    """
    problems = []
    if not RESOURCE_NAME_RE.match(record.key):
        problems.append("name must contain only alphanumeric characters, hyphens, and underscores")
    for name in ('cluster_name', 'server_fqdn', 'server_node', 'tag'):
        if not getattr(record, name):
            problems.append(f"{name} must be a non-empty string")
    try:
        ipaddress.ip_address(record.server_ip)
    except ValueError:
        problems.append("server_ip must be a valid IPv4 or IPv6 address")
    if not SERVER_URL_RE.match(record.server_url):
        problems.append("server_url must be a valid URL with protocol and port")
    if record.export_time <= 0:
        problems.append("export_time must be a positive integer timestamp")
    if not is_valid_token(record.token):
        problems.append(f"token has invalid format: {describe_invalid(record.token)}")
    if problems:
        raise PayloadValidationError(f"Record {record.key} rejected: {'; '.join(problems)}",
                                     source=record.key)
