"""Handshake configuration file management.

Create, validate and display the YAML configuration read by
:func:`joinctl.modules.k3s.config.get_config`.
"""
import os
import logging
from pathlib import Path
from typing import Optional, Union, Dict, Any

import yaml
from pydantic import ValidationError

from .config import DEFAULT_CONFIG_PATHS, ENV_PREFIX, HandshakeConfig
from ...utils import redact_sensitive_data

logger = logging.getLogger("k3s.configure")


def find_config_file() -> Optional[Path]:
    """First default configuration path that exists."""
    for path in DEFAULT_CONFIG_PATHS:
        path = path.expanduser().absolute()
        if path.exists():
            return path
    return None


def create_config_file(
    output_path: Optional[Union[str, Path]] = None,
    overwrite: bool = False,
) -> Path:
    """Create a new configuration file with default values.

    Args:
        output_path: Path where to save the configuration file.
                   If None, uses the first writable default location.
        overwrite: If True, overwrite existing file.

    Returns:
        Path to the created configuration file.

    Raises:
        FileExistsError: If the file exists and overwrite is False.
        PermissionError: If unable to write to the target directory.
    """
    # Determine output path
    if output_path is None:
        # Find the first writable default location
        for path in DEFAULT_CONFIG_PATHS:
            path = path.expanduser().absolute()
            if not path.exists():
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    path.touch(exist_ok=False)
                    path.unlink()
                    output_path = path
                    break
                except OSError:
                    continue
        else:
            output_path = Path("joinctl-config.yaml").absolute()
    else:
        output_path = Path(output_path).expanduser().absolute()

    if output_path.exists() and not overwrite:
        raise FileExistsError(f"File already exists: {output_path}")

    config = HandshakeConfig()
    config.save(output_path)
    logger.info(f"Created configuration file: {output_path}")

    try:
        output_path.chmod(0o600)  # Read/write for owner only
    except OSError as e:
        logger.warning(f"Could not set permissions on {output_path}: {e}")

    return output_path


def validate_config_file(config_path: Union[str, Path]) -> Dict[str, Any]:
    """Validate a configuration file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Dict containing validation results and any errors.
    """
    config_path = Path(config_path).expanduser().absolute()
    result = {
        'valid': False,
        'path': str(config_path),
        'exists': config_path.exists(),
        'errors': [],
        'warnings': []
    }

    if not result['exists']:
        result['errors'].append(f"File does not exist: {config_path}")
        return result

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        config = HandshakeConfig(**data)
    except yaml.YAMLError as e:
        result['errors'].append(f"Invalid YAML: {e}")
        return result
    except ValidationError as e:
        for error in e.errors():
            location = '.'.join(str(part) for part in error['loc'])
            result['errors'].append(f"{location}: {error['msg']}")
        return result

    result['valid'] = True

    if config.ssh.key_path and not os.path.exists(config.ssh.key_path):
        result['warnings'].append(f"SSH key not found: {config.ssh.key_path}")
    if config.channel.type == 'http' and not config.channel.url:
        result['warnings'].append("channel.type is http but channel.url is not set")
    if config.channel.type == 'scan' and not config.channel.subnet:
        result['warnings'].append("channel.type is scan but channel.subnet is not set")

    if config_path.stat().st_mode & 0o077 != 0:
        result['warnings'].append(
            f"Configuration file has insecure permissions. "
            f"Recommended: chmod 600 {config_path}"
        )

    result['config'] = redact_sensitive_data(config.model_dump(mode='json', exclude={'config_path'}))
    return result


def show_config(config: Optional[HandshakeConfig] = None) -> str:
    """Render the effective configuration and its source."""
    config = config or HandshakeConfig.load()
    source = config.config_path or find_config_file()

    lines = [
        "",
        "joinctl configuration:",
        "=" * 60,
        f"Loaded from: {source or 'default values'}",
        "-" * 60,
        yaml.safe_dump(redact_sensitive_data(config.model_dump(mode='json', exclude={'config_path'})),
                       default_flow_style=False, sort_keys=False),
        "Environment variables override file values:",
        "-" * 60,
        f"{ENV_PREFIX}SSH__USER=ubuntu",
        f"{ENV_PREFIX}READINESS__TIMEOUT=300",
        f"{ENV_PREFIX}CHANNEL__TYPE=catalog",
        f"{ENV_PREFIX}COLLECTOR__INTERVAL=5",
    ]
    return '\n'.join(lines)
