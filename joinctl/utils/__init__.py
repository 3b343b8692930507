"""Utility functions and helpers for the joinctl application."""
import json
from typing import Any

from ..config import Config
from ..logging import TOKEN_PATTERN, mask_token


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Values under a sensitive key are replaced; token-shaped strings anywhere
    else are masked.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if v is not None and any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    elif isinstance(data, str) and TOKEN_PATTERN.search(data):
        return TOKEN_PATTERN.sub(lambda m: mask_token(m.group(0)), data)
    return data


def to_json(data: Any) -> str:
    """Redacted, indented JSON for CLI output."""
    return json.dumps(redact_sensitive_data(data), indent=2, default=str)
