"""Join token validation and the server-side credential store."""

import logging
import re
from typing import List, Optional, Sequence, Tuple

from .models import TokenStatus

logger = logging.getLogger("k3s.token")

TOKEN_MIN_LENGTH = 40
TOKEN_PREFIX_RE = re.compile(r'^K[0-9a-f]')

DEFAULT_TOKEN_FILES: List[str] = [
    '/var/lib/rancher/k3s/server/node-token',  # Standard location
    '/var/lib/rancher/k3s/server/token',       # Alternative location
]


def normalize_token(raw: Optional[str]) -> str:
    """Strip surrounding whitespace and any embedded CR/LF."""
    if raw is None:
        return ''
    return raw.replace('\r', '').replace('\n', '').strip()


def is_valid_token(token: Optional[str]) -> bool:
    """A token is accepted only if it is longer than 40 chars and starts with K[0-9a-f]."""
    if not token or not isinstance(token, str):
        return False
    return len(token) > TOKEN_MIN_LENGTH and bool(TOKEN_PREFIX_RE.match(token))


def classify_token(raw: Optional[str]) -> Tuple[TokenStatus, str]:
    """Classify a token file read as VALID, INVALID or MISSING.

    Args:
        raw: File content, or None if the file does not exist

    Returns:
        tuple: (status, normalized token)
    """
    if raw is None:
        return TokenStatus.MISSING, ''
    token = normalize_token(raw)
    if is_valid_token(token):
        return TokenStatus.VALID, token
    return TokenStatus.INVALID, token


def describe_invalid(token: str) -> str:
    """Short diagnostic for a malformed token that never prints it whole."""
    return f"{token[:5]}... (length: {len(token)})" if token else "empty (length: 0)"


class CredentialStore:
    """Reads the locally generated join token from the first file that exists."""

    def __init__(self, host, token_files: Optional[Sequence[str]] = None):
        """
        Args:
            host: K3sHost used to read files (local or remote)
            token_files: Candidate token file paths in order of preference
        """
        self.host = host
        self.token_files = list(token_files or DEFAULT_TOKEN_FILES)

    def read(self) -> Tuple[TokenStatus, str]:
        """Read and classify the token."""
        for path in self.token_files:
            content = self.host.read_file(path)
            if content is None:
                continue
            status, token = classify_token(content)
            if status == TokenStatus.INVALID:
                logger.debug(f"Token file {path} has invalid content: {describe_invalid(token)}")
            return status, token
        return TokenStatus.MISSING, ''

    def token(self) -> Optional[str]:
        """The token if it is present and well-formed, otherwise None."""
        status, token = self.read()
        return token if status == TokenStatus.VALID else None
