"""Typed failures raised by the join handshake.

Transient conditions (service not active yet, token missing, port closed,
package lock held) never escape the polling loops. Only budget exhaustion and
structural validation failures propagate, as one of the exceptions below.
"""
from typing import Any, Dict, List, Optional


class HandshakeError(Exception):
    """Base class for every handshake failure."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {'error': type(self).__name__, 'message': self.message, **self.context}


class ConfigurationError(HandshakeError):
    """Invalid parameters (timeouts out of range, unknown channel type...)."""


class CommandError(HandshakeError):
    """A local or remote command exited non-zero."""

    def __init__(self, command: str, exit_status: int, stdout: str = '', stderr: str = ''):
        message = f"Command '{command}' failed with exit status {exit_status}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message, command=command, exit_status=exit_status)
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class GateTimeout(HandshakeError):
    """A readiness gate exhausted its budget."""

    def __init__(self, gate: str, waited: float, last_status: str):
        super().__init__(
            f"Gate '{gate}' timed out after {waited:.0f}s (last status: {last_status})",
            gate=gate, waited=round(waited, 1), last_status=last_status,
        )
        self.gate = gate
        self.waited = waited
        self.last_status = last_status


class PublicationRefused(HandshakeError):
    """A token was offered for publication without a passing readiness chain."""


class PayloadValidationError(HandshakeError):
    """A collected payload is structurally incomplete or carries a bad token."""

    def __init__(self, message: str, missing: Optional[List[str]] = None, source: str = ''):
        super().__init__(message, missing=missing or [], source=source)
        self.missing = missing or []
        self.source = source


class CollectionTimeout(HandshakeError):
    """No usable cluster information appeared before the deadline."""


class JoinFailed(HandshakeError):
    """Every join attempt failed."""

    def __init__(self, message: str, attempts: int, logs: str = '', errors: Optional[List[str]] = None):
        super().__init__(message, attempts=attempts, errors=errors or [])
        self.attempts = attempts
        self.logs = logs
        self.errors = errors or []


class MembershipError(HandshakeError):
    """The cluster did not reach the expected membership."""
