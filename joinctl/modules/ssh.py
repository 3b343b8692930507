"""
SSH connection management using paramiko.
"""
import logging
import os
import socket
import threading
from typing import Dict, Optional, Tuple

import paramiko
from paramiko.ssh_exception import (
    AuthenticationException,
    NoValidConnectionsError,
    SSHException,
)

logger = logging.getLogger("ssh")

# Errors that mean "host not reachable yet" rather than "command failed"
TRANSIENT_SSH_ERRORS = (
    socket.timeout,
    socket.error,
    NoValidConnectionsError,
    SSHException,
    EOFError,
)


class SSHConnection:
    """A single paramiko SSH session to one host."""

    def __init__(
        self,
        host: str,
        username: str,
        key_path: Optional[str] = None,
        port: int = 22,
        timeout: int = 10,
        strict_host_key: bool = False,
    ):
        """Initialize SSH connection.

        Args:
            host: Remote host to connect to
            username: Username for authentication
            key_path: Path to SSH private key (optional, falls back to agent/default keys)
            port: SSH port (default: 22)
            timeout: Connect timeout in seconds (default: 10)
            strict_host_key: Reject unknown host keys; ephemeral test hosts leave this off
        """
        self.host = host
        self.username = username
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.port = port
        self.timeout = timeout
        self.strict_host_key = strict_host_key
        self.client: Optional[paramiko.SSHClient] = None

    def __enter__(self):
        """Context manager entry point."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit point.

        Pooled connections stay open; the pool closes them in ``close_all``.
        """
        return None

    def connect(self) -> None:
        """Open the session if it is not already open."""
        if self.is_active():
            return

        client = paramiko.SSHClient()
        if self.strict_host_key:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.debug(f"Connecting to {self.username}@{self.host}:{self.port} (timeout {self.timeout}s)")
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                key_filename=self.key_path,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                look_for_keys=self.key_path is None,
            )
        except AuthenticationException:
            client.close()
            logger.error(f"Authentication failed for {self.username}@{self.host}")
            raise
        except TRANSIENT_SSH_ERRORS:
            client.close()
            raise
        self.client = client

    def is_active(self) -> bool:
        """Check whether the underlying transport is still usable."""
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def execute(
        self,
        command: str,
        stdin_data: Optional[str] = None,
        timeout: int = 300,
    ) -> Tuple[int, str, str]:
        """Execute a command and return (exit_status, stdout, stderr).

        Args:
            command: The command line to run on the remote host
            stdin_data: Optional text written to the command's stdin, then closed
            timeout: Channel timeout in seconds
        """
        self.connect()
        stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        if stdin_data:
            stdin.write(stdin_data)
            stdin.flush()
        stdin.channel.shutdown_write()

        output = stdout.read().decode('utf-8', errors='replace')
        error = stderr.read().decode('utf-8', errors='replace')
        exit_status = stdout.channel.recv_exit_status()
        return exit_status, output, error

    def close(self) -> None:
        """Close the SSH connection."""
        if self.client is not None:
            self.client.close()
            self.client = None


class ConnectionPool:
    """Thread-safe SSH connection pool keyed by user@host:port."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(ConnectionPool, cls).__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if getattr(self, '_initialized', False):
            return

        self.connections: Dict[str, SSHConnection] = {}
        self.lock = threading.RLock()
        self._initialized = True

    def get_connection(self, host: str, username: str, key_path: Optional[str] = None, **kwargs) -> SSHConnection:
        """Get a live connection from the pool, opening one if needed.

        Args:
            host: SSH host to connect to
            username: SSH username
            key_path: Path to SSH private key
            **kwargs: port, timeout, strict_host_key

        Returns:
            SSHConnection: An active SSH connection
        """
        connection_id = f"{username}@{host}:{kwargs.get('port', 22)}"

        with self.lock:
            conn = self.connections.get(connection_id)
            if conn is not None and conn.is_active():
                return conn
            if conn is not None:
                logger.debug(f"Dropping stale connection {connection_id}")
                conn.close()

            logger.debug(f"Creating new SSH connection to {connection_id}")
            conn = SSHConnection(host=host, username=username, key_path=key_path, **kwargs)
            conn.connect()
            self.connections[connection_id] = conn
            return conn

    def discard(self, host: str, username: str, port: int = 22) -> None:
        """Close and forget one connection, e.g. after a transport error."""
        with self.lock:
            conn = self.connections.pop(f"{username}@{host}:{port}", None)
            if conn is not None:
                conn.close()

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self.lock:
            for conn in self.connections.values():
                conn.close()
            self.connections.clear()


# Global instance
ssh_pool = ConnectionPool()


def get_ssh_pool() -> ConnectionPool:
    """Get the global SSH connection pool."""
    return ssh_pool
