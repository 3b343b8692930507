"""Command execution on the local host or over SSH.

Commands are described by :class:`CommandSpec` objects rather than
interpolated shell strings. Secrets (join tokens) are carried separately from
the command line: as process environment locally, and over stdin for SSH, so
they never show up in a rendered command or a log line.
"""

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..ssh import TRANSIENT_SSH_ERRORS, ConnectionPool, get_ssh_pool
from .errors import CommandError

logger = logging.getLogger("k3s.runner")


@dataclass
class CommandResult:
    """Result of a command execution."""
    exit_status: int
    stdout: str = ''
    stderr: str = ''
    command: str = ''
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


@dataclass
class CommandSpec:
    """A typed command: argv plus environment, with secrets kept apart."""
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    secret_env: Dict[str, str] = field(default_factory=dict)
    sudo: bool = False
    timeout: Optional[int] = None

    @classmethod
    def shell(cls, script: str, **kwargs) -> 'CommandSpec':
        """Wrap a fixed shell snippet. The snippet must not embed secrets."""
        return cls(argv=['sh', '-c', script], **kwargs)

    def display(self) -> str:
        """Printable form of the command, secrets masked."""
        parts = [f"{k}={v}" for k, v in self.env.items()]
        parts += [f"{k}=***" for k in self.secret_env]
        prefix = 'sudo ' if self.sudo else ''
        return prefix + ' '.join(parts + [shlex.join(self.argv)])

    def render(self) -> Tuple[str, str]:
        """Render as a single remote command line plus the data to feed on stdin.

        Secret values are read from stdin by the remote shell, one per line,
        and exported before the real command is exec'd.
        """
        inner = self.argv
        if self.env:
            inner = ['env'] + [f"{k}={v}" for k, v in self.env.items()] + inner
        command = shlex.join(inner)
        stdin_data = ''

        if self.secret_env:
            names = list(self.secret_env)
            reads = ''.join(f"IFS= read -r {name}; export {name}; " for name in names)
            command = shlex.join(['sh', '-c', f"{reads}exec {command}"])
            stdin_data = ''.join(f"{self.secret_env[name]}\n" for name in names)

        if self.sudo:
            command = f"sudo -n {command}"
        return command, stdin_data


class CommandRunner:
    """Base class for anything that can run a :class:`CommandSpec`."""

    name = 'runner'

    def run(self, spec: CommandSpec) -> CommandResult:
        raise NotImplementedError

    def close(self) -> None:
        """Release any connection held for this runner."""

    def check(self, spec: CommandSpec) -> str:
        """Run and return stripped stdout, raising ``CommandError`` on failure."""
        result = self.run(spec)
        if not result.ok:
            raise CommandError(spec.display(), result.exit_status, result.stdout, result.stderr)
        return result.output


class LocalRunner(CommandRunner):
    """Run commands on this machine with subprocess."""

    name = 'localhost'

    def __init__(self, default_timeout: int = 300):
        self.default_timeout = default_timeout

    def run(self, spec: CommandSpec) -> CommandResult:
        argv = list(spec.argv)
        if spec.sudo and os.geteuid() != 0:
            sudo = ['sudo', '-n']
            if spec.secret_env or spec.env:
                sudo.append(f"--preserve-env={','.join(list(spec.env) + list(spec.secret_env))}")
            argv = sudo + argv

        env = dict(os.environ)
        env.update(spec.env)
        env.update(spec.secret_env)
        timeout = spec.timeout or self.default_timeout

        logger.debug(f"$ {spec.display()}")
        start_time = time.monotonic()
        try:
            result = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            return CommandResult(124, '', f"Command timed out after {timeout} seconds",
                                 spec.display(), time.monotonic() - start_time)
        except OSError as e:
            return CommandResult(127, '', str(e), spec.display(), time.monotonic() - start_time)

        return CommandResult(result.returncode, result.stdout, result.stderr,
                             spec.display(), time.monotonic() - start_time)


class SSHRunner(CommandRunner):
    """Run commands on a remote host through the SSH connection pool."""

    def __init__(
        self,
        host: str,
        username: str,
        key_path: Optional[str] = None,
        port: int = 22,
        connect_timeout: int = 10,
        command_timeout: int = 300,
        strict_host_key: bool = False,
        pool: Optional[ConnectionPool] = None,
        max_timeout: Optional[float] = None,
    ):
        self.host = host
        self.username = username
        self.key_path = key_path
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.strict_host_key = strict_host_key
        self.pool = pool or get_ssh_pool()
        self.max_timeout = max_timeout
        self.name = host

    def run(self, spec: CommandSpec) -> CommandResult:
        command, stdin_data = spec.render()
        timeout = spec.timeout or self.command_timeout
        if self.max_timeout is not None:
            timeout = min(timeout, self.max_timeout)
        logger.debug(f"[{self.host}] $ {spec.display()}")

        start_time = time.monotonic()
        try:
            conn = self.pool.get_connection(
                host=self.host,
                username=self.username,
                key_path=self.key_path,
                port=self.port,
                timeout=self.connect_timeout,
                strict_host_key=self.strict_host_key,
            )
            exit_status, stdout, stderr = conn.execute(command, stdin_data=stdin_data or None, timeout=timeout)
        except TRANSIENT_SSH_ERRORS as e:
            # 255 is what OpenSSH reports for connection-level failures
            self.pool.discard(self.host, self.username, self.port)
            return CommandResult(255, '', f"{type(e).__name__}: {e}", spec.display(),
                                 time.monotonic() - start_time)

        return CommandResult(exit_status, stdout, stderr, spec.display(), time.monotonic() - start_time)

    def close(self) -> None:
        self.pool.discard(self.host, self.username, self.port)


def remote_exec(
    host: str,
    user: str,
    command: str,
    key_path: Optional[str] = None,
    port: int = 22,
    connect_timeout: int = 10,
    timeout: int = 300,
    strict_host_key: bool = False,
) -> str:
    """Run ``command`` on ``host`` as ``user`` and return its stdout.

    Raises:
        CommandError: On a non-zero exit status or a connection failure
    """
    runner = SSHRunner(host, user, key_path=key_path, port=port, connect_timeout=connect_timeout,
                       command_timeout=timeout, strict_host_key=strict_host_key)
    return runner.check(CommandSpec.shell(command))
