"""Async SSH transport for fleetops.

Provides single-use SSH sessions built on asyncssh. A session is opened for
exactly one command invocation and closed afterwards; connections are never
pooled.

Authentication follows asyncssh defaults: ssh-agent keys, default key files
and ``~/.ssh/config``. An explicit identity file can be set per host through
the inventory.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

import asyncssh

from .types import EffectiveHostConfig

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]


@dataclass
class SSHConfig:
    """SSH connection configuration.

    Attributes:
        hostname: Remote hostname or IP
        port: SSH port (default 22)
        username: SSH username (default current user)
        password: Password for authentication (optional)
        client_keys: List of private key paths (optional)
        known_hosts: Path to known_hosts file (None to disable checking)
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: str | None = ()  # Empty tuple = use default known_hosts
    connect_timeout: float = 30.0
    keepalive_interval: float = 30.0

    @classmethod
    def from_host(cls, host: EffectiveHostConfig, **overrides: Any) -> "SSHConfig":
        """Build an SSH config from a resolved host configuration."""
        options: dict[str, Any] = {
            "hostname": host.hostname,
            "port": host.port,
            "username": host.user,
            "client_keys": [host.identity_file] if host.identity_file else None,
        }
        options.update(overrides)
        return cls(**options)

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }

        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None  # Disable host key checking
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts

        return options


class SSHSession:
    """A single-use SSH connection.

    Example:
        async with SSHSession(SSHConfig("server.example.com")) as session:
            stdout, stderr, rc = await session.run("uptime")
    """

    def __init__(self, config: SSHConfig) -> None:
        self.config = config
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def name(self) -> str:
        return self.config.hostname

    async def __aenter__(self) -> "SSHSession":
        logger.debug(f"Connecting to {self.config.hostname}:{self.config.port}")
        self._conn = await asyncssh.connect(**self.config.to_asyncssh_options())
        logger.debug(f"Connected to {self.config.hostname}")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            logger.debug(f"Disconnected from {self.config.hostname}")
            self._conn = None

    async def run(
        self,
        command: str,
        stdin: str = "",
        timeout: float = 300,
        on_stdout: LineHandler | None = None,
        on_stderr: LineHandler | None = None,
    ) -> tuple[str, str, int | None]:
        """Run a command, streaming output line by line.

        stdout and stderr are drained concurrently. Each handler is called
        synchronously for every line of its stream, in the order the lines
        arrive on that stream.

        Args:
            command: Command to execute
            stdin: Input to send to the command's stdin
            timeout: Command timeout in seconds
            on_stdout: Called with each stdout line (without newline)
            on_stderr: Called with each stderr line (without newline)

        Returns:
            Tuple of (stdout, stderr, return_code). return_code is None when
            the command timed out; stdout then holds the output read so far.

        Raises:
            RuntimeError: If the session is not open
        """
        if self._conn is None:
            raise RuntimeError(f"SSH session to {self.config.hostname} is not open")

        logger.debug(f"Running on {self.config.hostname}: {command[:100]}")

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []

        async with self._conn.create_process(command) as process:
            if stdin:
                process.stdin.write(stdin)
                await process.stdin.drain()
            process.stdin.write_eof()

            async def read_stream(stream: Any, lines: list[str], handler: LineHandler | None) -> None:
                async for line in stream:
                    line = line.rstrip("\r\n")
                    lines.append(line)
                    if handler is not None:
                        handler(line)

            async def drain() -> None:
                await asyncio.gather(
                    read_stream(process.stdout, stdout_lines, on_stdout),
                    read_stream(process.stderr, stderr_lines, on_stderr),
                )
                await process.wait()

            try:
                await asyncio.wait_for(drain(), timeout=timeout)
            except asyncio.TimeoutError:
                process.kill()
                logger.error(f"Command timed out after {timeout}s on {self.config.hostname}: {command[:50]}")
                return "\n".join(stdout_lines), "\n".join(stderr_lines), None

            return_code = process.returncode

        logger.debug(
            f"Command completed on {self.config.hostname}: rc={return_code}, "
            f"stdout={len(stdout_lines)} lines, stderr={len(stderr_lines)} lines"
        )
        return "\n".join(stdout_lines), "\n".join(stderr_lines), return_code
