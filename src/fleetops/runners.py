"""Command executors for fleetops.

Defines the command-execution capability and its two implementations:

- LocalCommandExecutor runs commands on the control host through a shell.
- RemoteCommandExecutor runs commands over a single-use SSH session.

Both return a CommandResult for every outcome, including timeouts and
spawn/transport failures. The only exception an executor raises is
CredentialMissingError, when privilege escalation is requested without a
credential in the environment.
"""

import asyncio
import contextlib
import logging
import os
import shlex
import signal
import socket
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Protocol

import asyncssh

from .exceptions import CredentialMissingError
from .logging import log_output_line, log_scope
from .ssh import SSHConfig, SSHSession
from .types import (
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    TRANSPORT_FAILURE_EXIT_CODE,
    CommandResult,
    EffectiveHostConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 300
PRIVILEGE_CREDENTIAL_ENV = "SUDO_PASSWORD"

# Upper bound for a single output line held in memory
STREAM_LIMIT = 8 * 1024 * 1024

# How long to wait for output readers after the process has exited
READER_JOIN_TIMEOUT = 1.0
EXIT_POLL_INTERVAL = 0.05


class OutputCallback(Protocol):
    """Receives command output line by line as it is produced.

    Lines arrive in order within each stream; there is no ordering
    guarantee between stdout and stderr.
    """

    def on_stdout(self, line: str) -> None: ...

    def on_stderr(self, line: str) -> None: ...


class LineCallback:
    """OutputCallback built from two plain callables.

    Example:
        >>> callback = LineCallback(on_stdout=print)
        >>> result = await executor.execute("ls", callback)
    """

    def __init__(
        self,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> None:
        self._on_stdout = on_stdout
        self._on_stderr = on_stderr

    def on_stdout(self, line: str) -> None:
        if self._on_stdout is not None:
            self._on_stdout(line)

    def on_stderr(self, line: str) -> None:
        if self._on_stderr is not None:
            self._on_stderr(line)


def get_privilege_credential(env: Mapping[str, str] | None = None) -> str:
    """Read the privilege-escalation credential from the environment.

    Raises:
        CredentialMissingError: If the variable is unset or empty
    """
    env = os.environ if env is None else env
    credential = env.get(PRIVILEGE_CREDENTIAL_ENV)
    if not credential:
        raise CredentialMissingError(PRIVILEGE_CREDENTIAL_ENV)
    return credential


def wrap_privileged(command: str) -> str:
    """Wrap a command to run under sudo, reading the password from stdin."""
    return f"sudo -S -p '' bash -c {shlex.quote(command)}"


def _line_handler(
    callback: OutputCallback | None, stream_name: str, identifier: str
) -> Callable[[str], None]:
    """Build a per-line handler that forwards to the callback.

    Callback errors are logged and do not stop the stream from draining.
    """
    target = getattr(callback, f"on_{stream_name}") if callback is not None else None

    def handle(line: str) -> None:
        log_output_line(identifier, stream_name, line)
        if target is None:
            return
        try:
            target(line)
        except Exception as e:
            logger.warning(f"Output callback error on {identifier} ({stream_name}): {e}")

    return handle


class CommandExecutor(ABC):
    """Abstract command-execution capability.

    Implementations provide ``identifier`` and ``_run``; privilege
    escalation and timing are shared.

    Attributes:
        timeout: Per-command timeout in seconds
        env: Environment mapping the privilege credential is read from
    """

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.env = os.environ if env is None else env

    @property
    @abstractmethod
    def identifier(self) -> str:
        """Short identifier for this executor (e.g., the hostname)."""

    @abstractmethod
    async def _run(
        self,
        command: str,
        callback: OutputCallback | None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run a shell command and collect its result."""

    async def execute(
        self, command: str, callback: OutputCallback | None = None
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Shell command line
            callback: Optional receiver for output lines as they are produced

        Returns:
            CommandResult; never raises for execution failures
        """
        with log_scope(logger, f"Command on {self.identifier}"):
            return await self._run(command, callback)

    async def execute_with_privilege(
        self, command: str, callback: OutputCallback | None = None
    ) -> CommandResult:
        """Execute a command with sudo.

        The credential is taken from SUDO_PASSWORD in the executor's
        environment and written to sudo's stdin.

        Raises:
            CredentialMissingError: If SUDO_PASSWORD is not set
        """
        credential = get_privilege_credential(self.env)
        with log_scope(logger, f"Privileged command on {self.identifier}"):
            return await self._run(wrap_privileged(command), callback, stdin=f"{credential}\n")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.identifier!r})"


class LocalCommandExecutor(CommandExecutor):
    """Runs commands on the control host through ``/bin/sh -c``.

    stdout and stderr are drained by two concurrent readers, so a command
    that writes heavily to both streams cannot block on a full pipe. The
    child runs in its own process session; on timeout the whole process
    group is killed.

    Example:
        >>> executor = LocalCommandExecutor(timeout=10)
        >>> result = await executor.execute("echo hello")
        >>> result.stdout
        'hello'
    """

    def __init__(
        self,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        env: Mapping[str, str] | None = None,
        shell: str = "/bin/sh",
    ) -> None:
        super().__init__(timeout=timeout, env=env)
        self.shell = shell
        try:
            self._hostname = socket.gethostname() or "localhost"
        except OSError:
            self._hostname = "localhost"

    @property
    def identifier(self) -> str:
        return self._hostname

    async def _run(
        self,
        command: str,
        callback: OutputCallback | None,
        stdin: str | None = None,
    ) -> CommandResult:
        logger.debug(f"Running locally: {command[:100]}")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to start command: {e}")
            return CommandResult.failure(f"Failed to start command: {e}", SPAWN_FAILURE_EXIT_CODE)

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = [
            asyncio.create_task(
                self._read_lines(proc.stdout, stdout_lines, _line_handler(callback, "stdout", self.identifier))
            ),
            asyncio.create_task(
                self._read_lines(proc.stderr, stderr_lines, _line_handler(callback, "stderr", self.identifier))
            ),
        ]

        if stdin is not None:
            await self._feed_stdin(proc, stdin)

        try:
            await asyncio.wait_for(self._wait_exit(proc), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Command timed out after {self.timeout}s: {command[:50]}")
            self._kill(proc)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wait_exit(proc), timeout=READER_JOIN_TIMEOUT)
            await self._join_readers(readers)
            return CommandResult(
                stdout="\n".join(stdout_lines),
                stderr=f"Command timed out after {self.timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )

        await self._join_readers(readers)

        logger.debug(
            f"Command completed: rc={proc.returncode}, "
            f"stdout={len(stdout_lines)} lines, stderr={len(stderr_lines)} lines"
        )
        return CommandResult(
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            exit_code=proc.returncode,
        )

    @staticmethod
    async def _read_lines(
        stream: asyncio.StreamReader, lines: list[str], handler: Callable[[str], None]
    ) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            handler(line)

    @staticmethod
    async def _feed_stdin(proc: asyncio.subprocess.Process, data: str) -> None:
        try:
            proc.stdin.write(data.encode())
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Command closed stdin before reading all input")
        finally:
            proc.stdin.close()

    @staticmethod
    async def _wait_exit(proc: asyncio.subprocess.Process) -> int:
        """Wait for the shell to exit.

        Process.wait() can also wait for the pipes to close, which a
        backgrounded grandchild may hold open indefinitely.
        """
        while proc.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return proc.returncode

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.warning(f"Cannot kill process group {proc.pid}, killing the shell only")
            with contextlib.suppress(ProcessLookupError, PermissionError):
                proc.kill()

    @staticmethod
    async def _join_readers(readers: list[asyncio.Task[None]]) -> None:
        """Wait a bounded time for the readers, then cancel stragglers.

        A background grandchild can keep a pipe open after the shell exits;
        its output is abandoned rather than waited for.
        """
        done, pending = await asyncio.wait(readers, timeout=READER_JOIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            logger.debug(f"Abandoned {len(pending)} output reader(s) still open after exit")
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                logger.warning(f"Output reader failed: {task.exception()}")


class RemoteCommandExecutor(CommandExecutor):
    """Runs commands on a remote host over SSH.

    Every invocation opens its own SSH session and closes it when the
    command finishes; nothing is cached between calls.

    Example:
        >>> host = EffectiveHostConfig(name="web01", hostname="10.0.0.5", user="deploy")
        >>> executor = RemoteCommandExecutor(host)
        >>> result = await executor.execute("uptime")
    """

    def __init__(
        self,
        host: EffectiveHostConfig,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        env: Mapping[str, str] | None = None,
        **ssh_options: Any,
    ) -> None:
        super().__init__(timeout=timeout, env=env)
        self.host = host
        self.ssh_config = SSHConfig.from_host(host, **ssh_options)

    @property
    def identifier(self) -> str:
        return self.host.hostname

    async def _run(
        self,
        command: str,
        callback: OutputCallback | None,
        stdin: str | None = None,
    ) -> CommandResult:
        try:
            async with SSHSession(self.ssh_config) as session:
                stdout, stderr, return_code = await session.run(
                    command,
                    stdin=stdin or "",
                    timeout=self.timeout,
                    on_stdout=_line_handler(callback, "stdout", self.identifier),
                    on_stderr=_line_handler(callback, "stderr", self.identifier),
                )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            logger.error(f"SSH connection to {self.identifier} failed: {e}")
            return CommandResult.failure(
                f"SSH connection failed: {e}", TRANSPORT_FAILURE_EXIT_CODE
            )

        if return_code is None:
            return CommandResult(
                stdout=stdout,
                stderr=f"Command timed out after {self.timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
        return CommandResult(stdout=stdout, stderr=stderr, exit_code=return_code)


def create_executor(
    host: EffectiveHostConfig,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    env: Mapping[str, str] | None = None,
    **ssh_options: Any,
) -> CommandExecutor:
    """Create the executor matching a host's configuration.

    Local-mode hosts get a LocalCommandExecutor; every other host gets a
    RemoteCommandExecutor.

    Example:
        >>> create_executor(resolve_local())
        LocalCommandExecutor('myhost')
    """
    if host.is_local:
        return LocalCommandExecutor(timeout=timeout, env=env)
    return RemoteCommandExecutor(host, timeout=timeout, env=env, **ssh_options)
