"""Fleet command execution for fleetops.

Runs one shell command across a set of resolved hosts. Each host gets its
own task; at most ``parallel`` of them run at once and no ordering is
guaranteed across hosts. Every host task holds a client connection on the
activity log service while it runs and records its start and outcome.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from .exceptions import FleetOpsError
from .logging import log_scope
from .logstore import ActivityLogService
from .runners import (
    DEFAULT_COMMAND_TIMEOUT,
    CommandExecutor,
    OutputCallback,
    create_executor,
    get_privilege_credential,
)
from .types import SPAWN_FAILURE_EXIT_CODE, CommandResult, EffectiveHostConfig, LogLevel

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL = 10

ExecutorFactory = Callable[..., CommandExecutor]
CallbackFactory = Callable[[EffectiveHostConfig], OutputCallback | None]


@dataclass
class ExecutionResults:
    """Results from running a command across multiple hosts.

    Attributes:
        results: Dictionary mapping host names to their command results
        total_hosts: Total number of hosts executed against
        successful: Number of hosts whose command exited 0
        failed: Number of hosts whose command did not

    Example:
        >>> results = await FleetExecutor().run(hosts, "uptime")
        >>> print(f"Success: {results.successful}/{results.total_hosts}")
    """

    results: dict[str, CommandResult] = field(default_factory=dict)
    total_hosts: int = 0
    successful: int = 0
    failed: int = 0

    def __post_init__(self) -> None:
        """Calculate statistics from results."""
        if not self.results:
            return

        self.total_hosts = len(self.results)
        self.successful = sum(1 for r in self.results.values() if r.success)
        self.failed = self.total_hosts - self.successful

    def is_success(self) -> bool:
        """Check if all executions succeeded."""
        return self.failed == 0


class FleetExecutor:
    """Runs a command on many hosts through a bounded worker pool.

    Attributes:
        parallel: Maximum number of hosts running at once
        timeout: Per-command timeout in seconds
        log_service: Activity log service entries are written to (optional)
        executor_factory: Creates the executor for one host
        env: Environment the privilege credential is read from

    Example:
        >>> fleet = FleetExecutor(parallel=5, log_service=service)
        >>> results = await fleet.run(hosts, "systemctl restart nginx",
        ...                           session_id=session_id, privileged=True)
    """

    def __init__(
        self,
        parallel: int = DEFAULT_PARALLEL,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        log_service: ActivityLogService | None = None,
        executor_factory: ExecutorFactory = create_executor,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if parallel < 1:
            raise ValueError(f"parallel must be at least 1, got {parallel}")
        self.parallel = parallel
        self.timeout = timeout
        self.log_service = log_service
        self.executor_factory = executor_factory
        self.env = os.environ if env is None else env

    async def run(
        self,
        hosts: Iterable[EffectiveHostConfig],
        command: str,
        session_id: int | None = None,
        privileged: bool = False,
        callback_factory: CallbackFactory | None = None,
        label: str | None = None,
    ) -> ExecutionResults:
        """Run a command on every host.

        Args:
            hosts: Resolved host configurations
            command: Shell command line
            session_id: Log session to record entries in (optional)
            privileged: Run the command through sudo
            callback_factory: Builds a per-host output callback (optional)
            label: Step label recorded with each log entry

        Returns:
            ExecutionResults keyed by host name

        Raises:
            CredentialMissingError: If privileged and no credential is set;
                raised before any command runs
        """
        hosts = list(hosts)
        if privileged:
            get_privilege_credential(self.env)

        logger.info(f"Running command on {len(hosts)} host(s) (parallel={self.parallel})")
        semaphore = asyncio.Semaphore(self.parallel)

        async def bounded(host: EffectiveHostConfig) -> CommandResult:
            async with semaphore:
                return await self._run_host(host, command, session_id, privileged, callback_factory, label)

        with log_scope(logger, "Fleet run", level=logging.DEBUG, hosts=len(hosts), privileged=privileged):
            tasks = [(host.name, asyncio.create_task(bounded(host))) for host in hosts]
            await asyncio.gather(*[task for _, task in tasks], return_exceptions=True)

        results: dict[str, CommandResult] = {}
        for host_name, task in tasks:
            try:
                results[host_name] = task.result()
            except FleetOpsError as e:
                logger.error(f"Execution failed on {host_name}: {e}")
                results[host_name] = await self._host_failure(session_id, host_name, e)
            except Exception as e:
                logger.exception(f"Execution failed on {host_name}: {e}")
                results[host_name] = await self._host_failure(session_id, host_name, e)

        execution_results = ExecutionResults(results=results)
        logger.info(f"Completed: {execution_results.successful}/{execution_results.total_hosts} succeeded")
        return execution_results

    async def _run_host(
        self,
        host: EffectiveHostConfig,
        command: str,
        session_id: int | None,
        privileged: bool,
        callback_factory: CallbackFactory | None,
        label: str | None,
    ) -> CommandResult:
        executor = self.executor_factory(host, timeout=self.timeout, env=self.env)
        callback = callback_factory(host) if callback_factory is not None else None

        if self.log_service is None:
            return await self._execute(executor, command, privileged, callback)

        async with self.log_service.client():
            if session_id is not None:
                await self.log_service.log(session_id, host.name, label, LogLevel.INFO, f"Running: {command}")

            start = time.perf_counter()
            result = await self._execute(executor, command, privileged, callback)
            duration_ms = int((time.perf_counter() - start) * 1000)

            if session_id is not None:
                await self.log_service.log_action(session_id, host.name, label, result, duration_ms)
                await self._record_outcome(session_id, host.name, result)
        return result

    async def _host_failure(self, session_id: int | None, host_name: str, error: Exception) -> CommandResult:
        result = CommandResult.failure(str(error), SPAWN_FAILURE_EXIT_CODE)
        if self.log_service is not None and session_id is not None:
            await self._record_outcome(session_id, host_name, result)
        return result

    async def _record_outcome(self, session_id: int, node_id: str, result: CommandResult) -> None:
        if result.success:
            await self.log_service.mark_node_success(session_id, node_id)
            return
        reason = next(iter(result.stderr.splitlines()), "") or f"exit code {result.exit_code}"
        await self.log_service.mark_node_failed(session_id, node_id, reason)

    @staticmethod
    async def _execute(
        executor: CommandExecutor,
        command: str,
        privileged: bool,
        callback: OutputCallback | None,
    ) -> CommandResult:
        if privileged:
            return await executor.execute_with_privilege(command, callback)
        return await executor.execute(command, callback)
