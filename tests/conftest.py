"""Shared test fixtures for fleetops."""

import asyncio
from typing import Mapping

import pytest

from fleetops.runners import CommandExecutor, OutputCallback
from fleetops.types import CommandResult, EffectiveHostConfig


class FakeClock:
    """Manually advanced clock for deterministic timing."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCommandExecutor(CommandExecutor):
    """In-memory executor that replays canned results.

    Output lines of the canned result are delivered to the callback before
    the result is returned, like a real executor.
    """

    def __init__(
        self,
        host: EffectiveHostConfig,
        result: CommandResult | None = None,
        timeout: float = 300,
        env: Mapping[str, str] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        super().__init__(timeout=timeout, env=env if env is not None else {})
        self.host = host
        self.result = result or CommandResult(stdout=f"ok from {host.name}", stderr="", exit_code=0)
        self.delay = delay
        self.error = error
        self.commands: list[tuple[str, str | None]] = []

    @property
    def identifier(self) -> str:
        return self.host.name

    async def _run(
        self,
        command: str,
        callback: OutputCallback | None,
        stdin: str | None = None,
    ) -> CommandResult:
        self.commands.append((command, stdin))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callback is not None:
            for line in self.result.stdout.splitlines():
                callback.on_stdout(line)
            for line in self.result.stderr.splitlines():
                callback.on_stderr(line)
        return self.result


class FakeExecutorFactory:
    """Executor factory that records the executors it creates.

    Attributes:
        results: Canned result per host name
        delay: Seconds each command takes
        created: Executors created so far, keyed by host name
    """

    def __init__(
        self,
        results: dict[str, CommandResult] | None = None,
        delay: float = 0.0,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.results = results or {}
        self.delay = delay
        self.errors = errors or {}
        self.created: dict[str, FakeCommandExecutor] = {}
        self.running = 0
        self.max_running = 0

    def __call__(self, host: EffectiveHostConfig, timeout: float = 300, env=None) -> FakeCommandExecutor:
        factory = self

        class TrackingExecutor(FakeCommandExecutor):
            async def _run(self, command, callback, stdin=None):
                factory.running += 1
                factory.max_running = max(factory.max_running, factory.running)
                try:
                    return await super()._run(command, callback, stdin)
                finally:
                    factory.running -= 1

        executor = TrackingExecutor(
            host,
            result=self.results.get(host.name),
            timeout=timeout,
            env=env,
            delay=self.delay,
            error=self.errors.get(host.name),
        )
        self.created[host.name] = executor
        return executor


class RecordingCallback:
    """OutputCallback that keeps every line it receives."""

    def __init__(self) -> None:
        self.stdout: list[str] = []
        self.stderr: list[str] = []

    def on_stdout(self, line: str) -> None:
        self.stdout.append(line)

    def on_stderr(self, line: str) -> None:
        self.stderr.append(line)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def hosts():
    return [
        EffectiveHostConfig(name=f"web0{i}", hostname=f"10.0.0.{i}", user="deploy")
        for i in range(1, 4)
    ]


@pytest.fixture
def credential_env():
    return {"SUDO_PASSWORD": "s3cret"}

