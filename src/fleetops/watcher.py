"""Idle watcher for the activity log service.

Periodically asks the log service for its activity and connection counters
and shuts the service down once it has been idle long enough with no
clients attached. The watcher runs as its own asyncio task and takes an
injectable clock so decisions can be tested without waiting.
"""

import asyncio
import contextlib
import logging
import time
from typing import Callable

from .logstore import ActivityLogService
from .types import WatcherState

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 300
DEFAULT_IDLE_THRESHOLD = 300
DEFAULT_MINIMUM_UPTIME = 30
DEFAULT_QUERY_TIMEOUT = 30


class IdleWatcher:
    """Shuts down an ActivityLogService that has gone idle.

    The service is stopped when all of these hold at a check:

    - the watcher has been running for at least ``minimum_uptime`` seconds
    - the service has no open client connections
    - no activity has been seen for at least ``idle_threshold`` seconds

    The uptime guard keeps a freshly started service alive until its first
    client has had a chance to connect.

    Attributes:
        service: The log service being watched
        check_interval: Seconds between checks
        idle_threshold: Idle seconds before shutdown
        minimum_uptime: Seconds after start during which shutdown is never decided
        query_timeout: Upper bound for one check's queries into the service
        state: Watcher state, mutated only by the watcher

    Example:
        >>> watcher = IdleWatcher(service, check_interval=60)
        >>> watcher.start()
        >>> ...
        >>> watcher.stop()
        >>> await watcher.wait_closed()
    """

    def __init__(
        self,
        service: ActivityLogService,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        idle_threshold: float = DEFAULT_IDLE_THRESHOLD,
        minimum_uptime: float = DEFAULT_MINIMUM_UPTIME,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.check_interval = check_interval
        self.idle_threshold = idle_threshold
        self.minimum_uptime = minimum_uptime
        self.query_timeout = query_timeout
        self.state = WatcherState()

        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._wakeup: asyncio.Event | None = None
        self._shutdown_triggered = False

    @property
    def is_running(self) -> bool:
        return self.state.running

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start periodic checks on the given or currently running loop.

        The first check happens one interval after start. Starting a
        running watcher does nothing. A restarted watcher may decide
        to shut its service down again.
        """
        if self.state.running:
            return

        loop = loop or asyncio.get_running_loop()
        now = self._clock()
        self.state.running = True
        self.state.started_at = now
        self.state.last_activity_at = now
        self._shutdown_triggered = False
        self._wakeup = asyncio.Event()
        self._task = loop.create_task(self._run())
        logger.info(
            f"Idle watcher started (interval={self.check_interval}s, "
            f"idle threshold={self.idle_threshold}s, minimum uptime={self.minimum_uptime}s)"
        )

    def stop(self) -> None:
        """Stop scheduling checks.

        A check already in progress runs to completion; the loop exits
        after it.
        """
        if not self.state.running:
            return
        self.state.running = False
        if self._wakeup is not None:
            self._wakeup.set()
        logger.debug("Idle watcher stopping")

    async def wait_closed(self) -> None:
        """Wait for the periodic task to exit."""
        if self._task is not None and self._task is not asyncio.current_task():
            await self._task

    async def _run(self) -> None:
        while self.state.running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.check_interval)
            if not self.state.running:
                break
            await self.check_and_decide()
        logger.info("Idle watcher stopped")

    async def check_and_decide(self) -> bool:
        """Run one check and shut the service down if it is idle.

        Errors are logged and the watcher keeps running; a query that does
        not finish within ``query_timeout`` is abandoned until the next
        interval.

        Returns:
            True if this call triggered the shutdown
        """
        try:
            should_stop = await asyncio.wait_for(self._evaluate(), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Idle check did not complete within {self.query_timeout}s, retrying next interval")
            return False
        except Exception as e:
            logger.error(f"Idle check failed: {e}")
            return False

        if not should_stop:
            return False

        self._shutdown_triggered = True
        try:
            await self.service.stop()
        except Exception as e:
            logger.error(f"Failed to stop idle log service: {e}")
        self.stop()
        return True

    async def _evaluate(self) -> bool:
        if self._shutdown_triggered:
            return False

        if not self.service.is_running:
            logger.info("Log service is no longer running, stopping idle watcher")
            self.stop()
            return False

        now = self._clock()
        if self.service.has_new_activity():
            self.state.last_activity_at = now - self.service.idle_seconds()
        connections = self.service.open_connection_count

        idle = now - self.state.last_activity_at
        uptime = now - self.state.started_at
        logger.debug(f"Idle check: connections={connections}, idle={idle:.1f}s, uptime={uptime:.1f}s")

        if uptime < self.minimum_uptime:
            return False
        if connections > 0:
            return False
        if idle < self.idle_threshold:
            return False

        logger.info(f"Log service idle for {idle:.0f}s with no connections, shutting down")
        return True
