"""Periodic liveness probe for one live connection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from toolbridge.errors import HealthCheckFailure
from toolbridge.utils import set_server_context

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Probes a server every `interval` seconds; on the first failure it stops
    itself and calls `on_failure` exactly once.

    Failures come from a failed or timed-out probe, from check_now() after
    the process closed its stderr, or from trigger_failure() when the session
    runner exits on its own.
    """

    def __init__(
        self,
        server_id: str,
        probe: Callable[[], Awaitable[Any]],
        on_failure: Callable[[HealthCheckFailure], Awaitable[None]],
        interval: float = 60.0,
        timeout: float = 15.0,
    ):
        self.server_id = server_id
        self.interval = interval
        self.timeout = timeout
        self._probe = probe
        self._on_failure = on_failure
        self._task: Optional[asyncio.Task] = None
        self._side_tasks: Set[asyncio.Task] = set()
        self._stopped = False
        self._failed = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failed(self) -> bool:
        return self._failed

    def start(self) -> None:
        if self._stopped or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"health-{self.server_id}")

    def stop(self) -> None:
        """Cancel the timer and any pending probe, except the calling task."""
        self._stopped = True
        current = asyncio.current_task()
        for task in [self._task, *self._side_tasks]:
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._side_tasks.clear()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    def check_now(self, reason: str = "on-demand") -> None:
        """Run one probe immediately, outside the regular schedule."""
        if self._stopped:
            return
        logger.info(f"Immediate health check for {self.server_id} ({reason})")
        self._spawn(self.probe_once())

    def trigger_failure(self, reason: str) -> None:
        """Report a failure observed elsewhere (e.g. the session ended)."""
        if self._stopped:
            return
        self._spawn(self._fail(reason))

    async def _loop(self) -> None:
        set_server_context(self.server_id)
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if not await self.probe_once():
                return

    async def probe_once(self) -> bool:
        try:
            await asyncio.wait_for(self._probe(), self.timeout)
        except asyncio.TimeoutError:
            await self._fail(f"probe timed out after {self.timeout:g}s")
            return False
        except Exception as e:
            await self._fail(str(e) or type(e).__name__)
            return False
        logger.debug(f"Health check passed for {self.server_id}")
        return True

    async def _fail(self, reason: str) -> None:
        if self._failed or self._stopped:
            return
        self._failed = True
        self.stop()

        failure = HealthCheckFailure(self.server_id, reason)
        logger.warning(str(failure))
        try:
            await self._on_failure(failure)
        except Exception as e:
            logger.error(f"Failure handler for {self.server_id} raised: {e}")
