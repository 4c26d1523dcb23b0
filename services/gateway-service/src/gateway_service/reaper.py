"""Idle reaper: stops backend instances nobody has used for a while."""

import asyncio
import time
from typing import Callable

from gateway_service.core.logging import get_logger
from gateway_service.supervisor.instance import InstanceState
from gateway_service.supervisor.supervisor import Supervisor

logger = get_logger(__name__)


class IdleReaper:
    """Background loop that drains idle instances.

    An instance is idle when it is healthy, has nothing in flight and its last
    completed request is older than ``idle_timeout``. ``last_activity`` only
    moves when a request completes, so a single long call keeps its instance
    alive through ``in_flight``.
    """

    def __init__(
        self,
        supervisor: Supervisor,
        idle_timeout: float,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.supervisor = supervisor
        self.idle_timeout = idle_timeout
        self.interval = interval
        self.clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def reap_once(self) -> list[str]:
        """Run one sweep. Returns the ids of the instances that were stopped."""
        await self.supervisor.check_health()

        now = self.clock()
        candidates = [
            status.instance_id
            for status in self.supervisor.instances()
            if status.state == InstanceState.HEALTHY
            and status.in_flight == 0
            and now - status.last_activity > self.idle_timeout
        ]

        reaped: list[str] = []
        for instance_id in candidates:
            # drain() re-checks; a request may have arrived since the scan.
            if await self.supervisor.drain(instance_id, idle_before=now - self.idle_timeout):
                reaped.append(instance_id)

        if reaped:
            logger.info("Reaped idle instances", count=len(reaped), instance_ids=reaped)
        return reaped

    async def _run(self) -> None:
        logger.info("Idle reaper started", idle_timeout=self.idle_timeout, interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.reap_once()
            except Exception:
                logger.exception("Idle reaper sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="idle-reaper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Idle reaper stopped")
