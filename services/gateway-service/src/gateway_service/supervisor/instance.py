"""Backend instance state machine and the handles given to the dispatcher."""

import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from gateway_service.catalog.models import BackendSpec, ConcurrencyModel
from gateway_service.mcp.client import BackendConnectionLost, MCPClient
from gateway_service.runtime import ProcessHandle


class InstanceState(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    DRAINING = "draining"
    STOPPED = "stopped"
    CRASHED = "crashed"

    @property
    def terminal(self) -> bool:
        return self in (InstanceState.STOPPED, InstanceState.CRASHED)


_TRANSITIONS: dict[InstanceState, frozenset[InstanceState]] = {
    InstanceState.STARTING: frozenset(
        {InstanceState.HEALTHY, InstanceState.CRASHED, InstanceState.STOPPED}
    ),
    InstanceState.HEALTHY: frozenset({InstanceState.DRAINING, InstanceState.CRASHED}),
    InstanceState.DRAINING: frozenset({InstanceState.STOPPED, InstanceState.CRASHED}),
    InstanceState.STOPPED: frozenset(),
    InstanceState.CRASHED: frozenset(),
}


class InvalidTransition(RuntimeError):
    pass


class BackendInstance:
    """One launched backend process. Owned by the supervisor."""

    def __init__(self, backend: BackendSpec, clock: Callable[[], float] = time.monotonic):
        self.instance_id = uuid.uuid4().hex
        self.backend = backend
        self.state = InstanceState.STARTING
        self.in_flight = 0
        self.created_at = clock()
        self.last_activity = self.created_at
        self.process: ProcessHandle | None = None
        self.client: MCPClient | None = None
        self.stopping = False
        self._clock = clock
        self._call_lock = (
            asyncio.Lock() if backend.concurrency == ConcurrencyModel.SINGLE else None
        )

    def __repr__(self) -> str:
        return (
            f"BackendInstance({self.backend.label}, id={self.instance_id[:8]}, "
            f"state={self.state.value}, in_flight={self.in_flight})"
        )

    def transition(self, new_state: InstanceState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"{self.instance_id}: {self.state.value} -> {new_state.value} not allowed"
            )
        self.state = new_state
        if new_state == InstanceState.HEALTHY:
            self.last_activity = self._clock()

    @property
    def has_capacity(self) -> bool:
        return self.in_flight < self.backend.resource_limits.max_in_flight

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def acquire(self) -> None:
        if self.state != InstanceState.HEALTHY:
            raise InvalidTransition(f"{self.instance_id}: cannot accept work while {self.state.value}")
        self.in_flight += 1

    def release(self) -> None:
        if self.in_flight <= 0:
            raise InvalidTransition(f"{self.instance_id}: release without acquire")
        self.in_flight -= 1
        self.last_activity = self._clock()

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if self.client is None:
            raise BackendConnectionLost(f"Instance {self.instance_id} has no connection")
        if self._call_lock is None:
            return await self.client.call_tool(tool_name, arguments)
        async with self._call_lock:
            return await self.client.call_tool(tool_name, arguments)

    def status(self) -> "InstanceStatus":
        return InstanceStatus(
            instance_id=self.instance_id,
            catalog_name=self.backend.catalog_name,
            backend_ref=self.backend.backend_ref,
            state=self.state,
            in_flight=self.in_flight,
            last_activity=self.last_activity,
            pid=self.process.pid if self.process is not None else None,
        )


@dataclass(frozen=True)
class InstanceStatus:
    """Point-in-time copy of an instance's bookkeeping."""

    instance_id: str
    catalog_name: str
    backend_ref: str
    state: InstanceState
    in_flight: int
    last_activity: float
    pid: int | None = None


class InstanceHandle:
    """Non-owning reference to an instance, valid for one request.

    The supervisor counts the request against the instance when it hands out
    the handle; ``released`` guards the matching decrement.
    """

    def __init__(self, instance: BackendInstance):
        self._instance = instance
        self.instance_id = instance.instance_id
        self.backend = instance.backend
        self.released = False

    def __repr__(self) -> str:
        return f"InstanceHandle({self.backend.label}, id={self.instance_id[:8]}, released={self.released})"

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._instance.call(tool_name, arguments)
