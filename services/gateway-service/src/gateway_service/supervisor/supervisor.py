"""Backend process supervisor.

Instances are pooled per ``(catalog, backend_ref)``. At most one launch per
launch spec is in flight at a time: concurrent callers share a single launch
task (the start lock), shielded so that one caller's deadline cannot abort a
launch the others are waiting for. An instance whose spec was replaced by a
reload while it launched is retired as soon as it comes up, and its waiters
resolve the tool again.

All bookkeeping on an instance (state, in_flight, last_activity) changes
without an ``await`` in between, so it is atomic on the event loop.
"""

import asyncio
import functools
import time
from collections import defaultdict
from typing import Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from gateway_service.catalog.models import BackendSpec
from gateway_service.catalog.registry import CatalogRegistry, RegistrySnapshot
from gateway_service.core.logging import get_logger
from gateway_service.errors import BackendUnavailable, GatewayError, UnknownTool
from gateway_service.mcp.client import MCPClient
from gateway_service.runtime import ProcessRuntime
from gateway_service.secrets import SecretInjector
from gateway_service.supervisor.instance import (
    BackendInstance,
    InstanceHandle,
    InstanceState,
    InstanceStatus,
)

logger = get_logger(__name__)

PoolKey = tuple[str, str]


class LaunchFailed(RuntimeError):
    """One launch attempt failed; the supervisor may try again."""


class Supervisor:
    """Owns every backend instance and its lifecycle."""

    def __init__(
        self,
        registry: CatalogRegistry,
        runtime: ProcessRuntime,
        secrets: SecretInjector,
        *,
        start_attempts: int = 3,
        probe_attempts: int = 5,
        probe_timeout: float = 5.0,
        backoff_initial: float = 0.25,
        backoff_max: float = 4.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.runtime = runtime
        self.secrets = secrets
        self.start_attempts = start_attempts
        self.probe_attempts = probe_attempts
        self.probe_timeout = probe_timeout
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.clock = clock

        self._instances: dict[str, BackendInstance] = {}
        self._pools: dict[PoolKey, dict[str, BackendInstance]] = defaultdict(dict)
        # One launch per distinct launch spec, not per pool.
        self._launches: dict[BackendSpec, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    # -- resolution -------------------------------------------------------

    async def ensure_running(self, catalog_name: str, tool_name: str) -> InstanceHandle:
        """Return a handle to a healthy instance that serves ``tool_name``.

        The request is counted against the instance before this returns; the
        caller must hand the handle back through ``release_handle``.

        Raises:
            UnknownCatalog: If the catalog is not loaded
            UnknownTool: If the catalog has no such tool
            SecretResolutionFailed: If the backend's secrets cannot be resolved
            BackendUnavailable: If no instance could be started
        """
        backend = self._resolve(catalog_name, tool_name)
        while True:
            instance = self._select(backend)
            if instance is not None:
                return self._hand_out(instance)

            instance = await self._await_launch(backend)
            current = self._resolve(catalog_name, tool_name)
            if instance.backend != current:
                # Catalogs were reloaded while the launch ran.
                backend = current
                continue
            if instance.state != InstanceState.HEALTHY:
                raise BackendUnavailable(
                    f"Backend {backend.label} was lost before use", backend=backend.label
                )
            return self._hand_out(instance)

    def _resolve(self, catalog_name: str, tool_name: str) -> BackendSpec:
        catalog = self.registry.lookup(catalog_name)
        tool = catalog.tool(tool_name)
        if tool is None:
            raise UnknownTool(
                f"Unknown tool '{tool_name}' in catalog '{catalog_name}'",
                catalog=catalog_name,
                tool=tool_name,
            )
        return catalog.backend_for(tool)

    def _is_current(self, backend: BackendSpec, snapshot: RegistrySnapshot | None = None) -> bool:
        snapshot = snapshot or self.registry.snapshot
        catalog = snapshot.catalogs.get(backend.catalog_name)
        return catalog is not None and backend in catalog.backends()

    def _select(self, backend: BackendSpec) -> BackendInstance | None:
        """Pick a healthy instance, or None when a launch is warranted."""
        healthy = [
            i
            for i in self._pools.get(backend.key, {}).values()
            if i.state == InstanceState.HEALTHY and i.backend == backend
        ]
        with_capacity = [i for i in healthy if i.has_capacity]
        if with_capacity:
            return min(with_capacity, key=lambda i: i.in_flight)

        launching = 1 if backend in self._launches else 0
        if len(healthy) + launching < backend.resource_limits.max_instances:
            return None
        if healthy:
            # At the instance ceiling: overcommit the least loaded one.
            return min(healthy, key=lambda i: i.in_flight)
        return None

    def _hand_out(self, instance: BackendInstance) -> InstanceHandle:
        instance.acquire()
        return InstanceHandle(instance)

    async def _await_launch(self, backend: BackendSpec) -> BackendInstance:
        task = self._launches.get(backend)
        if task is None:
            task = asyncio.create_task(self._launch(backend), name=f"launch-{backend.label}")
            self._launches[backend] = task
            task.add_done_callback(functools.partial(self._launch_done, backend))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise BackendUnavailable(
                    f"Launch of {backend.label} was aborted", backend=backend.label
                ) from None
            raise

    def _launch_done(self, backend: BackendSpec, task: asyncio.Task) -> None:
        if self._launches.get(backend) is task:
            del self._launches[backend]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter gave up.
            task.exception()

    # -- launching --------------------------------------------------------

    def _backoff(self) -> wait_exponential:
        return wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max)

    async def _launch(self, backend: BackendSpec) -> BackendInstance:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.start_attempts),
            wait=self._backoff(),
            retry=retry_if_exception_type(LaunchFailed),
            reraise=True,
        )
        try:
            return await retrying(self._launch_once, backend)
        except LaunchFailed as e:
            logger.error(
                "Backend launch failed",
                backend=backend.label,
                attempts=self.start_attempts,
                error=str(e),
            )
            raise BackendUnavailable(
                f"Backend {backend.label} failed to start after {self.start_attempts} attempt(s): {e}",
                backend=backend.label,
            ) from e

    async def _launch_once(self, backend: BackendSpec) -> BackendInstance:
        if self._closed:
            raise BackendUnavailable("Gateway is shutting down", backend=backend.label)

        # Raises SecretResolutionFailed before anything is spawned.
        env = self.secrets.environment(backend.required_secrets)

        instance = BackendInstance(backend, clock=self.clock)
        self._register(instance)
        log = logger.bind(backend=backend.label, instance_id=instance.instance_id)
        log.info("Launching backend instance")

        try:
            instance.process = await self.runtime.spawn(instance.instance_id, backend, env)
        except asyncio.CancelledError:
            instance.transition(InstanceState.STOPPED)
            self._unregister(instance)
            raise
        except Exception as e:
            instance.transition(InstanceState.CRASHED)
            self._unregister(instance)
            raise LaunchFailed(f"spawn failed: {e}") from e
        finally:
            env.clear()

        instance.client = MCPClient(
            f"{backend.label}#{instance.instance_id[:8]}",
            instance.process.reader,
            instance.process.writer,
            on_closed=functools.partial(self._on_backend_exit, instance),
        )

        try:
            await self._probe(instance)
        except asyncio.CancelledError:
            instance.transition(InstanceState.STOPPED)
            self._schedule(self._teardown(instance))
            raise
        except Exception as e:
            log.warning("Health probe failed", error=str(e) or type(e).__name__)
            instance.transition(InstanceState.CRASHED)
            await self._teardown(instance)
            raise LaunchFailed(f"health probe failed: {e or type(e).__name__}") from e

        instance.transition(InstanceState.HEALTHY)
        log.info("Backend instance healthy", pid=instance.process.pid)
        if not self._is_current(backend):
            log.info("Retiring instance launched from a replaced catalog")
            self._begin_drain(instance)
        return instance

    async def _probe(self, instance: BackendInstance) -> None:
        """Bounded health probe: MCP handshake, then alive process and ``ping``."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.probe_attempts),
            wait=self._backoff(),
            retry=retry_if_exception_type(asyncio.TimeoutError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await instance.client.connect(timeout=self.probe_timeout)
                if not await self.runtime.health_check(instance.process):
                    raise LaunchFailed("backend process exited during startup")
                await instance.client.ping(timeout=self.probe_timeout)

    # -- release, crash, drain ---------------------------------------------

    def release_handle(self, handle: InstanceHandle) -> bool:
        """Return a request's slot on its instance.

        Idempotent: only the first call for a handle decrements ``in_flight``.

        Returns:
            True if this call performed the release
        """
        if handle.released:
            return False
        handle.released = True

        instance = handle._instance
        instance.release()
        if instance.state == InstanceState.DRAINING and instance.in_flight == 0:
            self._schedule(self._stop(instance))
        return True

    def report_crash(self, target: InstanceHandle | str, reason: str = "") -> None:
        """Mark an instance crashed and tear it down.

        Outstanding calls on it fail with a lost connection, which the
        dispatcher reports as ``BackendUnavailable``. Nothing is respawned
        here; the next request for the pool launches a fresh instance.
        """
        instance_id = target.instance_id if isinstance(target, InstanceHandle) else target
        instance = self._instances.get(instance_id)
        if instance is None or instance.state.terminal or instance.stopping:
            return

        logger.error(
            "Backend instance crashed",
            backend=instance.backend.label,
            instance_id=instance_id,
            in_flight=instance.in_flight,
            reason=reason,
        )
        instance.transition(InstanceState.CRASHED)
        self._unregister(instance)
        self._schedule(self._teardown(instance))

    def _on_backend_exit(self, instance: BackendInstance) -> None:
        if instance.stopping or instance.state in (InstanceState.STARTING,) or instance.state.terminal:
            return
        self.report_crash(instance.instance_id, reason="backend exited")

    async def drain(self, instance_id: str, idle_before: float | None = None) -> bool:
        """Stop an idle healthy instance (healthy -> draining -> stopped).

        Args:
            instance_id: Instance to stop
            idle_before: If given, only drain when the last activity is older

        Returns:
            False if the instance is busy, unknown, not healthy or was used recently
        """
        instance = self._instances.get(instance_id)
        if instance is None or instance.state != InstanceState.HEALTHY or instance.in_flight > 0:
            return False
        if idle_before is not None and instance.last_activity >= idle_before:
            return False
        instance.transition(InstanceState.DRAINING)
        await self._stop(instance)
        return True

    def _begin_drain(self, instance: BackendInstance) -> None:
        instance.transition(InstanceState.DRAINING)
        if instance.in_flight == 0:
            self._schedule(self._stop(instance))

    def retire_stale(self, snapshot: RegistrySnapshot) -> int:
        """Drain healthy instances whose launch spec is gone from ``snapshot``."""
        retired = 0
        for instance in list(self._instances.values()):
            # Instances still starting are checked when their launch completes.
            if instance.state != InstanceState.HEALTHY:
                continue
            if not self._is_current(instance.backend, snapshot):
                logger.info(
                    "Retiring instance after reload",
                    backend=instance.backend.label,
                    instance_id=instance.instance_id,
                )
                self._begin_drain(instance)
                retired += 1
        return retired

    async def check_health(self) -> int:
        """Report healthy instances whose process has died. Returns the count."""
        crashed = 0
        for instance in list(self._instances.values()):
            if instance.state != InstanceState.HEALTHY or instance.process is None:
                continue
            if not await self.runtime.health_check(instance.process):
                self.report_crash(instance.instance_id, reason="health check failed")
                crashed += 1
        return crashed

    async def prewarm(self) -> int:
        """Start one instance for every backend marked ``prewarm``."""
        specs = [
            spec
            for catalog in self.registry.snapshot.catalogs.values()
            for spec in catalog.prewarm_backends()
            if not self._pools.get(spec.key)
        ]
        results = await asyncio.gather(
            *(self._await_launch(spec) for spec in specs), return_exceptions=True
        )
        started = 0
        for spec, result in zip(specs, results):
            if isinstance(result, GatewayError):
                logger.warning("Prewarm failed", backend=spec.label, error=result.message)
            elif isinstance(result, BaseException):
                raise result
            else:
                started += 1
        return started

    # -- teardown ---------------------------------------------------------

    async def _stop(self, instance: BackendInstance) -> None:
        if not await self._teardown(instance):
            return
        if not instance.state.terminal:
            instance.transition(InstanceState.STOPPED)
        logger.info(
            "Backend instance stopped",
            backend=instance.backend.label,
            instance_id=instance.instance_id,
        )

    async def _teardown(self, instance: BackendInstance) -> bool:
        if instance.stopping:
            return False
        instance.stopping = True
        self._unregister(instance)
        if instance.client is not None:
            await instance.client.close()
        if instance.process is not None:
            try:
                await self.runtime.terminate(instance.process)
            except Exception:
                logger.exception("Failed to terminate backend", instance_id=instance.instance_id)
        return True

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _register(self, instance: BackendInstance) -> None:
        self._instances[instance.instance_id] = instance
        self._pools[instance.backend.key][instance.instance_id] = instance

    def _unregister(self, instance: BackendInstance) -> None:
        self._instances.pop(instance.instance_id, None)
        pool = self._pools.get(instance.backend.key)
        if pool is not None:
            pool.pop(instance.instance_id, None)
            if not pool:
                del self._pools[instance.backend.key]

    # -- introspection and shutdown -----------------------------------------

    def instances(self) -> list[InstanceStatus]:
        return [instance.status() for instance in self._instances.values()]

    def get_instance(self, instance_id: str) -> BackendInstance | None:
        return self._instances.get(instance_id)

    async def shutdown(self) -> None:
        """Stop every instance, busy or not."""
        logger.info("Shutting down supervisor", instances=len(self._instances))
        self._closed = True

        launches = list(self._launches.values())
        for task in launches:
            task.cancel()
        await asyncio.gather(*launches, return_exceptions=True)

        instances = list(self._instances.values())
        for instance in instances:
            if instance.state == InstanceState.HEALTHY:
                instance.transition(InstanceState.DRAINING)
        await asyncio.gather(*(self._stop(i) for i in instances), return_exceptions=True)
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Supervisor shutdown complete")
