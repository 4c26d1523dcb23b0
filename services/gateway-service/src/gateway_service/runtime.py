"""Process runtime for backend tool servers.

``SubprocessRuntime`` launches a backend either as a plain command or as a
container through ``docker run -i``; in both cases the gateway talks to it over
the child's stdin/stdout.
"""

import asyncio
import os
import re
import shlex
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from gateway_service.catalog.models import BackendKind, BackendSpec
from gateway_service.core.logging import get_logger

logger = get_logger(__name__)

# Largest single JSON-RPC line accepted from a backend.
STREAM_LIMIT = 16 * 1024 * 1024

# name[:tag][@digest], optionally prefixed with a registry host.
_IMAGE_REFERENCE = re.compile(
    r"^(?:[a-zA-Z0-9.-]+(?::[0-9]+)?/)?[a-z0-9]+(?:[._-][a-z0-9]+)*"
    r"(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*"
    r"(?::[\w][\w.-]{0,127})?(?:@sha256:[a-f0-9]{64})?$"
)


@dataclass
class ProcessHandle:
    """A launched backend process and its stdio streams."""

    instance_id: str
    label: str
    reader: asyncio.StreamReader
    writer: Any
    process: asyncio.subprocess.Process | None = None
    started_at: float = field(default_factory=time.monotonic)
    stderr_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process is not None else None


class ProcessRuntime(Protocol):
    """Capability the supervisor uses to run backends."""

    async def spawn(self, instance_id: str, backend: BackendSpec, env: dict[str, str]) -> ProcessHandle: ...

    async def health_check(self, handle: ProcessHandle) -> bool: ...

    async def terminate(self, handle: ProcessHandle) -> None: ...

    def resolvable(self, backend_ref: str, kind: BackendKind) -> bool: ...


class SubprocessRuntime:
    """Runs backends as local subprocesses."""

    def __init__(self, docker_binary: str = "docker", stop_timeout: float = 5.0):
        self.docker_binary = docker_binary
        self.stop_timeout = stop_timeout

    def resolvable(self, backend_ref: str, kind: BackendKind) -> bool:
        """Check that a backend reference can be launched.

        Image references are checked syntactically only; the image may live in
        a registry the gateway pulls from on first start.
        """
        if kind == BackendKind.IMAGE:
            return bool(_IMAGE_REFERENCE.match(backend_ref))
        try:
            argv = shlex.split(backend_ref)
        except ValueError:
            return False
        if not argv:
            return False
        program = argv[0]
        if os.sep in program:
            path = Path(program)
            return path.is_file() and os.access(path, os.X_OK)
        return shutil.which(program) is not None

    def build_command(self, instance_id: str, backend: BackendSpec, env_names: list[str]) -> list[str]:
        """Build the argv for a backend.

        Secret values are never placed on the command line; containers get
        ``-e NAME`` and read the value from the docker client's environment.
        """
        if backend.backend_kind == BackendKind.COMMAND:
            return shlex.split(backend.backend_ref)

        limits = backend.resource_limits
        command = [
            self.docker_binary,
            "run",
            "-i",
            "--rm",
            "--init",
            "--name",
            f"toolgate-{instance_id[:12]}",
            "--label",
            f"toolgate.catalog={backend.catalog_name}",
        ]
        if limits.cpus is not None:
            command += ["--cpus", f"{limits.cpus:g}"]
        if limits.memory_mb is not None:
            command += ["--memory", f"{limits.memory_mb}m"]
        if not backend.network:
            command += ["--network", "none"]
        else:
            command += ["-e", "TOOLGATE_ALLOWED_HOSTS=" + ",".join(sorted(backend.network))]
        for name in sorted(env_names):
            command += ["-e", name]
        command.append(backend.backend_ref)
        return command

    async def spawn(self, instance_id: str, backend: BackendSpec, env: dict[str, str]) -> ProcessHandle:
        """Start a backend and return its stdio handle.

        Args:
            instance_id: Id of the instance being launched
            backend: Launch spec
            env: Extra environment (resolved secrets)

        Returns:
            ProcessHandle wired to the child's stdout/stdin

        Raises:
            RuntimeError: If the process cannot be started
        """
        command = self.build_command(instance_id, backend, list(env))
        logger.info(
            "Spawning backend",
            backend=backend.label,
            instance_id=instance_id,
            kind=backend.backend_kind.value,
            env_vars=sorted(env),
        )
        logger.debug("Backend command", command=command)

        child_env = os.environ.copy()
        child_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=child_env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to spawn backend", backend=backend.label, error=str(e))
            raise RuntimeError(f"Failed to spawn backend {backend.label}") from e

        handle = ProcessHandle(
            instance_id=instance_id,
            label=backend.label,
            reader=process.stdout,
            writer=process.stdin,
            process=process,
        )
        handle.stderr_task = asyncio.create_task(self._drain_stderr(handle))
        logger.info("Backend started", backend=backend.label, instance_id=instance_id, pid=process.pid)
        return handle

    async def _drain_stderr(self, handle: ProcessHandle) -> None:
        stream = handle.process.stderr
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug(
                "Backend stderr",
                instance_id=handle.instance_id,
                line=line.decode(errors="replace").rstrip(),
            )

    async def health_check(self, handle: ProcessHandle) -> bool:
        return handle.process is not None and handle.process.returncode is None

    async def terminate(self, handle: ProcessHandle) -> None:
        """Stop a backend: SIGTERM, then SIGKILL after ``stop_timeout``."""
        process = handle.process
        if process is None or process.returncode is not None:
            return

        logger.info("Stopping backend", instance_id=handle.instance_id, pid=process.pid)
        try:
            if handle.writer is not None and not handle.writer.is_closing():
                handle.writer.close()
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("Backend did not terminate, killing", instance_id=handle.instance_id)
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass
        finally:
            if handle.stderr_task is not None:
                handle.stderr_task.cancel()
        logger.info("Backend stopped", instance_id=handle.instance_id, returncode=process.returncode)
