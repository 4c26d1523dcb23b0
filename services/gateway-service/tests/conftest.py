"""Pytest configuration and fixtures.

``FakeRuntime`` stands in for real processes: each spawned backend is an
in-memory MCP server that reads JSON-RPC lines from its "stdin" and answers on
an ``asyncio.StreamReader`` the gateway reads as stdout.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable

import pytest

from gateway_service.catalog.models import (
    BackendKind,
    CatalogDescriptor,
    ConcurrencyModel,
    ResourceLimits,
    SecretRef,
    ToolDescriptor,
)
from gateway_service.catalog.registry import CatalogRegistry
from gateway_service.dispatcher import Dispatcher
from gateway_service.runtime import ProcessHandle
from gateway_service.secrets import MappingSecretStore, SecretInjector
from gateway_service.supervisor.supervisor import Supervisor

GITHUB_TOKEN = "ghp_super_secret_value"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _FakeStdin:
    def __init__(self, backend: "FakeBackend"):
        self.backend = backend

    def write(self, data: bytes) -> None:
        if self.backend.exited:
            raise ConnectionResetError("backend exited")
        self.backend.receive(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.backend.exit()

    def is_closing(self) -> bool:
        return self.backend.exited


class FakeBackend:
    """An in-memory MCP server."""

    def __init__(self, runtime: "FakeRuntime", instance_id: str, env: dict[str, str]):
        self.runtime = runtime
        self.instance_id = instance_id
        self.env = env
        self.stdout = asyncio.StreamReader()
        self.stdin = _FakeStdin(self)
        self.received: list[dict[str, Any]] = []
        self.sent: list[dict[str, Any]] = []
        self.exited = False
        self._buffer = b""
        self._tasks: set[asyncio.Task] = set()

    def methods(self) -> list[str]:
        return [m["method"] for m in self.received]

    def receive(self, data: bytes) -> None:
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            message = json.loads(line)
            self.received.append(message)
            if "id" in message:
                task = asyncio.create_task(self._answer(message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _answer(self, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        if method == "initialize":
            if not self.runtime.answer_initialize:
                return
            result = {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0.0"},
            }
        elif method == "ping":
            result = {}
        elif method == "tools/call":
            handler = self.runtime.tools.get(params["name"])
            if handler is None:
                self.send(
                    {
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": -32602, "message": f"Unknown tool: {params['name']}"},
                    }
                )
                return
            result = await handler(self, params.get("arguments") or {})
            if result is None:
                return
        else:
            result = {}
        self.send({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def send(self, message: dict[str, Any]) -> None:
        if not self.exited:
            self.sent.append(message)
            self.stdout.feed_data((json.dumps(message) + "\n").encode())

    def exit(self) -> None:
        if not self.exited:
            self.exited = True
            self.stdout.feed_eof()


def _text(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": False}


async def _docker_ps(backend: FakeBackend, arguments: dict) -> dict:
    return _text("CONTAINER ID   IMAGE   STATUS")


async def _echo(backend: FakeBackend, arguments: dict) -> dict:
    return _text(arguments.get("text", ""))


async def _sleep(backend: FakeBackend, arguments: dict) -> dict:
    await asyncio.sleep(arguments.get("seconds", 0))
    return _text("slept")


async def _gate(backend: FakeBackend, arguments: dict) -> dict:
    await backend.runtime.gate.wait()
    return _text("released")


async def _crash(backend: FakeBackend, arguments: dict) -> None:
    backend.exit()
    return None


async def _whoami(backend: FakeBackend, arguments: dict) -> dict:
    return _text(f"token-length={len(backend.env.get('GITHUB_TOKEN', ''))}")


ToolHandler = Callable[[FakeBackend, dict], Awaitable[dict | None]]


class FakeRuntime:
    """Process runtime double that counts spawns and terminations."""

    def __init__(self):
        self.backends: list[FakeBackend] = []
        self.terminated: list[str] = []
        self.spawn_failures = 0
        self.answer_initialize = True
        self.gate = asyncio.Event()
        self.spawn_gate: asyncio.Event | None = None
        self.tools: dict[str, ToolHandler] = {
            "docker-ps": _docker_ps,
            "echo": _echo,
            "sleep": _sleep,
            "gate": _gate,
            "crash": _crash,
            "whoami": _whoami,
        }

    @property
    def spawn_count(self) -> int:
        return len(self.backends)

    def backend(self, instance_id: str) -> FakeBackend:
        return next(b for b in self.backends if b.instance_id == instance_id)

    def resolvable(self, backend_ref: str, kind: BackendKind) -> bool:
        return not backend_ref.startswith("missing")

    async def spawn(self, instance_id: str, backend, env: dict[str, str]) -> ProcessHandle:
        await asyncio.sleep(0)
        if self.spawn_gate is not None:
            await self.spawn_gate.wait()
        if self.spawn_failures:
            self.spawn_failures -= 1
            raise RuntimeError("exec format error")
        fake = FakeBackend(self, instance_id, dict(env))
        self.backends.append(fake)
        return ProcessHandle(
            instance_id=instance_id, label=backend.label, reader=fake.stdout, writer=fake.stdin
        )

    async def health_check(self, handle: ProcessHandle) -> bool:
        return not self.backend(handle.instance_id).exited

    async def terminate(self, handle: ProcessHandle) -> None:
        self.terminated.append(handle.instance_id)
        self.backend(handle.instance_id).exit()


def build_catalogs() -> list[CatalogDescriptor]:
    docker_cli = dict(backend_ref="docker-cli", backend_kind=BackendKind.COMMAND)
    infra = CatalogDescriptor(
        name="infra",
        tools=(
            ToolDescriptor(name="docker-ps", **docker_cli),
            ToolDescriptor(
                name="echo",
                input_schema={
                    "type": "object",
                    "properties": {"text": {"type": "string"}},
                    "required": ["text"],
                },
                **docker_cli,
            ),
            ToolDescriptor(name="sleep", **docker_cli),
            ToolDescriptor(name="gate", **docker_cli),
            ToolDescriptor(name="crash", **docker_cli),
            ToolDescriptor(name="unknown-to-backend", **docker_cli),
        ),
    )
    serial_limits = ResourceLimits(max_in_flight=1)
    serial = CatalogDescriptor(
        name="serial",
        tools=tuple(
            ToolDescriptor(
                name=name,
                backend_ref="serial-cli",
                backend_kind=BackendKind.COMMAND,
                concurrency=ConcurrencyModel.SINGLE,
                resource_limits=serial_limits,
            )
            for name in ("sleep", "gate")
        ),
    )
    github = CatalogDescriptor(
        name="github",
        tools=(
            ToolDescriptor(
                name="whoami",
                backend_ref="mcp/github",
                required_secrets=frozenset({SecretRef(name="github.token", env="GITHUB_TOKEN")}),
                network=frozenset({"api.github.com"}),
            ),
            ToolDescriptor(
                name="needs-missing",
                backend_ref="mcp/other",
                required_secrets=frozenset({SecretRef(name="absent.secret")}),
            ),
        ),
    )
    return [infra, serial, github]


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def catalogs() -> list[CatalogDescriptor]:
    return build_catalogs()


@pytest.fixture
def registry(fake_runtime, catalogs) -> CatalogRegistry:
    registry = CatalogRegistry(resolver=fake_runtime.resolvable)
    registry.reload(catalogs)
    return registry


@pytest.fixture
def secret_store() -> MappingSecretStore:
    return MappingSecretStore({"github.token": GITHUB_TOKEN})


@pytest.fixture
async def supervisor(registry, fake_runtime, secret_store, fake_clock):
    supervisor = Supervisor(
        registry,
        fake_runtime,
        SecretInjector(secret_store),
        start_attempts=3,
        probe_attempts=2,
        probe_timeout=0.05,
        backoff_initial=0,
        backoff_max=0,
        clock=fake_clock,
    )
    yield supervisor
    fake_runtime.gate.set()
    await supervisor.shutdown()


@pytest.fixture
def dispatcher(registry, supervisor) -> Dispatcher:
    return Dispatcher(registry, supervisor, default_timeout=5.0)
