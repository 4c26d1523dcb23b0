"""MCP client over a backend's stdio.

One client serves every call dispatched to an instance. Requests are
newline-delimited JSON-RPC; a single reader task routes responses to waiting
callers by id, so several calls can be outstanding at once.
"""

import asyncio
import itertools
import json
from typing import Any, Callable

from gateway_service.core.logging import get_logger

logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolgate-gateway", "version": "0.1.0"}


class MCPError(RuntimeError):
    """The backend answered a request with a JSON-RPC error."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


class BackendConnectionLost(ConnectionError):
    """The backend's stdout closed while requests were outstanding."""


class MCPClient:
    """JSON-RPC client bound to one backend process."""

    def __init__(
        self,
        name: str,
        reader: asyncio.StreamReader,
        writer: Any,
        on_closed: Callable[[], None] | None = None,
    ):
        self.name = name
        self.reader = reader
        self.writer = writer
        self.on_closed = on_closed
        self.server_info: dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    async def connect(self, timeout: float | None = None) -> None:
        """Perform the MCP handshake.

        1. Send ``initialize`` with client info and protocol version
        2. Read the server's capabilities
        3. Send ``notifications/initialized``

        Raises:
            MCPError: If the server rejects initialize
            BackendConnectionLost: If the backend exits during the handshake
            asyncio.TimeoutError: If the server does not answer in ``timeout``
        """
        if self._connected:
            logger.debug("Already connected", backend=self.name)
            return

        self._start_reader()
        result = await self._send_request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            timeout=timeout,
        )
        self.server_info = result.get("serverInfo", {})
        await self._send_notification("notifications/initialized")
        self._connected = True
        logger.info(
            "MCP backend initialized",
            backend=self.name,
            protocol=result.get("protocolVersion"),
            server=self.server_info.get("name", "unknown"),
        )

    async def ping(self, timeout: float | None = None) -> None:
        await self._send_request("ping", timeout=timeout)

    async def list_tools(self, timeout: float | None = None) -> list[dict[str, Any]]:
        result = await self._send_request("tools/list", timeout=timeout)
        return result.get("tools", [])

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a tool and wait for its result.

        The caller bounds the wait; cancelling the awaiting task sends
        ``notifications/cancelled`` to the backend.
        """
        logger.debug("Calling backend tool", backend=self.name, tool=tool_name)
        return await self._send_request("tools/call", {"name": tool_name, "arguments": arguments})

    async def close(self) -> None:
        """Stop reading and fail every outstanding request."""
        if self._closed:
            return
        self._closed = True
        self._fail_pending(BackendConnectionLost(f"Connection to {self.name} closed"))
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

    def _start_reader(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name=f"mcp-reader-{self.name}")

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self.reader.readline()
                if not line:
                    break
                self._handle_line(line)
        except Exception:
            logger.exception("Backend stream error", backend=self.name)

        if not self._closed:
            logger.warning("Backend closed its output", backend=self.name, pending=len(self._pending))
            self._closed = True
            self._fail_pending(BackendConnectionLost(f"Backend {self.name} exited"))
            if self.on_closed is not None:
                self.on_closed()

    def _handle_line(self, line: bytes) -> None:
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            # Backends sometimes print banners on stdout.
            logger.debug("Ignoring non-JSON backend output", backend=self.name)
            return
        if not isinstance(message, dict) or "id" not in message or "method" in message:
            return

        future = self._pending.pop(message["id"], None)
        if future is None or future.done():
            logger.debug("Dropping response without waiter", backend=self.name, id=message["id"])
            return

        if "error" in message:
            error = message["error"] or {}
            future.set_exception(
                MCPError(
                    f"MCP error: {error.get('message', 'Unknown error')}",
                    code=error.get("code"),
                    data=error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result") or {})

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def _write(self, message: dict[str, Any]) -> None:
        try:
            self.writer.write((json.dumps(message) + "\n").encode())
            await self.writer.drain()
        except (ConnectionError, RuntimeError) as e:
            raise BackendConnectionLost(f"Cannot write to {self.name}: {e}") from e

    async def _send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        notification: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            notification["params"] = params
        await self._write(notification)

    async def _send_request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        if self._closed or self._reader_task is None:
            raise BackendConnectionLost(f"Not connected to {self.name}")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
            )
            return await asyncio.wait_for(future, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if self._pending.pop(request_id, None) is not None and not self._closed:
                self._notify_cancelled(request_id)
            raise
        finally:
            self._pending.pop(request_id, None)

    def _notify_cancelled(self, request_id: int) -> None:
        async def notify() -> None:
            try:
                await self._send_notification(
                    "notifications/cancelled",
                    {"requestId": request_id, "reason": "deadline exceeded"},
                )
            except BackendConnectionLost:
                pass

        task = asyncio.create_task(notify())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
