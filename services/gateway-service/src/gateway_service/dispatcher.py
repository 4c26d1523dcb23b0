"""Request router.

``Dispatcher.dispatch`` resolves a (catalog, tool) pair to a healthy backend
instance, forwards the call and always ends in exactly one outcome: a
``ToolResult`` or a ``GatewayError``. The caller's deadline covers the cold
start and the call together.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from jsonschema import ValidationError, validate

from gateway_service.catalog.models import ToolDescriptor
from gateway_service.catalog.registry import CatalogRegistry
from gateway_service.core.logging import get_logger
from gateway_service.errors import (
    BackendUnavailable,
    DispatchTimeout,
    InvalidArguments,
    ToolCallFailed,
    UnknownTool,
)
from gateway_service.mcp.client import BackendConnectionLost, MCPError
from gateway_service.supervisor.supervisor import Supervisor

logger = get_logger(__name__)


@dataclass
class PendingRequest:
    """A tool call owned by the dispatcher for its whole lifetime."""

    catalog_name: str
    tool_name: str
    arguments: dict[str, Any]
    deadline: float | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: float = field(default_factory=time.monotonic)
    instance_id: str | None = None
    cancelled: bool = False

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass
class ToolResult:
    request_id: str
    catalog_name: str
    tool_name: str
    instance_id: str
    content: dict[str, Any]
    elapsed_ms: float

    @property
    def is_error(self) -> bool:
        """MCP tool-level failure reported inside a successful call."""
        return bool(self.content.get("isError"))


def validate_tool_arguments(tool: ToolDescriptor, arguments: dict[str, Any]) -> None:
    """Check ``arguments`` against the tool's input schema, if it declares one.

    Raises:
        InvalidArguments: If validation fails
    """
    if not tool.input_schema:
        return
    try:
        validate(instance=arguments, schema=tool.input_schema)
    except ValidationError as e:
        raise InvalidArguments(
            f"Invalid arguments for '{tool.name}': {e.message}", tool=tool.name
        ) from e


class Dispatcher:
    """Routes tool calls to backend instances."""

    def __init__(
        self,
        registry: CatalogRegistry,
        supervisor: Supervisor,
        default_timeout: float | None = None,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.default_timeout = default_timeout

    async def dispatch(
        self,
        catalog_name: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run one tool call.

        Args:
            catalog_name: Catalog the tool belongs to
            tool_name: Tool to call
            arguments: Tool arguments
            timeout: Seconds until the deadline; falls back to the default

        Returns:
            The backend's result

        Raises:
            UnknownCatalog: Catalog not loaded
            UnknownTool: Tool not in the catalog
            InvalidArguments: Arguments do not match the tool's schema
            SecretResolutionFailed: Backend secrets could not be resolved
            BackendUnavailable: No healthy backend, or it crashed mid-call
            DispatchTimeout: Deadline passed; the backend keeps running
            ToolCallFailed: Backend rejected the call
        """
        timeout = timeout if timeout is not None else self.default_timeout
        request = PendingRequest(
            catalog_name=catalog_name,
            tool_name=tool_name,
            arguments=arguments or {},
            deadline=time.monotonic() + timeout if timeout is not None else None,
        )
        log = logger.bind(request_id=request.request_id, catalog=catalog_name, tool=tool_name)

        catalog = self.registry.lookup(catalog_name)
        tool = catalog.tool(tool_name)
        if tool is None:
            raise UnknownTool(
                f"Unknown tool '{tool_name}' in catalog '{catalog_name}'",
                catalog=catalog_name,
                tool=tool_name,
            )
        validate_tool_arguments(tool, request.arguments)

        log.info("Dispatching tool call", timeout=timeout)
        try:
            result = await asyncio.wait_for(self._run(request), timeout=request.remaining())
        except asyncio.TimeoutError:
            request.cancelled = True
            log.warning("Tool call timed out", instance_id=request.instance_id, timeout=timeout)
            raise DispatchTimeout(
                f"Tool '{tool_name}' in catalog '{catalog_name}' timed out after {timeout}s",
                catalog=catalog_name,
                tool=tool_name,
            ) from None

        log.info(
            "Tool call completed",
            instance_id=result.instance_id,
            elapsed_ms=round(result.elapsed_ms, 1),
            is_error=result.is_error,
        )
        return result

    async def _run(self, request: PendingRequest) -> ToolResult:
        handle = await self.supervisor.ensure_running(request.catalog_name, request.tool_name)
        request.instance_id = handle.instance_id
        try:
            content = await handle.call(request.tool_name, request.arguments)
        except BackendConnectionLost as e:
            self.supervisor.report_crash(handle, reason=str(e))
            raise BackendUnavailable(
                f"Backend for '{request.tool_name}' became unavailable during the call",
                catalog=request.catalog_name,
                tool=request.tool_name,
            ) from e
        except MCPError as e:
            raise ToolCallFailed(str(e), tool=request.tool_name, rpc_code=e.code) from e
        finally:
            # Runs on success, error, timeout and cancellation alike.
            self.supervisor.release_handle(handle)

        return ToolResult(
            request_id=request.request_id,
            catalog_name=request.catalog_name,
            tool_name=request.tool_name,
            instance_id=handle.instance_id,
            content=content,
            elapsed_ms=(time.monotonic() - request.submitted_at) * 1000,
        )
