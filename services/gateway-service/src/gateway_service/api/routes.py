"""API routes for the gateway service."""

import time
from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, status

from gateway_service.api.models import (
    CatalogListResponse,
    CatalogSummary,
    ErrorDetail,
    HealthResponse,
    InstanceInfo,
    InstanceListResponse,
    InvokeRequest,
    InvokeResponse,
    ReloadResponse,
    ToolListResponse,
    ToolSchema,
)
from gateway_service.catalog.models import CatalogDescriptor
from gateway_service.config import get_settings
from gateway_service.core.logging import get_logger, request_context
from gateway_service.errors import ConfigError, GatewayError
from gateway_service.gateway import Gateway
from toolgate_common.auth import CallerAuthDependency, CallerIdentity

logger = get_logger(__name__)

router = APIRouter()

_settings = get_settings()
require_caller = CallerAuthDependency(
    secret=_settings.service_auth_secret,
    allowed_callers=_settings.allowed_caller_list,
)

# Global gateway instance
gateway: Gateway | None = None


def set_gateway(instance: Gateway | None) -> None:
    """Set the global gateway instance."""
    global gateway
    gateway = instance


def _require_gateway() -> Gateway:
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialized")
    return gateway


def _tool_schemas(catalog: CatalogDescriptor) -> list[ToolSchema]:
    return [
        ToolSchema(name=t.name, description=t.description, input_schema=t.input_schema or {})
        for t in catalog.tools
    ]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    if gateway is None or not gateway.started:
        return HealthResponse(status="unhealthy")

    states = Counter(s.state.value for s in gateway.supervisor.instances())
    return HealthResponse(
        status="healthy" if gateway.reaper.running else "unhealthy",
        registry_version=gateway.registry.snapshot.version,
        instances=dict(states),
    )


@router.get("/catalogs", response_model=CatalogListResponse)
async def list_catalogs(
    caller: CallerIdentity = Depends(require_caller),
) -> CatalogListResponse:
    """List the catalogs visible to the caller."""
    gw = _require_gateway()
    snapshot = gw.registry.snapshot
    return CatalogListResponse(
        version=snapshot.version,
        catalogs=[
            CatalogSummary(name=c.name, display_name=c.display_name, tools=_tool_schemas(c))
            for c in snapshot.catalogs.values()
            if caller.may_use(c.name)
        ],
    )


@router.get("/catalogs/{catalog_name}/tools", response_model=ToolListResponse)
async def list_tools(
    catalog_name: str,
    caller: CallerIdentity = Depends(require_caller),
) -> ToolListResponse:
    """List the tools of one catalog."""
    gw = _require_gateway()
    if not caller.may_use(catalog_name):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Catalog not permitted")
    catalog = gw.registry.get(catalog_name)
    if catalog is None:
        raise HTTPException(status_code=404, detail=f"Unknown catalog '{catalog_name}'")
    return ToolListResponse(catalog=catalog_name, tools=_tool_schemas(catalog))


@router.post("/catalogs/{catalog_name}/invoke", response_model=InvokeResponse)
async def invoke_tool(
    catalog_name: str,
    request: InvokeRequest,
    caller: CallerIdentity = Depends(require_caller),
) -> InvokeResponse:
    """Invoke a tool of the catalog on a backend instance."""
    gw = _require_gateway()
    if not caller.may_use(catalog_name):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Catalog not permitted")

    start_time = time.time()
    try:
        with request_context(caller=caller.caller):
            result = await gw.dispatcher.dispatch(
                catalog_name,
                request.tool_name,
                request.arguments,
                timeout=request.timeout,
            )
    except GatewayError as e:
        logger.warning(
            "Tool invocation failed",
            caller=caller.caller,
            catalog=catalog_name,
            tool=request.tool_name,
            code=e.code,
            error=e.message,
        )
        return InvokeResponse(
            status="error",
            error=ErrorDetail(code=e.code, message=e.message),
            execution_time_ms=(time.time() - start_time) * 1000,
        )
    except Exception as e:
        logger.exception("Unexpected invocation failure", catalog=catalog_name, tool=request.tool_name)
        return InvokeResponse(
            status="error",
            error=ErrorDetail(code="InternalError", message=str(e)),
            execution_time_ms=(time.time() - start_time) * 1000,
        )

    return InvokeResponse(
        status="success",
        output=result.content,
        request_id=result.request_id,
        instance_id=result.instance_id,
        execution_time_ms=(time.time() - start_time) * 1000,
    )


@router.get("/instances", response_model=InstanceListResponse)
async def list_instances(
    caller: CallerIdentity = Depends(require_caller),
) -> InstanceListResponse:
    """List live backend instances."""
    gw = _require_gateway()
    now = gw.supervisor.clock()
    return InstanceListResponse(
        instances=[
            InstanceInfo(
                instance_id=s.instance_id,
                catalog=s.catalog_name,
                backend_ref=s.backend_ref,
                state=s.state.value,
                in_flight=s.in_flight,
                idle_seconds=round(now - s.last_activity, 3),
                pid=s.pid,
            )
            for s in gw.supervisor.instances()
            if caller.may_use(s.catalog_name)
        ]
    )


@router.post("/admin/reload", response_model=ReloadResponse)
async def reload_catalogs(
    caller: CallerIdentity = Depends(require_caller),
) -> ReloadResponse:
    """Reload catalogs from disk; the active set is kept if the new one is invalid."""
    gw = _require_gateway()
    if caller.catalogs is not None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Reload needs an unrestricted token")
    try:
        snapshot = await gw.reload()
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    logger.info("Catalog reload requested", caller=caller.caller, version=snapshot.version)
    return ReloadResponse(version=snapshot.version, catalogs=list(snapshot.catalogs))
