"""API request/response models."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class ToolSchema(BaseModel):
    """Schema for a tool definition."""

    model_config = {"populate_by_name": True}

    name: str
    description: str
    input_schema: dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class CatalogSummary(BaseModel):
    name: str
    display_name: str = ""
    tools: list[ToolSchema]


class CatalogListResponse(BaseModel):
    catalogs: list[CatalogSummary]
    version: int


class ToolListResponse(BaseModel):
    catalog: str
    tools: list[ToolSchema]


class InvokeRequest(BaseModel):
    """Request to invoke a tool in a catalog."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)


class ErrorDetail(BaseModel):
    code: str
    message: str


class InvokeResponse(BaseModel):
    """Response from a tool invocation."""

    status: Literal["success", "error"]
    output: dict[str, Any] | None = None
    error: ErrorDetail | None = None
    request_id: str | None = None
    instance_id: str | None = None
    execution_time_ms: float


class InstanceInfo(BaseModel):
    instance_id: str
    catalog: str
    backend_ref: str
    state: str
    in_flight: int
    idle_seconds: float
    pid: int | None = None


class InstanceListResponse(BaseModel):
    instances: list[InstanceInfo]


class ReloadResponse(BaseModel):
    version: int
    catalogs: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    version: str = "0.1.0"
    registry_version: int = 0
    instances: dict[str, int] = Field(default_factory=dict)
