"""API package initialization."""

from gateway_service.api.models import (
    HealthResponse,
    InvokeRequest,
    InvokeResponse,
    ToolListResponse,
    ToolSchema,
)

__all__ = [
    "HealthResponse",
    "InvokeRequest",
    "InvokeResponse",
    "ToolListResponse",
    "ToolSchema",
]
