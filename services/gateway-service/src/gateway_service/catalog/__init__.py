"""Catalog package initialization."""

from gateway_service.catalog.loader import load_catalogs
from gateway_service.catalog.models import (
    BackendKind,
    BackendSpec,
    CatalogDescriptor,
    ConcurrencyModel,
    ResourceLimits,
    SecretRef,
    ToolDescriptor,
)
from gateway_service.catalog.registry import CatalogRegistry, RegistrySnapshot

__all__ = [
    "BackendKind",
    "BackendSpec",
    "CatalogDescriptor",
    "CatalogRegistry",
    "ConcurrencyModel",
    "RegistrySnapshot",
    "ResourceLimits",
    "SecretRef",
    "ToolDescriptor",
    "load_catalogs",
]
