"""Catalog data model.

Descriptors are frozen pydantic models: created when catalogs are loaded,
replaced wholesale on reload and shared read-only by every request.
"""

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BackendKind(str, Enum):
    """How a backend reference is launched."""

    IMAGE = "image"
    COMMAND = "command"


class ConcurrencyModel(str, Enum):
    """Whether a backend accepts overlapping calls."""

    CONCURRENT = "concurrent"
    SINGLE = "single"


class ResourceLimits(BaseModel):
    """Advisory limits for one backend instance."""

    model_config = ConfigDict(frozen=True)

    cpus: float | None = Field(default=None, gt=0)
    memory_mb: int | None = Field(default=None, gt=0)
    max_in_flight: int = Field(default=16, ge=1)
    max_instances: int = Field(default=1, ge=1)


_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


class SecretRef(BaseModel):
    """A named secret and the environment variable the backend reads it from."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    env: str | None = None

    @property
    def env_name(self) -> str:
        if self.env:
            return self.env
        return _ENV_UNSAFE.sub("_", self.name).strip("_").upper()


class ToolDescriptor(BaseModel):
    """One invocable tool and the backend that implements it."""

    model_config = ConfigDict(frozen=True)

    name: str
    backend_ref: str
    backend_kind: BackendKind = BackendKind.IMAGE
    description: str = ""
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    required_secrets: frozenset[SecretRef] = frozenset()
    network: frozenset[str] = frozenset()
    concurrency: ConcurrencyModel = ConcurrencyModel.CONCURRENT
    input_schema: dict[str, Any] | None = None
    prewarm: bool = False

    @property
    def secret_names(self) -> frozenset[str]:
        return frozenset(ref.name for ref in self.required_secrets)


class BackendSpec(BaseModel):
    """Launch parameters for the instance pool of one (catalog, backend_ref)."""

    model_config = ConfigDict(frozen=True)

    catalog_name: str
    backend_ref: str
    backend_kind: BackendKind
    resource_limits: ResourceLimits
    required_secrets: frozenset[SecretRef] = frozenset()
    network: frozenset[str] = frozenset()
    concurrency: ConcurrencyModel = ConcurrencyModel.CONCURRENT

    @property
    def key(self) -> tuple[str, str]:
        return (self.catalog_name, self.backend_ref)

    @property
    def label(self) -> str:
        return f"{self.catalog_name}/{self.backend_ref}"


class CatalogDescriptor(BaseModel):
    """A named, ordered collection of tools."""

    model_config = ConfigDict(frozen=True)

    name: str
    tools: tuple[ToolDescriptor, ...] = ()
    display_name: str = ""

    @property
    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]

    def tool(self, name: str) -> ToolDescriptor | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None

    def backend_refs(self) -> list[str]:
        """Distinct backend refs in declaration order."""
        return list(dict.fromkeys(tool.backend_ref for tool in self.tools))

    def backend_for(self, tool: ToolDescriptor) -> BackendSpec:
        """Build the launch spec for the pool that serves ``tool``.

        Tools sharing a backend_ref share one pool, so the instance gets the
        union of their secrets and network allow-lists.
        """
        siblings = [t for t in self.tools if t.backend_ref == tool.backend_ref] or [tool]
        secrets: frozenset[SecretRef] = frozenset().union(*(t.required_secrets for t in siblings))
        network: frozenset[str] = frozenset().union(*(t.network for t in siblings))
        return BackendSpec(
            catalog_name=self.name,
            backend_ref=tool.backend_ref,
            backend_kind=tool.backend_kind,
            resource_limits=tool.resource_limits,
            required_secrets=secrets,
            network=network,
            concurrency=tool.concurrency,
        )

    def backends(self) -> list[BackendSpec]:
        specs: dict[str, BackendSpec] = {}
        for tool in self.tools:
            if tool.backend_ref not in specs:
                specs[tool.backend_ref] = self.backend_for(tool)
        return list(specs.values())

    def prewarm_backends(self) -> list[BackendSpec]:
        refs = {tool.backend_ref for tool in self.tools if tool.prewarm}
        return [spec for spec in self.backends() if spec.backend_ref in refs]
