"""Load catalog descriptors from YAML.

The accepted shape follows ``docker mcp catalog`` files::

    name: infra
    displayName: Infrastructure
    registry:
      docker-cli:
        image: mcp/docker-cli
        concurrency: single
        resources: {cpus: 0.5, memory: 256Mi, maxInFlight: 4}
        secrets:
          - name: docker.hub_token
            env: DOCKER_HUB_TOKEN
        allowHosts: [registry-1.docker.io]
        tools:
          - docker-ps
          - name: docker-logs
            inputSchema: {type: object}

A server either names an ``image`` or a ``command`` (string or argv list).
"""

import re
import shlex
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from gateway_service.catalog.models import (
    BackendKind,
    CatalogDescriptor,
    ConcurrencyModel,
    ResourceLimits,
    SecretRef,
    ToolDescriptor,
)
from gateway_service.core.logging import get_logger
from gateway_service.errors import ConfigError

logger = get_logger(__name__)

_MEMORY = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgKMG]i?[bB]?)?\s*$")
_MEMORY_FACTORS_MB = {"k": 1 / 1024, "m": 1, "g": 1024}


def parse_memory_mb(value: int | float | str | None) -> int | None:
    """Parse a memory size such as ``512``, ``512m``, ``256Mi`` or ``1Gi`` into MB.

    Bare numbers are megabytes.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = _MEMORY.match(value)
    if not match:
        raise ValueError(f"invalid memory size '{value}'")
    amount = float(match.group(1))
    unit = (match.group(2) or "m")[0].lower()
    return max(1, int(amount * _MEMORY_FACTORS_MB[unit]))


class _ToolEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")


class _Resources(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cpus: float | None = None
    memory: int | float | str | None = None
    max_in_flight: int = Field(default=16, alias="maxInFlight")
    max_instances: int = Field(default=1, alias="maxInstances")


class _ServerEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str = ""
    image: str | None = None
    command: str | list[str] | None = None
    tools: list[_ToolEntry | str] = Field(default_factory=list)
    secrets: list[SecretRef] = Field(default_factory=list)
    allow_hosts: list[str] = Field(default_factory=list, alias="allowHosts")
    resources: _Resources = Field(default_factory=_Resources)
    concurrency: ConcurrencyModel = ConcurrencyModel.CONCURRENT
    prewarm: bool = False

    @model_validator(mode="after")
    def _one_backend(self) -> "_ServerEntry":
        if bool(self.image) == bool(self.command):
            raise ValueError("exactly one of 'image' or 'command' is required")
        return self


class _CatalogFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    display_name: str = Field(default="", alias="displayName")
    registry: dict[str, _ServerEntry] = Field(default_factory=dict)


def _to_descriptor(doc: _CatalogFile) -> CatalogDescriptor:
    tools: list[ToolDescriptor] = []
    for server_name, server in doc.registry.items():
        if server.image:
            backend_ref, kind = server.image, BackendKind.IMAGE
        elif isinstance(server.command, list):
            backend_ref, kind = shlex.join(server.command), BackendKind.COMMAND
        else:
            backend_ref, kind = server.command, BackendKind.COMMAND

        limits = ResourceLimits(
            cpus=server.resources.cpus,
            memory_mb=parse_memory_mb(server.resources.memory),
            max_in_flight=server.resources.max_in_flight,
            max_instances=server.resources.max_instances,
        )
        # A server without a tool list exposes one tool named after itself.
        entries = server.tools or [server_name]
        for entry in entries:
            if isinstance(entry, str):
                entry = _ToolEntry(name=entry)
            tools.append(
                ToolDescriptor(
                    name=entry.name,
                    backend_ref=backend_ref,
                    backend_kind=kind,
                    description=entry.description or server.description,
                    resource_limits=limits,
                    required_secrets=frozenset(server.secrets),
                    network=frozenset(server.allow_hosts),
                    concurrency=server.concurrency,
                    input_schema=entry.input_schema,
                    prewarm=server.prewarm,
                )
            )
    return CatalogDescriptor(name=doc.name, display_name=doc.display_name, tools=tuple(tools))


def load_catalog_file(path: Path) -> list[CatalogDescriptor]:
    """Load one YAML file; a file may hold one catalog or a ``catalogs`` list.

    Raises:
        ConfigError: If the file cannot be read or does not match the schema
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read catalog file {path}: {e}", path=str(path)) from e

    if data is None:
        return []
    documents = data.get("catalogs", [data]) if isinstance(data, dict) else data
    if not isinstance(documents, list):
        raise ConfigError(f"Catalog file {path} must hold a mapping or a list", path=str(path))

    try:
        descriptors = [_to_descriptor(_CatalogFile.model_validate(doc)) for doc in documents]
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid catalog file {path}: {e}", path=str(path)) from e

    logger.debug("Loaded catalog file", path=str(path), catalogs=[d.name for d in descriptors])
    return descriptors


def load_catalogs(path: str | Path) -> list[CatalogDescriptor]:
    """Load a catalog file, or every ``*.yaml``/``*.yml`` file in a directory.

    Raises:
        ConfigError: If the path does not exist or any file is invalid
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml"))
    elif path.is_file():
        files = [path]
    else:
        raise ConfigError(f"Catalog path not found: {path}", path=str(path))

    descriptors: list[CatalogDescriptor] = []
    for file in files:
        descriptors.extend(load_catalog_file(file))
    return descriptors
