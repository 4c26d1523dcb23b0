"""Tests for catalog descriptors."""

import pytest
from pydantic import ValidationError

from gateway_service.catalog.models import (
    BackendKind,
    CatalogDescriptor,
    ConcurrencyModel,
    ResourceLimits,
    SecretRef,
    ToolDescriptor,
)


def _catalog() -> CatalogDescriptor:
    return CatalogDescriptor(
        name="infra",
        tools=(
            ToolDescriptor(
                name="docker-ps",
                backend_ref="mcp/docker",
                required_secrets=frozenset({SecretRef(name="docker.hub_token")}),
            ),
            ToolDescriptor(
                name="docker-logs",
                backend_ref="mcp/docker",
                network=frozenset({"registry-1.docker.io"}),
                prewarm=True,
            ),
            ToolDescriptor(name="kubectl-get", backend_ref="mcp/kubectl"),
        ),
    )


def test_descriptors_are_immutable():
    tool = ToolDescriptor(name="docker-ps", backend_ref="mcp/docker")
    with pytest.raises(ValidationError):
        tool.name = "other"


def test_resource_limits_reject_nonpositive_values():
    with pytest.raises(ValidationError):
        ResourceLimits(max_in_flight=0)
    with pytest.raises(ValidationError):
        ResourceLimits(memory_mb=-1)


def test_secret_ref_derives_environment_name():
    assert SecretRef(name="github.personal_access_token").env_name == "GITHUB_PERSONAL_ACCESS_TOKEN"
    assert SecretRef(name="x", env="CUSTOM").env_name == "CUSTOM"


def test_tool_lookup_and_backend_refs_keep_declaration_order():
    catalog = _catalog()

    assert catalog.tool_names == ["docker-ps", "docker-logs", "kubectl-get"]
    assert catalog.tool("docker-logs").backend_ref == "mcp/docker"
    assert catalog.tool("absent") is None
    assert catalog.backend_refs() == ["mcp/docker", "mcp/kubectl"]


def test_backend_spec_unions_secrets_and_network_of_sibling_tools():
    catalog = _catalog()

    spec = catalog.backend_for(catalog.tool("docker-ps"))

    assert spec.key == ("infra", "mcp/docker")
    assert spec.label == "infra/mcp/docker"
    assert {ref.name for ref in spec.required_secrets} == {"docker.hub_token"}
    assert spec.network == frozenset({"registry-1.docker.io"})
    assert spec.backend_kind == BackendKind.IMAGE
    assert spec.concurrency == ConcurrencyModel.CONCURRENT
    # Every tool on the backend maps to the same pool spec
    assert catalog.backend_for(catalog.tool("docker-logs")) == spec


def test_backends_and_prewarm_backends():
    catalog = _catalog()

    assert [s.backend_ref for s in catalog.backends()] == ["mcp/docker", "mcp/kubectl"]
    assert [s.backend_ref for s in catalog.prewarm_backends()] == ["mcp/docker"]
