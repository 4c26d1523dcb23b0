"""Tests for the catalog registry and its validation."""

import pytest

from gateway_service.catalog.models import (
    BackendKind,
    CatalogDescriptor,
    ConcurrencyModel,
    ResourceLimits,
    ToolDescriptor,
)
from gateway_service.catalog.registry import CatalogRegistry, validate_catalogs
from gateway_service.errors import ConfigError, UnknownCatalog


def _tool(name: str, backend_ref: str = "mcp/docker", **kwargs) -> ToolDescriptor:
    return ToolDescriptor(name=name, backend_ref=backend_ref, **kwargs)


def _resolver(backend_ref: str, kind: BackendKind) -> bool:
    return backend_ref != "mcp/unknown"


class TestValidateCatalogs:
    def test_valid_catalogs_have_no_problems(self):
        catalogs = [
            CatalogDescriptor(name="infra", tools=(_tool("docker-ps"), _tool("docker-logs"))),
            # Tool names only need to be unique within a catalog
            CatalogDescriptor(name="dev", tools=(_tool("docker-ps"),)),
        ]
        assert validate_catalogs(catalogs, _resolver) == []

    def test_duplicate_tool_names(self):
        catalogs = [CatalogDescriptor(name="infra", tools=(_tool("docker-ps"), _tool("docker-ps")))]
        assert validate_catalogs(catalogs) == ["infra: duplicate tool 'docker-ps'"]

    def test_duplicate_and_empty_catalog_names(self):
        catalogs = [
            CatalogDescriptor(name="infra"),
            CatalogDescriptor(name="infra"),
            CatalogDescriptor(name=""),
        ]
        problems = validate_catalogs(catalogs)
        assert "duplicate catalog 'infra'" in problems
        assert "catalog with empty name" in problems

    def test_missing_and_unresolvable_backends(self):
        catalogs = [
            CatalogDescriptor(
                name="infra",
                tools=(_tool("a", backend_ref="  "), _tool("b", backend_ref="mcp/unknown")),
            )
        ]
        problems = validate_catalogs(catalogs, _resolver)
        assert problems == [
            "infra/a: missing backend_ref",
            "infra/b: backend 'mcp/unknown' is not resolvable",
        ]

    def test_conflicting_launch_settings_on_a_shared_backend(self):
        catalogs = [
            CatalogDescriptor(
                name="infra",
                tools=(
                    _tool("a"),
                    _tool("b", resource_limits=ResourceLimits(max_in_flight=2)),
                    _tool("c", concurrency=ConcurrencyModel.SINGLE),
                ),
            )
        ]
        problems = validate_catalogs(catalogs)
        assert len(problems) == 2
        assert all("conflicting" in p for p in problems)


class TestCatalogRegistry:
    def test_empty_registry(self):
        registry = CatalogRegistry()
        assert registry.snapshot.version == 0
        assert registry.catalog_names() == []
        with pytest.raises(UnknownCatalog):
            registry.lookup("infra")

    def test_reload_installs_new_snapshot(self):
        registry = CatalogRegistry(resolver=_resolver)

        snapshot = registry.reload([CatalogDescriptor(name="infra", tools=(_tool("docker-ps"),))])

        assert snapshot.version == 1
        assert registry.snapshot is snapshot
        assert registry.lookup("infra").tool_names == ["docker-ps"]
        assert registry.get("absent") is None

    def test_failed_reload_keeps_previous_snapshot(self):
        registry = CatalogRegistry(resolver=_resolver)
        before = registry.reload([CatalogDescriptor(name="infra", tools=(_tool("docker-ps"),))])

        with pytest.raises(ConfigError) as exc_info:
            registry.reload(
                [CatalogDescriptor(name="dev", tools=(_tool("x", backend_ref="mcp/unknown"),))]
            )

        assert exc_info.value.problems == ["dev/x: backend 'mcp/unknown' is not resolvable"]
        assert registry.snapshot is before
        assert registry.catalog_names() == ["infra"]

    def test_snapshot_is_read_only_and_survives_later_reloads(self):
        registry = CatalogRegistry()
        old = registry.reload([CatalogDescriptor(name="infra")])

        with pytest.raises(TypeError):
            old.catalogs["dev"] = CatalogDescriptor(name="dev")

        new = registry.reload([CatalogDescriptor(name="dev")])
        assert new.version == 2
        # A reader holding the old snapshot still sees the old catalogs
        assert list(old.catalogs) == ["infra"]
        assert list(new.catalogs) == ["dev"]
