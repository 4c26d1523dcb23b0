"""Catalog registry.

The registry holds one immutable ``RegistrySnapshot``. ``reload`` validates a
complete replacement and swaps it in with a single assignment, so readers
never lock and never see a mix of old and new catalogs.
"""

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from gateway_service.catalog.models import BackendKind, CatalogDescriptor
from gateway_service.core.logging import get_logger
from gateway_service.errors import ConfigError, UnknownCatalog

logger = get_logger(__name__)

# Returns True when a backend reference can be launched.
BackendResolver = Callable[[str, BackendKind], bool]


@dataclass(frozen=True)
class RegistrySnapshot:
    """An immutable view of every loaded catalog."""

    catalogs: Mapping[str, CatalogDescriptor] = field(
        default_factory=lambda: MappingProxyType({})
    )
    version: int = 0
    loaded_at: float = 0.0


def validate_catalogs(
    descriptors: Iterable[CatalogDescriptor],
    resolver: BackendResolver | None = None,
) -> list[str]:
    """Return every problem found in ``descriptors`` (empty list if valid)."""
    problems: list[str] = []
    seen_catalogs: set[str] = set()

    for catalog in descriptors:
        if not catalog.name:
            problems.append("catalog with empty name")
            continue
        if catalog.name in seen_catalogs:
            problems.append(f"duplicate catalog '{catalog.name}'")
        seen_catalogs.add(catalog.name)

        seen_tools: set[str] = set()
        launch_settings: dict[str, tuple] = {}
        for tool in catalog.tools:
            where = f"{catalog.name}/{tool.name or '<unnamed>'}"
            if not tool.name:
                problems.append(f"{where}: tool with empty name")
            elif tool.name in seen_tools:
                problems.append(f"{catalog.name}: duplicate tool '{tool.name}'")
            seen_tools.add(tool.name)

            if not tool.backend_ref.strip():
                problems.append(f"{where}: missing backend_ref")
                continue
            if resolver is not None and not resolver(tool.backend_ref, tool.backend_kind):
                problems.append(f"{where}: backend '{tool.backend_ref}' is not resolvable")

            settings = (tool.backend_kind, tool.resource_limits, tool.concurrency)
            previous = launch_settings.setdefault(tool.backend_ref, settings)
            if previous != settings:
                problems.append(
                    f"{where}: conflicting kind, limits or concurrency for backend "
                    f"'{tool.backend_ref}'"
                )

    return problems


class CatalogRegistry:
    """Holds the active catalog snapshot."""

    def __init__(self, resolver: BackendResolver | None = None):
        self._resolver = resolver
        self._snapshot = RegistrySnapshot()
        self._write_lock = threading.Lock()

    @property
    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def lookup(self, catalog_name: str) -> CatalogDescriptor:
        """Return the catalog named ``catalog_name``.

        Raises:
            UnknownCatalog: If no such catalog is loaded
        """
        catalog = self._snapshot.catalogs.get(catalog_name)
        if catalog is None:
            raise UnknownCatalog(f"Unknown catalog '{catalog_name}'", catalog=catalog_name)
        return catalog

    def get(self, catalog_name: str) -> CatalogDescriptor | None:
        return self._snapshot.catalogs.get(catalog_name)

    def catalog_names(self) -> list[str]:
        return list(self._snapshot.catalogs)

    def reload(self, descriptors: Iterable[CatalogDescriptor]) -> RegistrySnapshot:
        """Validate and atomically install a new set of catalogs.

        Args:
            descriptors: The complete replacement set

        Returns:
            The newly active snapshot

        Raises:
            ConfigError: If any catalog is malformed; the active snapshot is kept
        """
        descriptors = list(descriptors)
        problems = validate_catalogs(descriptors, self._resolver)
        if problems:
            logger.error("Catalog reload rejected", problems=problems)
            raise ConfigError(
                f"Catalog reload rejected: {len(problems)} problem(s)", problems=problems
            )

        with self._write_lock:
            snapshot = RegistrySnapshot(
                catalogs=MappingProxyType({c.name: c for c in descriptors}),
                version=self._snapshot.version + 1,
                loaded_at=time.time(),
            )
            self._snapshot = snapshot

        logger.info(
            "Catalog registry loaded",
            version=snapshot.version,
            catalogs=len(snapshot.catalogs),
            tools=sum(len(c.tools) for c in snapshot.catalogs.values()),
        )
        return snapshot
