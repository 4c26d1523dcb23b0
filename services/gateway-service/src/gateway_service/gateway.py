"""Wires the gateway components together."""

from pathlib import Path

from gateway_service.catalog.loader import load_catalogs
from gateway_service.catalog.registry import CatalogRegistry, RegistrySnapshot
from gateway_service.config import Settings
from gateway_service.core.logging import get_logger
from gateway_service.dispatcher import Dispatcher
from gateway_service.reaper import IdleReaper
from gateway_service.runtime import ProcessRuntime, SubprocessRuntime
from gateway_service.secrets import (
    ChainSecretStore,
    EnvSecretStore,
    FileSecretStore,
    SecretInjector,
    SecretStore,
)
from gateway_service.supervisor.supervisor import Supervisor

logger = get_logger(__name__)


class Gateway:
    """The long-lived gateway: registry, supervisor, dispatcher and reaper."""

    def __init__(
        self,
        settings: Settings,
        runtime: ProcessRuntime | None = None,
        secret_store: SecretStore | None = None,
    ):
        self.settings = settings
        self.runtime = runtime or SubprocessRuntime(
            docker_binary=settings.docker_binary,
            stop_timeout=settings.stop_timeout_seconds,
        )
        store = secret_store or ChainSecretStore(
            EnvSecretStore(prefix=settings.secret_env_prefix),
            FileSecretStore(settings.secrets_dir),
        )
        self.registry = CatalogRegistry(resolver=self.runtime.resolvable)
        self.supervisor = Supervisor(
            self.registry,
            self.runtime,
            SecretInjector(store),
            start_attempts=settings.start_attempts,
            probe_attempts=settings.probe_attempts,
            probe_timeout=settings.probe_timeout_seconds,
            backoff_initial=settings.backoff_initial_seconds,
            backoff_max=settings.backoff_max_seconds,
        )
        self.dispatcher = Dispatcher(
            self.registry,
            self.supervisor,
            default_timeout=settings.default_timeout_seconds,
        )
        self.reaper = IdleReaper(
            self.supervisor,
            idle_timeout=settings.idle_timeout_seconds,
            interval=settings.reaper_interval_seconds,
        )
        self.started = False

    async def start(self) -> None:
        """Load catalogs, prewarm backends and start the reaper.

        Raises:
            ConfigError: If the initial catalogs are invalid
        """
        logger.info("Starting gateway", catalog_path=self.settings.catalog_path)
        self.registry.reload(load_catalogs(Path(self.settings.catalog_path)))
        if self.settings.prewarm:
            started = await self.supervisor.prewarm()
            logger.info("Prewarm complete", started=started)
        self.reaper.start()
        self.started = True

    async def reload(self) -> RegistrySnapshot:
        """Reload catalogs from disk and retire instances they no longer describe.

        Raises:
            ConfigError: If the new catalogs are invalid; nothing changes
        """
        snapshot = self.registry.reload(load_catalogs(Path(self.settings.catalog_path)))
        retired = self.supervisor.retire_stale(snapshot)
        logger.info("Catalogs reloaded", version=snapshot.version, retired=retired)
        return snapshot

    async def shutdown(self) -> None:
        logger.info("Shutting down gateway")
        await self.reaper.stop()
        await self.supervisor.shutdown()
        self.started = False
        logger.info("Gateway shutdown complete")
