"""Secret stores and the secret injector.

The injector resolves the secrets a backend needs right before it is spawned.
Resolved values travel only to the launch call: they are wrapped in
``SecretBytes`` so reprs are masked, and only secret *names* are logged.
"""

import os
import re
from pathlib import Path
from typing import Iterable, Mapping, Protocol

from pydantic import SecretBytes

from gateway_service.catalog.models import SecretRef
from gateway_service.core.logging import get_logger
from gateway_service.errors import SecretResolutionFailed

logger = get_logger(__name__)


class SecretNotFound(KeyError):
    """Raised by a store that has no value for a secret name."""


class SecretStore(Protocol):
    def get(self, name: str) -> bytes:
        """Return the secret value or raise ``SecretNotFound``."""
        ...


class MappingSecretStore:
    """Secrets held in memory, e.g. injected by a parent process."""

    def __init__(self, values: Mapping[str, bytes | str] | None = None):
        self._values = {
            k: v.encode() if isinstance(v, str) else v for k, v in (values or {}).items()
        }

    def get(self, name: str) -> bytes:
        try:
            return self._values[name]
        except KeyError:
            raise SecretNotFound(name) from None


class EnvSecretStore:
    """Reads ``<prefix><NAME>`` from the environment.

    ``github.personal_access_token`` with prefix ``TOOLGATE_SECRET_`` is read
    from ``TOOLGATE_SECRET_GITHUB_PERSONAL_ACCESS_TOKEN``.
    """

    _UNSAFE = re.compile(r"[^A-Za-z0-9]+")

    def __init__(self, prefix: str = "TOOLGATE_SECRET_", environ: Mapping[str, str] | None = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def variable_for(self, name: str) -> str:
        return self.prefix + self._UNSAFE.sub("_", name).strip("_").upper()

    def get(self, name: str) -> bytes:
        value = self._environ.get(self.variable_for(name))
        if value is None:
            raise SecretNotFound(name)
        return value.encode()


class FileSecretStore:
    """Reads one file per secret from a directory (docker secrets layout)."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).resolve()

    def path_for(self, name: str) -> Path:
        """Return the file holding ``name``; names may not leave the directory."""
        path = (self.directory / name).resolve()
        try:
            path.relative_to(self.directory)
        except ValueError:
            raise SecretNotFound(name) from None
        return path

    def get(self, name: str) -> bytes:
        path = self.path_for(name)
        try:
            return path.read_bytes().rstrip(b"\r\n")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise SecretNotFound(name) from None


class ChainSecretStore:
    """Asks each store in turn; the first one holding the name wins."""

    def __init__(self, *stores: SecretStore):
        self.stores = stores

    def get(self, name: str) -> bytes:
        for store in self.stores:
            try:
                return store.get(name)
            except SecretNotFound:
                continue
        raise SecretNotFound(name)


class SecretInjector:
    """Resolves named secrets for one backend launch."""

    def __init__(self, store: SecretStore):
        self.store = store

    def resolve(self, names: Iterable[str]) -> dict[str, SecretBytes]:
        """Resolve every name or none.

        Args:
            names: Secret names required by the backend

        Returns:
            Mapping of name to masked value

        Raises:
            SecretResolutionFailed: If any name is missing; lists names only
        """
        resolved: dict[str, SecretBytes] = {}
        missing: list[str] = []
        for name in sorted(set(names)):
            try:
                resolved[name] = SecretBytes(self.store.get(name))
            except SecretNotFound:
                missing.append(name)

        if missing:
            logger.warning("Secret resolution failed", missing=missing)
            raise SecretResolutionFailed(
                f"Missing secret(s): {', '.join(missing)}", missing=missing
            )

        logger.debug("Secrets resolved", names=list(resolved))
        return resolved

    def environment(self, refs: Iterable[SecretRef]) -> dict[str, str]:
        """Resolve ``refs`` into backend environment variables.

        Raises:
            SecretResolutionFailed: If any referenced secret is missing
        """
        refs = list(refs)
        values = self.resolve(ref.name for ref in refs)
        return {
            ref.env_name: values[ref.name].get_secret_value().decode()
            for ref in refs
        }
