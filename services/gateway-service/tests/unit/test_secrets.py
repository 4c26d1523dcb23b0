"""Tests for secret stores and the injector."""

import pytest
import structlog
from structlog.testing import capture_logs

from gateway_service import secrets as secrets_module
from gateway_service.catalog.models import SecretRef
from gateway_service.errors import SecretResolutionFailed
from gateway_service.secrets import (
    ChainSecretStore,
    EnvSecretStore,
    FileSecretStore,
    MappingSecretStore,
    SecretInjector,
    SecretNotFound,
)


class TestStores:
    def test_mapping_store(self):
        store = MappingSecretStore({"a": "1", "b": b"2"})
        assert store.get("a") == b"1"
        assert store.get("b") == b"2"
        with pytest.raises(SecretNotFound):
            store.get("c")

    def test_env_store_maps_names_to_prefixed_variables(self):
        environ = {"TOOLGATE_SECRET_GITHUB_PERSONAL_ACCESS_TOKEN": "ghp_x"}
        store = EnvSecretStore(environ=environ)

        assert store.variable_for("github.personal_access_token") == (
            "TOOLGATE_SECRET_GITHUB_PERSONAL_ACCESS_TOKEN"
        )
        assert store.get("github.personal_access_token") == b"ghp_x"
        with pytest.raises(SecretNotFound):
            store.get("gitlab.token")

    def test_file_store_reads_and_strips_trailing_newline(self, tmp_path):
        (tmp_path / "db_password").write_text("hunter2\n")
        store = FileSecretStore(tmp_path)

        assert store.get("db_password") == b"hunter2"
        with pytest.raises(SecretNotFound):
            store.get("absent")

    def test_file_store_rejects_names_outside_its_directory(self, tmp_path):
        secrets_dir = tmp_path / "secrets"
        secrets_dir.mkdir()
        (tmp_path / "outside").write_text("nope")
        store = FileSecretStore(secrets_dir)

        with pytest.raises(SecretNotFound):
            store.get("../outside")

    def test_chain_store_first_hit_wins(self):
        chain = ChainSecretStore(
            MappingSecretStore({"shared": "first"}),
            MappingSecretStore({"shared": "second", "only_second": "2"}),
        )

        assert chain.get("shared") == b"first"
        assert chain.get("only_second") == b"2"
        with pytest.raises(SecretNotFound):
            chain.get("nowhere")


class TestSecretInjector:
    def test_resolve_returns_masked_values(self):
        injector = SecretInjector(MappingSecretStore({"api.key": "s3cr3t"}))

        resolved = injector.resolve(["api.key"])

        assert resolved["api.key"].get_secret_value() == b"s3cr3t"
        assert "s3cr3t" not in repr(resolved)

    def test_resolve_is_all_or_nothing(self):
        injector = SecretInjector(MappingSecretStore({"present": "v"}))

        with pytest.raises(SecretResolutionFailed) as exc_info:
            injector.resolve(["present", "missing.one", "missing.two"])

        assert exc_info.value.context["missing"] == ["missing.one", "missing.two"]
        assert "missing.one" in exc_info.value.message

    def test_environment_uses_declared_or_derived_variable_names(self):
        injector = SecretInjector(
            MappingSecretStore({"github.token": "ghp_1", "slack.bot-token": "xoxb"})
        )

        env = injector.environment(
            [
                SecretRef(name="github.token", env="GITHUB_PERSONAL_ACCESS_TOKEN"),
                SecretRef(name="slack.bot-token"),
            ]
        )

        assert env == {"GITHUB_PERSONAL_ACCESS_TOKEN": "ghp_1", "SLACK_BOT_TOKEN": "xoxb"}

    def test_values_never_reach_the_logs(self, monkeypatch):
        # A fresh proxy, so a logger cached by earlier configuration is bypassed
        monkeypatch.setattr(secrets_module, "logger", structlog.get_logger(secrets_module.__name__))
        injector = SecretInjector(MappingSecretStore({"api.key": "s3cr3t-value"}))

        with capture_logs() as logs:
            injector.environment([SecretRef(name="api.key")])
            with pytest.raises(SecretResolutionFailed):
                injector.resolve(["api.key", "absent"])

        assert logs
        assert "s3cr3t-value" not in repr(logs)
