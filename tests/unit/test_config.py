# ABOUTME: Unit tests for configuration management
# ABOUTME: Tests settings loading from the environment, validation and computed helpers

from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from gitops_promoter.config import (
    ArgocdInstance,
    PromoterSettings,
    SecuritySettings,
    VaultSettings,
    load_settings,
)
from gitops_promoter.models import Environment, StrictnessPolicy


@pytest.mark.unit
class TestArgocdInstance:
    """Tests for ArgocdInstance configuration."""

    def test_url_validation_adds_https(self):
        """Test that URL without scheme gets https added."""
        instance = ArgocdInstance(url="argocd.example.com", token=SecretStr("test"))
        assert instance.url == "https://argocd.example.com"

    def test_url_validation_preserves_http(self):
        instance = ArgocdInstance(url="http://argocd.local", token=SecretStr("test"))
        assert instance.url == "http://argocd.local"

    def test_url_validation_removes_trailing_slash(self):
        instance = ArgocdInstance(url="https://argocd.example.com/", token=SecretStr("test"))
        assert instance.url == "https://argocd.example.com"

    def test_defaults(self):
        instance = ArgocdInstance(url="https://argocd.example.com", token=SecretStr("test"))

        assert instance.name == "default"
        assert instance.insecure is False


@pytest.mark.unit
class TestSecuritySettings:
    """Tests for SecuritySettings configuration."""

    def test_defaults(self, clean_env):
        """Test the MCP surface starts read-only."""
        settings = SecuritySettings()

        assert settings.read_only is True
        assert settings.audit_log is None
        assert settings.mask_secrets is True
        assert settings.rate_limit_calls == 100
        assert settings.rate_limit_window == 60

    def test_env_prefix(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("MCP_READ_ONLY", "false")

        assert SecuritySettings().read_only is False


@pytest.mark.unit
class TestVaultSettings:
    """Tests for VaultSettings configuration."""

    def test_defaults(self, clean_env):
        settings = VaultSettings()

        assert settings.mount == "secret"
        assert settings.path_prefix == "craftista"
        assert settings.token.get_secret_value() == ""
        assert settings.namespace is None

    def test_reads_vault_cli_variables(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("VAULT_ADDR", "https://vault.example.com:8200/")
        clean_env.setenv("VAULT_TOKEN", "s.abcdef")
        clean_env.setenv("VAULT_MOUNT", "/kv/")

        settings = VaultSettings()

        assert settings.addr == "https://vault.example.com:8200"
        assert settings.token.get_secret_value() == "s.abcdef"
        assert settings.mount == "kv"


@pytest.mark.unit
class TestPromoterSettings:
    """Tests for PromoterSettings configuration."""

    def test_defaults(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("USER", "bob")

        settings = PromoterSettings()

        assert settings.remote == "origin"
        assert settings.branch == "main"
        assert settings.registry_namespace == "8060633493"
        assert settings.image_prefix == "craftista"
        assert settings.strictness is StrictnessPolicy.WARN_AND_PROCEED
        assert settings.actor == "bob"
        assert settings.sync_timeout == 300
        assert settings.prod_sync_timeout == 600
        assert settings.log_level == "INFO"
        assert settings.security.read_only is True

    def test_env_prefix(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        clean_env.setenv("GITOPS_REPO_PATH", str(tmp_path))
        clean_env.setenv("GITOPS_STRICTNESS", "strict")
        clean_env.setenv("GITOPS_ACTOR", "carol")

        settings = PromoterSettings()

        assert settings.repo_path == tmp_path
        assert settings.strictness is StrictnessPolicy.STRICT
        assert settings.actor == "carol"

    def test_argocd_variables_have_no_prefix(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("ARGOCD_URL", "argocd.example.com/")
        clean_env.setenv("ARGOCD_TOKEN", "secret-token")
        clean_env.setenv("ARGOCD_INSECURE", "true")

        instance = PromoterSettings().argocd_instance

        assert instance is not None
        assert instance.url == "https://argocd.example.com"
        assert instance.token.get_secret_value() == "secret-token"
        assert instance.insecure is True

    def test_no_argocd_instance_without_url(self, clean_env):
        assert PromoterSettings().argocd_instance is None

    def test_nested_vault_settings(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("VAULT_ADDR", "http://127.0.0.1:8200")

        assert PromoterSettings().vault.addr == "http://127.0.0.1:8200"

    def test_log_level_case_insensitive(self, clean_env):
        assert PromoterSettings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self, clean_env):
        with pytest.raises(ValidationError):
            PromoterSettings(log_level="verbose")

    def test_invalid_strictness(self, clean_env):
        with pytest.raises(ValidationError):
            PromoterSettings(strictness="sometimes")

    def test_poll_interval_must_be_positive(self, clean_env):
        with pytest.raises(ValidationError):
            PromoterSettings(poll_interval=0)

    def test_timeout_for(self, clean_env):
        settings = PromoterSettings(sync_timeout=120, prod_sync_timeout=900)

        assert settings.timeout_for(Environment.STAGING) == 120
        assert settings.timeout_for(Environment.DEV) == 120
        assert settings.timeout_for(Environment.PROD) == 900


@pytest.mark.unit
class TestLoadSettings:
    """Tests for load_settings."""

    def test_overrides_win(self, clean_env: pytest.MonkeyPatch):
        clean_env.setenv("GITOPS_BRANCH", "release")

        assert load_settings(branch="hotfix").branch == "hotfix"

    def test_env_file(self, clean_env: pytest.MonkeyPatch, tmp_path: Path):
        env_file = tmp_path / "promoter.env"
        env_file.write_text("GITOPS_BRANCH=release\nGITOPS_APP_PREFIX=shop\n")
        clean_env.setenv("GITOPS_ENV_FILE", str(env_file))

        settings = load_settings()

        assert settings.branch == "release"
        assert settings.app_prefix == "shop"
