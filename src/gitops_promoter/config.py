# ABOUTME: Configuration management for gitops-promoter
# ABOUTME: Reads repository, registry, ArgoCD, Vault and safety settings from the environment

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every tunable of the promotion workflow lives here:

1. WHERE the GitOps repository is and which remote/branch it publishes to
2. HOW images are named in the registry and how strict the registry check is
3. WHICH ArgoCD instance reports sync status, and how often to poll it
4. WHERE Vault lives and which KV mount/prefix holds service secrets
5. WHAT the MCP surface may do (read-only mode, rate limits, audit log)

Values are read from environment variables, validated once at startup and
handed around as typed objects.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Repository and workflow (GITOPS_ prefix):
    GITOPS_REPO_PATH            -> Local clone of the GitOps repository
    GITOPS_REMOTE / _BRANCH     -> Remote name and tracked branch
    GITOPS_REGISTRY_NAMESPACE   -> Registry namespace (DockerHub org)
    GITOPS_IMAGE_PREFIX         -> Image name prefix, "craftista" -> craftista-frontend
    GITOPS_APP_PREFIX           -> ArgoCD application prefix
    GITOPS_STRICTNESS           -> strict | warn-and-proceed
    GITOPS_ACTOR                -> Name recorded in commit trailers (default $USER)

ArgoCD (no prefix, shared with the argocd CLI conventions):
    ARGOCD_URL, ARGOCD_TOKEN, ARGOCD_INSECURE

Vault (VAULT_ prefix, same names the vault CLI uses):
    VAULT_ADDR, VAULT_TOKEN, VAULT_NAMESPACE, VAULT_MOUNT, VAULT_PATH_PREFIX

MCP safety (MCP_ prefix):
    MCP_READ_ONLY, MCP_AUDIT_LOG, MCP_MASK_SECRETS, MCP_RATE_LIMIT_CALLS,
    MCP_RATE_LIMIT_WINDOW
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gitops_promoter.models import Environment, StrictnessPolicy

# =============================================================================
# ARGOCD INSTANCE
# =============================================================================


class ArgocdInstance(BaseModel):
    """
    Connection details for the ArgoCD server that reconciles the repository.

    BaseModel rather than BaseSettings: the instance is assembled from the
    ARGOCD_* fields of PromoterSettings, never read from the environment on
    its own.
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="ArgoCD server URL")
    token: SecretStr = Field(description="ArgoCD API token")
    name: str = Field(default="default", description="Instance identifier")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has a scheme and no trailing slash.

        "argocd.example.com"   -> "https://argocd.example.com"
        "https://example.com/" -> "https://example.com"

        API paths start with "/", so a trailing slash would produce "//api/v1".
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# VAULT SETTINGS
# =============================================================================


class VaultSettings(BaseSettings):
    """
    Secret backend configuration.

    Uses the same variable names as the vault CLI (VAULT_ADDR, VAULT_TOKEN),
    so an operator shell that already talks to Vault needs no extra setup.

    PATH LAYOUT:
    ------------
    Secrets for a service live at {path_prefix}/{environment}/{service}/{category}
    inside the KV v2 engine mounted at {mount}:

        mount=secret, prefix=craftista
        -> POST /v1/secret/data/craftista/dev/frontend/api-keys
    """

    model_config = SettingsConfigDict(env_prefix="VAULT_", extra="ignore")

    addr: str = Field(
        default="http://vault.vault.svc.cluster.local:8200",
        description="Vault server address",
    )
    token: SecretStr = Field(default=SecretStr(""), description="Vault token")
    namespace: str | None = Field(default=None, description="Vault Enterprise namespace")
    mount: str = Field(default="secret", description="KV v2 mount point")
    path_prefix: str = Field(default="craftista", description="Prefix under the mount")
    verify_tls: bool = Field(default=True, description="Verify Vault's TLS certificate")

    @field_validator("addr")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("mount", "path_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/")


# =============================================================================
# SECURITY SETTINGS (MCP surface)
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guard rails for the MCP tool surface.

    The CLI is driven by a human at a terminal and prompts for approval; the
    MCP server is driven by an agent, so it starts read-only and needs explicit
    confirm/confirm_name parameters for anything that would otherwise prompt.
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block promotions and rollbacks when true",
    )
    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in output",
    )
    rate_limit_calls: int = Field(
        default=100,
        description="Maximum tool calls per window",
    )
    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# MAIN SETTINGS
# =============================================================================


def _default_actor() -> str:
    return os.environ.get("USER") or "automation"


class PromoterSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings()
        settings.repo_path            # Path to the GitOps clone
        settings.timeout_for(Environment.PROD)  # 600
        settings.vault.addr           # nested Vault settings
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # REPOSITORY
    # -------------------------------------------------------------------------

    repo_path: Path = Field(default=Path("."), description="Local GitOps repository clone")
    remote: str = Field(default="origin", description="Remote that ArgoCD watches")
    branch: str = Field(default="main", description="Tracked branch on the remote")
    author_name: str = Field(default="GitOps Automation", description="Commit author name")
    author_email: str = Field(
        default="gitops-automation@craftista.com",
        description="Commit author email",
    )
    actor: str = Field(
        default_factory=_default_actor,
        description="Operator identity recorded in promotion events",
    )

    # -------------------------------------------------------------------------
    # REGISTRY
    # -------------------------------------------------------------------------

    registry_namespace: str = Field(default="8060633493", description="Registry namespace")
    image_prefix: str = Field(default="craftista", description="Image repository prefix")
    strictness: StrictnessPolicy = Field(
        default=StrictnessPolicy.WARN_AND_PROCEED,
        description="Behaviour when the registry check tool is unavailable",
    )
    # WARN_AND_PROCEED keeps the historical behaviour of the promotion
    # scripts: no docker CLI on the box means "assume the image exists".
    # CI runners that must never promote an unverified tag set strict.
    docker_bin: str = Field(default="docker", description="Registry check tool")
    registry_timeout: float = Field(default=60.0, description="Registry check timeout (s)")

    # -------------------------------------------------------------------------
    # ARGOCD
    # -------------------------------------------------------------------------

    argocd_url: str = Field(
        default="",
        validation_alias="ARGOCD_URL",
        description="ArgoCD server URL",
    )
    argocd_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ARGOCD_TOKEN",
        description="ArgoCD API token",
    )
    argocd_insecure: bool = Field(
        default=False,
        validation_alias="ARGOCD_INSECURE",
        description="Skip TLS verification for ArgoCD",
    )
    app_prefix: str = Field(default="craftista", description="ArgoCD application prefix")
    poll_interval: float = Field(default=10.0, gt=0, description="Sync poll interval (s)")
    prod_poll_interval: float = Field(
        default=15.0,
        gt=0,
        description="Sync poll interval for prod (s)",
    )
    sync_timeout: int = Field(default=300, ge=0, description="Default sync wait (s)")
    prod_sync_timeout: int = Field(default=600, ge=0, description="Default prod sync wait (s)")

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Emit JSON log lines")
    audit_log: Path | None = Field(default=None, description="Audit log file (JSON lines)")

    # -------------------------------------------------------------------------
    # NESTED
    # -------------------------------------------------------------------------

    vault: VaultSettings = Field(default_factory=VaultSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    # -------------------------------------------------------------------------
    # COMPUTED
    # -------------------------------------------------------------------------

    @property
    def argocd_instance(self) -> ArgocdInstance | None:
        """ArgoCD instance built from ARGOCD_*; None when ARGOCD_URL is unset."""
        if not self.argocd_url:
            return None
        return ArgocdInstance(
            url=self.argocd_url,
            token=self.argocd_token,
            name="primary",
            insecure=self.argocd_insecure,
        )

    def timeout_for(self, environment: Environment) -> int:
        if environment is Environment.PROD:
            return self.prod_sync_timeout
        return self.sync_timeout


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings(**overrides: object) -> PromoterSettings:
    """
    Load settings from the environment with validation.

    If GITOPS_ENV_FILE is set, variables are also read from that file, which
    is handy for local development:

        GITOPS_REPO_PATH=~/src/craftista-gitops
        ARGOCD_URL=https://localhost:8443
        ARGOCD_INSECURE=true
        VAULT_ADDR=http://127.0.0.1:8200

    Keyword overrides (e.g. from CLI flags) win over the environment.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return PromoterSettings(
        _env_file=os.environ.get("GITOPS_ENV_FILE"),
        **overrides,
    )
