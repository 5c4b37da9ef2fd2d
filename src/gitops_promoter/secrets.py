# ABOUTME: Secret catalog for every service and the synchronizer that writes it to Vault
# ABOUTME: Resolves values from prompts, the environment, defaults or a CSPRNG, then overwrites KV v2 records

"""
Secret Synchronizer.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Each service reads its credentials and settings from Vault at

    {mount}/data/{prefix}/{environment}/{service}/{category}

e.g. secret/data/craftista/prod/catalogue/mongodb-credentials. This module
knows which categories and fields every service needs (the CATALOG) and fills
them in for one environment.

=============================================================================
WHERE DO VALUES COME FROM?
=============================================================================

For each field, first match wins:

    interactive   operator prompt; the default offered is the ambient value,
                  the static default or a freshly generated value
    from-env      the field's environment variable (FRONTEND_JWT_SECRET, ...)
    dry-run       same as from-env, but nothing is written

then the static default (``log_level=info``), then a random alphanumeric
value of the field's length from the ``secrets`` module. Fields tied to the
environment name (``node_env``) always take it.

Optional categories (registry and CI credentials) have no default; when a
field is still empty they are skipped with a warning.

Writes overwrite the whole record. Values never reach logs or reports: the
report carries field names and masked values only.
"""

from __future__ import annotations

import os
import secrets
import string
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import httpx
import structlog

from gitops_promoter.errors import ExternalToolUnavailable, InvalidInput, SecretBackendError
from gitops_promoter.models import Environment, Service, WriteResult
from gitops_promoter.utils.client import MASK, mask_secrets
from gitops_promoter.utils.logging import AuditLogger
from gitops_promoter.utils.vault import VaultClient, VaultError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from gitops_promoter.config import PromoterSettings, VaultSettings

logger = structlog.get_logger(__name__)

ALPHABET = string.ascii_letters + string.digits


class SyncMode(StrEnum):
    INTERACTIVE = "interactive"
    FROM_ENV = "from-env"
    DRY_RUN = "dry-run"


def generate_secret(length: int = 32) -> str:
    """Random alphanumeric string from the OS CSPRNG."""
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


# =============================================================================
# CATALOG
# =============================================================================


@dataclass(frozen=True)
class SecretField:
    """
    One field of a secret record.

    Attributes:
        name: Key inside the Vault record.
        env_var: Ambient variable that supplies the value.
        default: Static fallback.
        generate: Length of a generated value when nothing else resolves.
        from_environment: Value is the environment name itself.
        sensitive: Always fully masked in reports.
        label: Prompt text in interactive mode.
    """

    name: str
    env_var: str | None = None
    default: str | None = None
    generate: int | None = None
    from_environment: bool = False
    sensitive: bool = False
    label: str | None = None

    @property
    def prompt_label(self) -> str:
        return self.label or f"Enter {self.name.replace('_', ' ')}"


@dataclass(frozen=True)
class SecretCategory:
    owner: str
    name: str
    fields: tuple[SecretField, ...]
    optional: bool = False
    fixed_path: str | None = None

    def path(self, prefix: str, environment: Environment) -> str:
        if self.fixed_path:
            return self.fixed_path
        return f"{prefix}/{environment}/{self.owner}/{self.name}"


def _generated(name: str, length: int, env_var: str | None = None, label: str | None = None) -> SecretField:
    return SecretField(name, env_var=env_var, generate=length, sensitive=True, label=label)


CATALOG: dict[Service, tuple[SecretCategory, ...]] = {
    Service.FRONTEND: (
        SecretCategory(
            "frontend",
            "api-keys",
            (
                _generated("session_secret", 32, "FRONTEND_SESSION_SECRET", "Enter session secret"),
                _generated("jwt_secret", 64, "FRONTEND_JWT_SECRET", "Enter JWT secret"),
                _generated("api_key", 32, "FRONTEND_API_KEY", "Enter API key"),
            ),
        ),
        SecretCategory(
            "frontend",
            "config",
            (
                SecretField("node_env", from_environment=True),
                SecretField("log_level", env_var="FRONTEND_LOG_LEVEL", default="info"),
                SecretField("port", env_var="FRONTEND_PORT", default="3000"),
            ),
        ),
    ),
    Service.CATALOGUE: (
        SecretCategory(
            "catalogue",
            "mongodb-credentials",
            (
                SecretField(
                    "username",
                    env_var="CATALOGUE_MONGODB_USERNAME",
                    default="catalogue_user",
                    label="Enter MongoDB username",
                ),
                _generated(
                    "password", 24, "CATALOGUE_MONGODB_PASSWORD", "Enter MongoDB password"
                ),
            ),
        ),
        SecretCategory(
            "catalogue",
            "mongodb-uri",
            (
                SecretField(
                    "uri",
                    env_var="CATALOGUE_MONGODB_URI",
                    default="mongodb://catalogue-mongodb:27017",
                    label="Enter MongoDB URI",
                ),
                SecretField("database", env_var="CATALOGUE_MONGODB_DATABASE", default="catalogue"),
            ),
        ),
        SecretCategory(
            "catalogue",
            "config",
            (
                SecretField("flask_env", from_environment=True),
                SecretField("log_level", env_var="CATALOGUE_LOG_LEVEL", default="INFO"),
                SecretField("data_source", default="mongodb"),
            ),
        ),
    ),
    Service.VOTING: (
        SecretCategory(
            "voting",
            "postgres-credentials",
            (
                SecretField(
                    "username",
                    env_var="VOTING_POSTGRES_USERNAME",
                    default="voting_user",
                    label="Enter PostgreSQL username",
                ),
                _generated(
                    "password", 24, "VOTING_POSTGRES_PASSWORD", "Enter PostgreSQL password"
                ),
            ),
        ),
        SecretCategory(
            "voting",
            "postgres-uri",
            (
                SecretField(
                    "uri",
                    env_var="VOTING_POSTGRES_URI",
                    default="postgresql://voting-postgres:5432",
                    label="Enter PostgreSQL URI",
                ),
                SecretField("database", env_var="VOTING_POSTGRES_DATABASE", default="voting"),
            ),
        ),
        SecretCategory(
            "voting",
            "config",
            (
                SecretField("spring_profiles_active", from_environment=True),
                SecretField("log_level", env_var="VOTING_LOG_LEVEL", default="INFO"),
            ),
        ),
    ),
    Service.RECOMMENDATION: (
        SecretCategory(
            "recommendation",
            "redis-credentials",
            (
                _generated(
                    "password", 24, "RECOMMENDATION_REDIS_PASSWORD", "Enter Redis password"
                ),
            ),
        ),
        SecretCategory(
            "recommendation",
            "redis-uri",
            (
                SecretField(
                    "uri",
                    env_var="RECOMMENDATION_REDIS_URI",
                    default="redis://recommendation-redis:6379",
                    label="Enter Redis URI",
                ),
            ),
        ),
        SecretCategory(
            "recommendation",
            "config",
            (
                SecretField("environment", from_environment=True),
                SecretField("log_level", env_var="RECOMMENDATION_LOG_LEVEL", default="info"),
            ),
        ),
    ),
}

# Synced only when every service is being synced.
COMMON: tuple[SecretCategory, ...] = (
    SecretCategory(
        "common",
        "registry",
        (
            SecretField("username", env_var="DOCKER_USERNAME", label="Enter Docker registry username"),
            SecretField(
                "password",
                env_var="DOCKER_PASSWORD",
                sensitive=True,
                label="Enter Docker registry password",
            ),
        ),
        optional=True,
    ),
)

# Pipeline credentials live outside the per-environment tree; synced with dev only.
CICD: tuple[SecretCategory, ...] = (
    SecretCategory(
        "github-actions",
        "dockerhub-credentials",
        (
            SecretField("username", env_var="DOCKERHUB_USERNAME", label="Enter DockerHub username"),
            SecretField(
                "password",
                env_var="DOCKERHUB_PASSWORD",
                sensitive=True,
                label="Enter DockerHub password",
            ),
        ),
        optional=True,
        fixed_path="github-actions/dockerhub-credentials",
    ),
    SecretCategory(
        "github-actions",
        "sonarqube-token",
        (SecretField("token", env_var="SONARQUBE_TOKEN", sensitive=True, label="Enter SonarQube token"),),
        optional=True,
        fixed_path="github-actions/sonarqube-token",
    ),
    SecretCategory(
        "github-actions",
        "gitops-deploy-key",
        (
            SecretField(
                "private_key",
                env_var="GITOPS_DEPLOY_KEY",
                sensitive=True,
                label="Enter GitOps deploy key",
            ),
        ),
        optional=True,
        fixed_path="github-actions/gitops-deploy-key",
    ),
    SecretCategory(
        "github-actions",
        "slack-webhook-url",
        (SecretField("url", env_var="SLACK_WEBHOOK_URL", sensitive=True, label="Enter Slack webhook URL"),),
        optional=True,
        fixed_path="github-actions/slack-webhook-url",
    ),
)


def categories_for(environment: Environment, service: Service | None = None) -> list[SecretCategory]:
    """Categories to sync, in catalog order."""
    if service is not None:
        return list(CATALOG[service])
    categories = [c for svc in Service for c in CATALOG[svc]]
    categories.extend(COMMON)
    if environment is Environment.DEV:
        categories.extend(CICD)
    return categories


def redact(category: SecretCategory, values: Mapping[str, str]) -> dict[str, str]:
    """Report-safe view of ``values``."""
    sensitive = {f.name for f in category.fields if f.sensitive}
    return {
        name: MASK if name in sensitive else mask_secrets({name: value})[name]
        for name, value in values.items()
    }


# =============================================================================
# SYNCHRONIZER
# =============================================================================


class SecretSynchronizer:
    """Resolves catalog values for an environment and writes them to Vault."""

    def __init__(
        self,
        vault: VaultSettings,
        environ: Mapping[str, str] | None = None,
        prompt: Callable[[str, str | None], str] | None = None,
        audit: AuditLogger | None = None,
        generator: Callable[[int], str] = generate_secret,
    ) -> None:
        """
        Args:
            vault: Vault address, token, mount and path prefix.
            environ: Ambient variables; defaults to os.environ.
            prompt: Interactive prompt, called as prompt(label, default) and
                    returning the value to use.
            audit: Audit trail; defaults to structlog output.
            generator: Random value generator, called with the length.
        """
        self._vault = vault
        self._environ = os.environ if environ is None else environ
        self._prompt = prompt
        self._audit = audit or AuditLogger()
        self._generate = generator

    @classmethod
    def from_settings(
        cls,
        settings: PromoterSettings,
        prompt: Callable[[str, str | None], str] | None = None,
    ) -> SecretSynchronizer:
        return cls(
            settings.vault,
            prompt=prompt,
            audit=AuditLogger(settings.audit_log, actor=settings.actor),
        )

    def resolve(
        self,
        category: SecretCategory,
        environment: Environment,
        mode: SyncMode,
    ) -> dict[str, str]:
        """Field values for ``category``; unresolved optional fields are ""."""
        values = {}
        for field in category.fields:
            if field.from_environment:
                values[field.name] = str(environment)
                continue

            ambient = self._environ.get(field.env_var, "") if field.env_var else ""
            if mode is SyncMode.INTERACTIVE:
                offered = ambient or field.default
                if not offered and field.generate:
                    offered = self._generate(field.generate)
                value = self._prompt(field.prompt_label, offered or None)
                values[field.name] = value or offered or ""
                continue

            value = ambient or field.default or ""
            if not value and field.generate:
                value = self._generate(field.generate)
            values[field.name] = value
        return values

    async def sync(
        self,
        environment: str | Environment,
        service: str | Service | None = None,
        mode: SyncMode = SyncMode.FROM_ENV,
        verify: bool = False,
    ) -> list[WriteResult]:
        """
        Sync the catalog for ``environment`` (optionally one service) into Vault.

        Raises:
            InvalidInput: Unknown environment or service, or interactive mode
                without a prompt.
            ExternalToolUnavailable: No Vault token, or Vault unreachable.
            SecretBackendError: Vault rejected a write or read.
        """
        try:
            env = Environment.parse(environment)
            svc = Service.parse(service) if service is not None else None
        except ValueError as e:
            raise InvalidInput(str(e)) from None
        if mode is SyncMode.INTERACTIVE and self._prompt is None:
            raise InvalidInput("Interactive mode needs a terminal prompt")

        target = f"{env}/{svc}" if svc else str(env)
        log = logger.bind(environment=str(env), service=str(svc) if svc else "all", mode=str(mode))
        categories = categories_for(env, svc)
        log.info("secret_sync_started", categories=len(categories))

        if mode is SyncMode.DRY_RUN:
            results = [self._plan(c, env) for c in categories]
            self._audit.log_write("sync_secrets", target, "dry_run", {"paths": len(results)})
            return results

        if not self._vault.token.get_secret_value():
            raise ExternalToolUnavailable(
                "VAULT_TOKEN is not set",
                hint="Export VAULT_TOKEN or use --dry-run",
            )

        # All values, prompts included, are resolved before Vault is contacted.
        resolved = [(c, self.resolve(c, env, mode)) for c in categories]

        results = []
        try:
            async with VaultClient(self._vault) as vault:
                for category, values in resolved:
                    results.append(await self._write(vault, category, env, values, verify))
        except VaultError as e:
            self._audit.log_error("sync_secrets", target, str(e))
            raise SecretBackendError(str(e), hint="Check the Vault token's policy") from e
        except httpx.HTTPError as e:
            self._audit.log_error("sync_secrets", target, str(e))
            raise ExternalToolUnavailable(
                f"Cannot reach Vault at {self._vault.addr}: {e}",
                hint="Check VAULT_ADDR",
            ) from e

        written = sum(1 for r in results if r.written)
        self._audit.log_write(
            "sync_secrets",
            target,
            "published",
            {"written": written, "skipped": len(results) - written},
        )
        log.info("secret_sync_completed", written=written)
        return results

    def _plan(self, category: SecretCategory, environment: Environment) -> WriteResult:
        path = category.path(self._vault.path_prefix, environment)
        values = self.resolve(category, environment, SyncMode.DRY_RUN)
        skipped = self._skip_reason(category, values)
        logger.info("[DRY RUN] would sync", path=path, fields=sorted(values), skipped=skipped)
        return WriteResult(
            path=path,
            fields=tuple(values),
            written=False,
            redacted=redact(category, values),
            skipped_reason=skipped or "dry run",
        )

    async def _write(
        self,
        vault: VaultClient,
        category: SecretCategory,
        environment: Environment,
        values: dict[str, str],
        verify: bool,
    ) -> WriteResult:
        path = category.path(self._vault.path_prefix, environment)
        skipped = self._skip_reason(category, values)
        if skipped:
            logger.warning("secret_skipped", path=path, reason=skipped)
            return WriteResult(path, tuple(values), written=False, skipped_reason=skipped)

        await vault.kv_put(path, values)
        logger.info("secret_synced", path=path, fields=sorted(values))

        verified = None
        if verify:
            stored = await vault.kv_get(path)
            verified = stored == values
            if not verified:
                logger.warning("secret_verification_failed", path=path)

        return WriteResult(
            path=path,
            fields=tuple(values),
            written=True,
            redacted=redact(category, values),
            verified=verified,
        )

    @staticmethod
    def _skip_reason(category: SecretCategory, values: Mapping[str, str]) -> str | None:
        missing = [name for name, value in values.items() if not value]
        if not missing:
            return None
        if category.optional:
            return f"not provided: {', '.join(missing)}"
        raise InvalidInput(f"No value for {', '.join(missing)} in {category.owner}/{category.name}")
