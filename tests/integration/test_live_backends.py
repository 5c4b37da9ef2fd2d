# ABOUTME: Integration tests against live ArgoCD and Vault instances
# ABOUTME: Skipped unless ARGOCD_URL/ARGOCD_TOKEN or VAULT_ADDR/VAULT_TOKEN are exported

"""Integration tests for the ArgoCD and Vault clients.

ArgoCD tests require:
- ARGOCD_URL and ARGOCD_TOKEN (ARGOCD_INSECURE=true for self-signed certs)
- ARGOCD_TEST_APPLICATION naming an existing application, e.g.
  craftista-catalogue-dev

Vault tests require:
- VAULT_ADDR and VAULT_TOKEN with write access to {mount}/data/gitops-promoter-it/*

The Vault test writes a scratch record and reads it back; it never touches
the craftista/* tree.
"""

from __future__ import annotations

import os

import pytest

from gitops_promoter.config import VaultSettings
from gitops_promoter.models import Environment, Service
from gitops_promoter.sync_monitor import SyncMonitor
from gitops_promoter.utils.client import ArgocdClient, ArgocdError
from gitops_promoter.utils.vault import VaultClient

pytestmark = pytest.mark.integration

requires_argocd = pytest.mark.skipif(
    not (os.environ.get("ARGOCD_URL") and os.environ.get("ARGOCD_TOKEN")),
    reason="ARGOCD_URL and ARGOCD_TOKEN not set",
)
requires_vault = pytest.mark.skipif(
    not (os.environ.get("VAULT_ADDR") and os.environ.get("VAULT_TOKEN")),
    reason="VAULT_ADDR and VAULT_TOKEN not set",
)


@requires_argocd
class TestLiveArgocd:
    """Read-only checks against a live ArgoCD server."""

    async def test_get_application(self, live_argocd_client: ArgocdClient):
        name = os.environ.get("ARGOCD_TEST_APPLICATION")
        if not name:
            pytest.skip("ARGOCD_TEST_APPLICATION not set")

        app = await live_argocd_client.get_application(name, refresh=True)

        assert app.name == name
        assert app.sync_status in {"Synced", "OutOfSync", "Unknown"}

    async def test_missing_application(self, live_argocd_client: ArgocdClient):
        with pytest.raises(ArgocdError) as exc_info:
            await live_argocd_client.get_application("gitops-promoter-it-does-not-exist")

        assert exc_info.value.code in (403, 404)

    async def test_snapshot_of_missing_application_is_unknown(
        self, live_argocd_client: ArgocdClient
    ):
        monitor = SyncMonitor(live_argocd_client, app_prefix="gitops-promoter-it-missing")

        status = await monitor.snapshot(Service.CATALOGUE, Environment.DEV)

        assert not status.converged


@requires_vault
class TestLiveVault:
    """KV v2 round trip against a live Vault server."""

    async def test_put_then_get(self):
        settings = VaultSettings()
        path = "gitops-promoter-it/config"

        async with VaultClient(settings) as vault:
            await vault.kv_put(path, {"log_level": "INFO"})
            stored = await vault.kv_get(path)

        assert stored == {"log_level": "INFO"}

    async def test_missing_record(self):
        async with VaultClient(VaultSettings()) as vault:
            assert await vault.kv_get("gitops-promoter-it/does-not-exist") is None
