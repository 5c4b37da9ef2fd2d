# ABOUTME: Pytest fixtures shared by the gitops-promoter test suite
# ABOUTME: Builds a throwaway GitOps repository with a bare remote, plus engine, settings and ArgoCD fixtures

import os
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
import yaml
from git import Actor, Repo
from pydantic import SecretStr

from gitops_promoter.config import ArgocdInstance, PromoterSettings, SecuritySettings, VaultSettings
from gitops_promoter.models import Environment, Service
from gitops_promoter.promotion import PromotionEngine
from gitops_promoter.registry import RegistryVerifier
from gitops_promoter.store import DesiredStateStore, mirror_path, record_path
from gitops_promoter.utils.client import Application, ArgocdClient
from gitops_promoter.utils.logging import AuditLogger
from gitops_promoter.utils.safety import SafetyGuard

SEED_AUTHOR = Actor("Seed", "seed@example.com")
OTHER_AUTHOR = Actor("Other Operator", "other@example.com")
FIXED_NOW = datetime(2026, 10, 18, 10, 0, 0, tzinfo=UTC)
MISSING_DOCKER = "gitops-promoter-test-no-docker"

INITIAL_TAGS = {
    Environment.DEV: "v1.2.3",
    Environment.STAGING: "v1.2.2",
    Environment.PROD: "v1.2.1",
}


def kustomization(service: str, environment: str, tag: str) -> str:
    return yaml.safe_dump(
        {
            "apiVersion": "kustomize.config.k8s.io/v1beta1",
            "kind": "Kustomization",
            "namespace": f"craftista-{environment}",
            "resources": [f"../../../base/{service}"],
            "images": [{"name": f"8060633493/craftista-{service}", "newTag": tag}],
        },
        sort_keys=False,
    )


def helm_values(service: str, tag: str) -> str:
    return yaml.safe_dump(
        {
            "replicaCount": 1,
            "image": {"repository": f"8060633493/craftista-{service}", "tag": tag},
        },
        sort_keys=False,
    )


def commit_file(repo: Repo, path: str, content: str, message: str, author: Actor = OTHER_AUTHOR) -> str:
    """Write ``path`` in ``repo``'s working tree and commit it."""
    file = Path(repo.working_tree_dir) / path
    file.parent.mkdir(parents=True, exist_ok=True)
    file.write_text(content)
    repo.index.add([path])
    return repo.index.commit(message, author=author, committer=author).hexsha


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by a test (the CLI reconfigures on every run)."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Bare remote seeded with a record and Helm values for every (service, environment)."""
    remote = tmp_path / "remote.git"
    Repo.init(remote, bare=True, initial_branch="main")

    seed = Repo.init(tmp_path / "seed", initial_branch="main")
    paths = []
    for environment, tag in INITIAL_TAGS.items():
        for service in Service:
            for path, content in (
                (record_path(service, environment), kustomization(service, environment, tag)),
                (mirror_path(service, environment), helm_values(service, tag)),
            ):
                file = tmp_path / "seed" / path
                file.parent.mkdir(parents=True, exist_ok=True)
                file.write_text(content)
                paths.append(path)
    seed.index.add(paths)
    seed.index.commit("Initial desired state", author=SEED_AUTHOR, committer=SEED_AUTHOR)
    seed.create_remote("origin", str(remote))
    seed.git.push("origin", "HEAD:refs/heads/main")
    return remote


@pytest.fixture
def gitops_repo(tmp_path: Path, remote_repo: Path) -> Path:
    """Working clone of the remote, as an operator would have it."""
    work = tmp_path / "work"
    Repo.clone_from(str(remote_repo), work, branch="main")
    return work


@pytest.fixture
def other_clone(tmp_path: Path, remote_repo: Path) -> Repo:
    """A second operator's clone of the same remote."""
    return Repo.clone_from(str(remote_repo), tmp_path / "other", branch="main")


@pytest.fixture
def push_external(other_clone: Repo) -> Callable[[str, str], str]:
    """Publish a change to the remote from another clone; returns the pushed SHA."""

    def push(path: str, content: str, message: str = "External change") -> str:
        other_clone.git.pull("origin", "main")
        sha = commit_file(other_clone, path, content, message)
        other_clone.git.push("origin", "HEAD:refs/heads/main")
        return sha

    return push


@pytest.fixture
def store(gitops_repo: Path) -> DesiredStateStore:
    return DesiredStateStore(gitops_repo)


class StubRegistry(RegistryVerifier):
    """Registry that knows every image except those listed as missing."""

    def __init__(self, missing: set[str] | None = None) -> None:
        super().__init__()
        self.missing = set(missing or ())
        self.checked: list[str] = []

    def exists(self, service, image):
        self.checked.append(image)
        return image not in self.missing


@pytest.fixture
def registry() -> StubRegistry:
    return StubRegistry()


@pytest.fixture
def audit_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.jsonl"


@pytest.fixture
def engine(store: DesiredStateStore, registry: StubRegistry, audit_path: Path) -> PromotionEngine:
    return PromotionEngine(
        store,
        registry,
        actor="alice",
        audit=AuditLogger(audit_path, actor="alice"),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def approve_yes() -> Callable:
    return lambda request: True


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove ambient configuration that would leak into settings."""
    for name in list(os.environ):
        if name.startswith(("GITOPS_", "ARGOCD_", "VAULT_", "MCP_")):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def settings(gitops_repo: Path, clean_env: pytest.MonkeyPatch) -> PromoterSettings:
    return PromoterSettings(
        repo_path=gitops_repo,
        actor="alice",
        docker_bin=MISSING_DOCKER,
        security=SecuritySettings(read_only=False),
    )


# =============================================================================
# ARGOCD
# =============================================================================


@pytest.fixture
def mock_argocd_instance() -> ArgocdInstance:
    return ArgocdInstance(
        url="https://argocd.example.com",
        token=SecretStr("test-token"),
        name="test",
        insecure=True,
    )


def make_application(name: str, sync: str = "Synced", health: str = "Healthy") -> Application:
    return Application(
        name=name,
        namespace="argocd",
        project="default",
        repo_url="https://github.com/craftista/craftista-gitops.git",
        path="kubernetes/overlays/staging/catalogue",
        target_revision="main",
        sync_status=sync,
        health_status=health,
    )


@pytest.fixture
def mock_argocd_client(mock_argocd_instance: ArgocdInstance) -> AsyncMock:
    client = AsyncMock(spec=ArgocdClient)
    client.instance = mock_argocd_instance
    client.get_application.return_value = make_application("craftista-catalogue-staging")
    return client


@pytest.fixture
def safety_guard() -> SafetyGuard:
    return SafetyGuard(SecuritySettings(read_only=False, rate_limit_calls=100, rate_limit_window=60))


@pytest.fixture
def read_only_safety_guard() -> SafetyGuard:
    return SafetyGuard(SecuritySettings(read_only=True))


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


@pytest.fixture
def vault_settings() -> VaultSettings:
    return VaultSettings(
        addr="http://vault.test:8200",
        token=SecretStr("test-root-token"),
        mount="secret",
        path_prefix="craftista",
    )


# Integration test fixtures


@pytest.fixture
def argocd_url() -> str | None:
    return os.environ.get("ARGOCD_URL")


@pytest.fixture
def argocd_token() -> str | None:
    return os.environ.get("ARGOCD_TOKEN")


@pytest.fixture
async def live_argocd_client(
    argocd_url: str | None,
    argocd_token: str | None,
) -> AsyncIterator[ArgocdClient | None]:
    """Live ArgoCD client for integration tests, or None when not configured."""
    if not argocd_url or not argocd_token:
        yield None
        return

    instance = ArgocdInstance(
        url=argocd_url,
        token=SecretStr(argocd_token),
        name="integration-test",
        insecure=os.environ.get("ARGOCD_INSECURE", "false").lower() == "true",
    )
    async with ArgocdClient(instance) as client:
        yield client


@pytest.fixture
def render_record() -> Callable[[str, str, str], str]:
    """Kustomization text for (service, environment, tag)."""
    return kustomization


@pytest.fixture
def make_app() -> Callable[..., Application]:
    """Application factory: make_app(name, sync="Synced", health="Healthy")."""
    return make_application
