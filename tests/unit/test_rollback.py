# ABOUTME: Unit tests for the Rollback Resolver
# ABOUTME: Tests steps/commit/tag selectors, insufficient history, confirmation and no-op rollbacks

import pytest

from gitops_promoter.errors import (
    ApprovalDenied,
    InsufficientHistory,
    InvalidInput,
    InvalidRevision,
)
from gitops_promoter.history import PromotionLog
from gitops_promoter.models import (
    ApprovalStatus,
    Environment,
    PromotionAction,
    RevisionKind,
    Service,
)
from gitops_promoter.promotion import PromotionEngine, PromotionStatus
from gitops_promoter.rollback import RollbackResolver
from gitops_promoter.store import mirror_path

STAGING = Environment.STAGING
CATALOGUE = Service.CATALOGUE


@pytest.fixture
def resolver(engine: PromotionEngine) -> RollbackResolver:
    return RollbackResolver(engine)


@pytest.fixture
def promoted_twice(engine: PromotionEngine) -> list[str]:
    """Staging catalogue promoted v1.2.2 -> v1.2.3 -> v1.2.4; returns the two commits."""
    first = engine.promote(CATALOGUE, "v1.2.3", STAGING)
    second = engine.promote(CATALOGUE, "v1.2.4", STAGING)
    return [first.commit, second.commit]


@pytest.mark.unit
class TestResolveTarget:
    """Tests for turning selectors into rollback targets."""

    def test_default_is_one_step(self, resolver: RollbackResolver, promoted_twice):
        handle = resolver.resolve_target(CATALOGUE, STAGING)

        assert handle.kind is RevisionKind.STEPS
        assert handle.steps == 1
        assert handle.image_tag == "v1.2.3"
        assert handle.revision == promoted_twice[0]

    def test_insufficient_history(self, resolver: RollbackResolver, promoted_twice):
        with pytest.raises(InsufficientHistory) as exc_info:
            resolver.resolve_target(CATALOGUE, STAGING, steps=2)

        assert exc_info.value.requested == 2
        assert exc_info.value.available == 2
        assert exc_info.value.exit_code == 8

    def test_no_history(self, resolver: RollbackResolver):
        with pytest.raises(InsufficientHistory):
            resolver.resolve_target(CATALOGUE, STAGING)

    def test_steps_must_be_positive(self, resolver: RollbackResolver):
        with pytest.raises(InvalidInput, match="at least 1"):
            resolver.resolve_target(CATALOGUE, STAGING, steps=0)

    def test_one_selector_only(self, resolver: RollbackResolver):
        with pytest.raises(InvalidInput, match="one rollback selector"):
            resolver.resolve_target(CATALOGUE, STAGING, tag="v1.2.1", steps=1)

    def test_tag_selector(self, resolver: RollbackResolver):
        handle = resolver.resolve_target(CATALOGUE, STAGING, tag="v1.2.0")

        assert handle.kind is RevisionKind.TAG
        assert handle.image_tag == "v1.2.0"
        assert handle.describe() == "tag v1.2.0"

    def test_invalid_tag_selector(self, resolver: RollbackResolver):
        with pytest.raises(InvalidInput):
            resolver.resolve_target(CATALOGUE, STAGING, tag="not a tag")

    def test_revision_selector(self, resolver: RollbackResolver, promoted_twice):
        handle = resolver.resolve_target(CATALOGUE, STAGING, revision=promoted_twice[0][:10])

        assert handle.kind is RevisionKind.REVISION
        assert handle.revision == promoted_twice[0]
        assert handle.image_tag == "v1.2.3"

    def test_unknown_revision(self, resolver: RollbackResolver):
        with pytest.raises(InvalidRevision):
            resolver.resolve_target(CATALOGUE, STAGING, revision="deadbeefdeadbeef")


@pytest.mark.unit
class TestRollback:
    """Tests for publishing rollbacks."""

    def test_rollback_one_step(self, resolver: RollbackResolver, engine, promoted_twice, approve_yes):
        result = resolver.rollback("catalogue", "staging", approve=approve_yes)

        assert result.status is PromotionStatus.PUBLISHED
        assert result.event.action is PromotionAction.ROLLBACK
        assert result.event.image_tag == "v1.2.3"
        assert result.previous_tag == "v1.2.4"
        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.3"

    def test_rollback_is_a_new_event(self, resolver: RollbackResolver, engine, promoted_twice, approve_yes):
        resolver.rollback(CATALOGUE, STAGING, approve=approve_yes)

        events = PromotionLog(engine.store).events(CATALOGUE, STAGING)

        assert [e.action for e in events] == [
            PromotionAction.ROLLBACK,
            PromotionAction.PROMOTE,
            PromotionAction.PROMOTE,
        ]
        assert events[0].approval is ApprovalStatus.APPROVED
        assert events[0].rollback_target.startswith("1 step(s) back")

    def test_rolling_back_twice_returns_to_start(
        self, resolver: RollbackResolver, engine, promoted_twice, approve_yes
    ):
        resolver.rollback(CATALOGUE, STAGING, approve=approve_yes)
        resolver.rollback(CATALOGUE, STAGING, approve=approve_yes)

        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.4"

    def test_rollback_to_tag_updates_mirror(self, resolver: RollbackResolver, engine, approve_yes):
        resolver.rollback(CATALOGUE, STAGING, tag="v1.2.0", approve=approve_yes)

        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.0"
        assert "tag: v1.2.0" in engine.store.read_text(mirror_path(CATALOGUE, STAGING))

    def test_rollback_to_commit_restores_files(
        self, resolver: RollbackResolver, engine, promoted_twice, approve_yes
    ):
        result = resolver.rollback(
            CATALOGUE, STAGING, revision=promoted_twice[0], approve=approve_yes
        )

        assert result.event.rollback_target == f"commit {promoted_twice[0]}"
        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.3"
        assert "tag: v1.2.3" in engine.store.read_text(mirror_path(CATALOGUE, STAGING))

    def test_requires_confirmation(self, resolver: RollbackResolver, engine, promoted_twice):
        with pytest.raises(ApprovalDenied):
            resolver.rollback(CATALOGUE, STAGING, approve=lambda r: False)

        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.4"

    def test_confirmation_request(self, resolver: RollbackResolver, promoted_twice):
        seen = []

        def approve(request):
            seen.append(request)
            return True

        resolver.rollback(CATALOGUE, STAGING, approve=approve)

        assert seen[0].operation == "rollback"
        assert seen[0].target == "catalogue/staging"
        assert seen[0].details["current_tag"] == "v1.2.4"
        assert seen[0].details["target_tag"] == "v1.2.3"

    def test_rollback_to_current_tag_is_no_op(self, resolver: RollbackResolver, engine):
        def approve(request):
            raise AssertionError("no-op must not ask")

        head = engine.store.repo.head.commit.hexsha

        result = resolver.rollback(CATALOGUE, STAGING, tag="v1.2.2", approve=approve)

        assert result.status is PromotionStatus.NO_OP
        assert engine.store.repo.head.commit.hexsha == head

    def test_dry_run(self, resolver: RollbackResolver, engine, promoted_twice):
        result = resolver.rollback(CATALOGUE, STAGING, dry_run=True)

        assert result.status is PromotionStatus.DRY_RUN
        assert result.event.approval is ApprovalStatus.SKIPPED
        assert "+  newTag: v1.2.3" in result.diff
        assert engine.store.read(CATALOGUE, STAGING).image_tag == "v1.2.4"
