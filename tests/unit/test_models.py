# ABOUTME: Unit tests for domain types
# ABOUTME: Tests service/environment parsing, tier ordering, sync statuses and revision handles

from datetime import UTC, datetime

import pytest

from gitops_promoter.models import (
    DesiredStateRecord,
    Environment,
    HealthState,
    PromotionAction,
    PromotionEvent,
    RevisionHandle,
    RevisionKind,
    Service,
    SyncState,
    SyncStatus,
    WriteResult,
    utc_now,
)


@pytest.mark.unit
class TestService:
    def test_parse(self):
        assert Service.parse("voting") is Service.VOTING
        assert Service.parse(Service.FRONTEND) is Service.FRONTEND

    def test_parse_invalid_lists_choices(self):
        with pytest.raises(ValueError, match="frontend, catalogue, voting, recommendation"):
            Service.parse("cart")


@pytest.mark.unit
class TestEnvironment:
    def test_tiers_are_ordered(self):
        assert Environment.DEV.tier < Environment.STAGING.tier < Environment.PROD.tier

    def test_predecessor(self):
        assert Environment.DEV.predecessor is None
        assert Environment.STAGING.predecessor is Environment.DEV
        assert Environment.PROD.predecessor is Environment.STAGING

    def test_only_prod_requires_approval(self):
        assert [e for e in Environment if e.requires_approval] == [Environment.PROD]

    def test_parse_invalid(self):
        with pytest.raises(ValueError, match="Invalid environment: qa"):
            Environment.parse("qa")


@pytest.mark.unit
class TestSyncStatus:
    def test_from_strings(self):
        status = SyncStatus.from_strings("OutOfSync", "Progressing")

        assert status.sync_state is SyncState.OUT_OF_SYNC
        assert status.health_state is HealthState.PROGRESSING
        assert not status.converged

    def test_unrecognised_values_are_unknown(self):
        status = SyncStatus.from_strings(None, "Exploded")

        assert status == SyncStatus()

    def test_converged_needs_synced_and_healthy(self):
        assert SyncStatus(SyncState.SYNCED, HealthState.HEALTHY).converged
        assert not SyncStatus(SyncState.SYNCED, HealthState.DEGRADED).converged

    def test_str(self):
        assert str(SyncStatus(SyncState.SYNCED, HealthState.HEALTHY)) == (
            "Sync: Synced, Health: Healthy"
        )


@pytest.mark.unit
class TestRecords:
    def test_image_reference(self):
        record = DesiredStateRecord(
            Service.CATALOGUE,
            Environment.PROD,
            "8060633493/craftista-catalogue",
            "v1.2.1",
            "kubernetes/overlays/prod/catalogue/kustomization.yaml",
        )

        assert record.image_reference == "8060633493/craftista-catalogue:v1.2.1"

    def test_event_target(self):
        event = PromotionEvent(
            PromotionAction.PROMOTE,
            Service.VOTING,
            Environment.STAGING,
            "v2.0.0",
            "alice",
            datetime(2026, 10, 18, tzinfo=UTC),
        )

        assert event.target == "voting/staging"

    def test_utc_now_has_whole_seconds(self):
        now = utc_now()

        assert now.microsecond == 0
        assert now.tzinfo is UTC

    @pytest.mark.parametrize(
        ("handle", "expected"),
        [
            (RevisionHandle(RevisionKind.TAG, "v1.0.0"), "tag v1.0.0"),
            (RevisionHandle(RevisionKind.REVISION, "v1.0.0", revision="abc123"), "commit abc123"),
            (
                RevisionHandle(RevisionKind.STEPS, "v1.0.0", revision="abc123", steps=2),
                "2 step(s) back (commit abc123)",
            ),
        ],
    )
    def test_revision_handle_describe(self, handle: RevisionHandle, expected: str):
        assert handle.describe() == expected

    def test_write_result_as_dict(self):
        result = WriteResult("craftista/dev/voting/config", ("log_level",), written=True)

        assert result.as_dict() == {
            "path": "craftista/dev/voting/config",
            "fields": ["log_level"],
            "written": True,
            "redacted": {},
            "skipped_reason": None,
            "verified": None,
        }
