# ABOUTME: Unit tests for commit-trailer promotion history
# ABOUTME: Tests message rendering, trailer parsing and event filtering per (service, environment)

from datetime import UTC, datetime

import pytest

from gitops_promoter.history import (
    PromotionLog,
    parse_event,
    parse_trailers,
    render_message,
    subject_for,
)
from gitops_promoter.models import (
    ApprovalStatus,
    Environment,
    PromotionAction,
    PromotionEvent,
    Service,
)

WHEN = datetime(2026, 10, 18, 10, 0, 0, tzinfo=UTC)


def make_event(**overrides) -> PromotionEvent:
    values = {
        "action": PromotionAction.PROMOTE,
        "service": Service.CATALOGUE,
        "environment": Environment.PROD,
        "image_tag": "v1.2.3",
        "actor": "alice",
        "timestamp": WHEN,
        "approval": ApprovalStatus.APPROVED,
        "source_environment": Environment.STAGING,
        "previous_tag": "v1.2.2",
    }
    values.update(overrides)
    return PromotionEvent(**values)


@pytest.mark.unit
class TestRenderMessage:
    """Tests for commit message rendering."""

    def test_prod_subject(self):
        assert subject_for(make_event()) == "Promote catalogue to production: v1.2.3"

    def test_staging_subject(self):
        event = make_event(environment=Environment.STAGING, source_environment=Environment.DEV)

        assert subject_for(event) == "Promote catalogue to staging: v1.2.3"

    def test_rollback_subject(self):
        event = make_event(action=PromotionAction.ROLLBACK, rollback_target="tag v1.2.2")

        assert subject_for(event) == "Rollback catalogue in prod: v1.2.3"

    def test_prod_message_has_rollback_command(self):
        message = render_message(make_event())

        assert "Promoted from staging environment" in message
        assert "gitops-promote rollback --service catalogue --environment prod" in message

    def test_trailers_are_last_paragraph(self):
        message = render_message(make_event())

        trailers = parse_trailers(message)

        assert trailers["Promoter-Action"] == "promote"
        assert trailers["Image-Tag"] == "v1.2.3"
        assert trailers["Previous-Tag"] == "v1.2.2"
        assert trailers["Approval"] == "approved"
        assert trailers["Timestamp"] == "2026-10-18T10:00:00Z"


@pytest.mark.unit
class TestParseEvent:
    """Tests for reading events back from commit messages."""

    def test_round_trip(self):
        event = make_event()

        parsed = parse_event(render_message(event), revision="abc123")

        assert parsed == make_event(revision="abc123")

    def test_plain_commit_is_not_an_event(self):
        assert parse_event("Fix typo in README\n\nMentions catalogue and prod.\n") is None

    def test_subject_only_is_not_an_event(self):
        assert parse_event("Promote catalogue to production: v1.2.3") is None

    def test_malformed_trailers_are_ignored(self):
        message = (
            "Promote catalogue\n\n"
            "Promoter-Action: promote\nService: nonexistent\nEnvironment: prod\n"
            "Image-Tag: v1\nTimestamp: 2026-10-18T10:00:00Z\n"
        )

        assert parse_event(message) is None

    def test_paragraph_with_prose_is_not_trailers(self):
        assert parse_trailers("Subject\n\nThis line: has a colon and spaces\n") == {}


@pytest.mark.unit
class TestPromotionLog:
    """Tests for PromotionLog.events against a real repository."""

    def _publish(self, store, event):
        changes = store.render_tag_update(event.service, event.environment, event.image_tag)
        expected = {path: store.blob_id(path) for path in changes}
        store.write(changes)
        return store.publish(sorted(changes), render_message(event), expected)

    def test_empty_history(self, store):
        assert PromotionLog(store).events(Service.CATALOGUE, Environment.STAGING) == []

    def test_newest_first_and_filtered(self, store):
        staging = dict(environment=Environment.STAGING, source_environment=Environment.DEV)
        first = self._publish(store, make_event(image_tag="v1.2.3", **staging))
        self._publish(store, make_event(service=Service.VOTING, image_tag="v9.0.0", **staging))
        second = self._publish(store, make_event(image_tag="v1.2.4", **staging))

        events = PromotionLog(store).events(Service.CATALOGUE, Environment.STAGING)

        assert [e.revision for e in events] == [second, first]
        assert [e.image_tag for e in events] == ["v1.2.4", "v1.2.3"]

    def test_limit(self, store):
        staging = dict(environment=Environment.STAGING, source_environment=Environment.DEV)
        self._publish(store, make_event(image_tag="v1.2.3", **staging))
        self._publish(store, make_event(image_tag="v1.2.4", **staging))

        events = PromotionLog(store).events(Service.CATALOGUE, Environment.STAGING, limit=1)

        assert [e.image_tag for e in events] == ["v1.2.4"]
