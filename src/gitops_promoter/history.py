# ABOUTME: Promotion history stored as structured trailers in commit messages
# ABOUTME: Renders PromotionEvents into commit messages and reads them back newest-first

"""
PromotionEvent log.

Each publish is one commit whose message ends in a trailer block:

    Promote catalogue to staging: v1.2.3

    Promoted from dev environment

    Promoter-Action: promote
    Service: catalogue
    Environment: staging
    Source-Environment: dev
    Image-Tag: v1.2.3
    Previous-Tag: v1.2.2
    Actor: alice
    Approval: not-required
    Timestamp: 2026-10-18T10:00:00Z

History queries read only the trailer block, never the free-text subject or
body, so a commit that merely mentions a service name is not an event.
Commits without a ``Promoter-Action`` trailer are ignored.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitops_promoter.models import (
    ApprovalStatus,
    Environment,
    PromotionAction,
    PromotionEvent,
    Service,
)
from gitops_promoter.store import record_path

if TYPE_CHECKING:
    from gitops_promoter.store import DesiredStateStore

logger = structlog.get_logger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

ACTION = "Promoter-Action"
SERVICE = "Service"
ENVIRONMENT = "Environment"
SOURCE = "Source-Environment"
TAG = "Image-Tag"
PREVIOUS = "Previous-Tag"
ACTOR = "Actor"
APPROVAL = "Approval"
TIMESTAMP = "Timestamp"
ROLLBACK_TARGET = "Rollback-Target"


def _display_name(environment: Environment) -> str:
    return "production" if environment is Environment.PROD else str(environment)


def subject_for(event: PromotionEvent) -> str:
    if event.action is PromotionAction.ROLLBACK:
        return f"Rollback {event.service} in {event.environment}: {event.image_tag}"
    return f"Promote {event.service} to {_display_name(event.environment)}: {event.image_tag}"


def body_for(event: PromotionEvent) -> str:
    lines = []
    if event.action is PromotionAction.ROLLBACK:
        lines.append(f"Rolled back to {event.rollback_target}")
    elif event.source_environment is not None:
        lines.append(f"Promoted from {event.source_environment} environment")

    if event.environment is Environment.PROD:
        if event.action is PromotionAction.PROMOTE:
            lines.append("")
            lines.append("This is a production deployment. Rollback available via:")
        else:
            lines.append("")
            lines.append("To undo this rollback:")
        lines.append(
            f"  gitops-promote rollback --service {event.service} --environment {event.environment}"
        )
    return "\n".join(lines)


def trailers_for(event: PromotionEvent) -> list[tuple[str, str]]:
    trailers = [
        (ACTION, str(event.action)),
        (SERVICE, str(event.service)),
        (ENVIRONMENT, str(event.environment)),
    ]
    if event.source_environment is not None:
        trailers.append((SOURCE, str(event.source_environment)))
    trailers.append((TAG, event.image_tag))
    if event.previous_tag is not None:
        trailers.append((PREVIOUS, event.previous_tag))
    trailers.extend(
        [
            (ACTOR, event.actor),
            (APPROVAL, str(event.approval)),
            (TIMESTAMP, event.timestamp.astimezone(UTC).strftime(TIMESTAMP_FORMAT)),
        ]
    )
    if event.rollback_target is not None:
        trailers.append((ROLLBACK_TARGET, event.rollback_target))
    return trailers


def render_message(event: PromotionEvent) -> str:
    """Full commit message for ``event``: subject, body, trailer block."""
    parts = [subject_for(event)]
    body = body_for(event)
    if body:
        parts.append(body)
    parts.append("\n".join(f"{key}: {value}" for key, value in trailers_for(event)))
    return "\n\n".join(parts) + "\n"


def parse_trailers(message: str) -> dict[str, str]:
    """Key/value pairs from the last paragraph of ``message``."""
    paragraphs = [p for p in message.strip().split("\n\n") if p.strip()]
    if len(paragraphs) < 2:
        return {}
    trailers = {}
    for line in paragraphs[-1].splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key or " " in key.strip():
            return {}
        trailers[key.strip()] = value.strip()
    return trailers


def parse_event(message: str, revision: str | None = None) -> PromotionEvent | None:
    """
    Parse a commit message into a PromotionEvent.

    Returns:
        The event, or None if the message carries no (valid) promoter trailers.
    """
    trailers = parse_trailers(message)
    if ACTION not in trailers:
        return None
    try:
        source = trailers.get(SOURCE)
        return PromotionEvent(
            action=PromotionAction(trailers[ACTION]),
            service=Service(trailers[SERVICE]),
            environment=Environment(trailers[ENVIRONMENT]),
            image_tag=trailers[TAG],
            actor=trailers.get(ACTOR, "unknown"),
            timestamp=datetime.strptime(trailers[TIMESTAMP], TIMESTAMP_FORMAT).replace(
                tzinfo=UTC
            ),
            approval=ApprovalStatus(trailers.get(APPROVAL, ApprovalStatus.NOT_REQUIRED)),
            source_environment=Environment(source) if source else None,
            previous_tag=trailers.get(PREVIOUS),
            rollback_target=trailers.get(ROLLBACK_TARGET),
            revision=revision,
        )
    except (KeyError, ValueError) as e:
        logger.warning("malformed_promotion_trailers", revision=revision, error=str(e))
        return None


class PromotionLog:
    """Queryable view of the promotion events recorded in a store's history."""

    def __init__(self, store: DesiredStateStore) -> None:
        self._store = store

    def events(
        self,
        service: Service,
        environment: Environment,
        limit: int | None = None,
    ) -> list[PromotionEvent]:
        """
        Promotion and rollback events for (service, environment), newest first.

        Only commits that touched the record file are considered, and of
        those only the ones whose trailers name this service and environment.
        """
        path = record_path(service, environment)
        found: list[PromotionEvent] = []
        for commit in self._store.iter_commits(path):
            event = parse_event(commit.message, revision=commit.hexsha)
            if event is None:
                continue
            if event.service is not service or event.environment is not environment:
                continue
            found.append(event)
            if limit is not None and len(found) >= limit:
                break
        return found
