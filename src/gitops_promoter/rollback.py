# ABOUTME: Rollback Resolver restoring a service to an earlier image tag or record revision
# ABOUTME: Resolves tag, commit or steps-back selectors and publishes the rollback as a new event

"""
Rollback Resolver.

Three ways to say where to go back to:

    tag       --to-tag v1.2.2     set the record to that tag, no history lookup
    revision  --to-commit 9f2c    restore the record exactly as it was at that commit
    steps     --steps 2           the promotion event two steps before the latest one

Steps count PromotionEvents for this (service, environment) only, rollbacks
included, so rolling back twice with --steps 1 returns to where you started.
A rollback is always published as a new commit; history is never rewritten.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from gitops_promoter.errors import (
    ApprovalDenied,
    InsufficientHistory,
    InvalidInput,
    InvalidRevision,
    PromoterError,
)
from gitops_promoter.history import PromotionLog
from gitops_promoter.models import (
    ApprovalStatus,
    Environment,
    PromotionAction,
    PromotionEvent,
    RevisionHandle,
    RevisionKind,
    Service,
)
from gitops_promoter.promotion import (
    PromotionResult,
    PromotionStatus,
    parse_environment,
    parse_service,
    validate_tag,
)
from gitops_promoter.store import mirror_path, parse_record, record_path
from gitops_promoter.utils.safety import build_confirmation

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_promoter.promotion import PromotionEngine
    from gitops_promoter.utils.safety import ConfirmationRequired

logger = structlog.get_logger(__name__)


class RollbackResolver:
    """Resolves rollback targets and publishes them through the Promotion Engine."""

    def __init__(self, engine: PromotionEngine, log: PromotionLog | None = None) -> None:
        self.engine = engine
        self.store = engine.store
        self.log = log or PromotionLog(engine.store)

    def resolve_target(
        self,
        service: Service,
        environment: Environment,
        revision: str | None = None,
        tag: str | None = None,
        steps: int | None = None,
    ) -> RevisionHandle:
        """
        Turn a selector into a concrete rollback target.

        At most one of ``revision``, ``tag`` and ``steps`` may be given;
        with none, ``steps=1``.

        Raises:
            InvalidInput: More than one selector, or steps < 1.
            InvalidRevision: The commit does not resolve or has no record.
            InsufficientHistory: Fewer than steps + 1 events are recorded.
        """
        selectors = {"revision": revision, "tag": tag, "steps": steps}
        given = [name for name, value in selectors.items() if value is not None]
        if len(given) > 1:
            raise InvalidInput(f"Choose one rollback selector, got: {', '.join(given)}")

        if tag is not None:
            return RevisionHandle(RevisionKind.TAG, validate_tag(tag))

        path = record_path(service, environment)
        if revision is not None:
            sha = self.store.resolve_revision(revision)
            text = self.store.show(sha, path)
            if text is None:
                raise InvalidRevision(f"Commit {revision} has no record for {service}/{environment}")
            record = parse_record(text, service, environment, path)
            return RevisionHandle(RevisionKind.REVISION, record.image_tag, revision=sha)

        steps = 1 if steps is None else steps
        if steps < 1:
            raise InvalidInput(f"--steps must be at least 1, got {steps}")

        events = self.log.events(service, environment, limit=steps + 1)
        if len(events) <= steps:
            raise InsufficientHistory(f"{service}/{environment}", steps, len(events))

        event = events[steps]
        logger.info(
            "rollback_target_resolved",
            steps=steps,
            revision=event.revision,
            tag=event.image_tag,
        )
        return RevisionHandle(
            RevisionKind.STEPS,
            event.image_tag,
            revision=event.revision,
            steps=steps,
            event=event,
        )

    def rollback(
        self,
        service: str | Service,
        environment: str | Environment,
        revision: str | None = None,
        tag: str | None = None,
        steps: int | None = None,
        approve: Callable[[ConfirmationRequired], bool] | None = None,
        dry_run: bool = False,
    ) -> PromotionResult:
        """
        Roll ``service`` in ``environment`` back and publish the change.

        Confirmation is required in every environment; ``approve`` receives
        the request and must return True. Dry runs resolve and render the
        change without asking.
        """
        svc = parse_service(service)
        env = parse_environment(environment)
        target = f"{svc}/{env}"
        action = "rollback"
        audit = self.engine.audit

        try:
            self.store.refresh()
            handle = self.resolve_target(svc, env, revision=revision, tag=tag, steps=steps)
            current = self.store.read(svc, env)
            expected = self.engine.expected_blobs(svc, env)
            changes = self._render(svc, env, handle)

            event = PromotionEvent(
                action=PromotionAction.ROLLBACK,
                service=svc,
                environment=env,
                image_tag=handle.image_tag,
                actor=self.engine.actor,
                timestamp=self.engine.now(),
                approval=ApprovalStatus.SKIPPED if dry_run else ApprovalStatus.APPROVED,
                previous_tag=current.image_tag,
                rollback_target=handle.describe(),
            )

            if not changes:
                logger.warning("rollback_no_change", target=target, tag=handle.image_tag)
                audit.log_write(action, target, "no-op", {"tag": handle.image_tag})
                return PromotionResult(
                    PromotionStatus.NO_OP, event, previous_tag=current.image_tag
                )

            if not dry_run:
                request = build_confirmation(
                    "rollback",
                    target,
                    details={
                        "current_tag": current.image_tag,
                        "rollback_to": handle.describe(),
                        "target_tag": handle.image_tag,
                    },
                )
                if approve is None or approve(request) is not True:
                    raise ApprovalDenied(f"Rollback of {target} was not confirmed")
        except ApprovalDenied as e:
            audit.log_blocked(action, target, e.message)
            raise
        except PromoterError as e:
            audit.log_error(action, target, e.message)
            raise

        return self.engine.apply(action, event, changes, expected, dry_run=dry_run)

    def _render(self, service: Service, environment: Environment, handle: RevisionHandle) -> dict[str, str]:
        """New file contents for the rollback; only files that actually change."""
        if handle.kind is RevisionKind.TAG:
            return self.store.render_tag_update(service, environment, handle.image_tag)

        changes = {}
        for path in (record_path(service, environment), mirror_path(service, environment)):
            old = self.store.show(handle.revision, path)
            if old is None:
                continue
            if self.store.read_text(path) != old:
                changes[path] = old
        return changes
