# ABOUTME: Promotion Engine moving an image tag from one environment tier to the next
# ABOUTME: Runs registry, consistency and approval gates, then rewrites and publishes the record

"""
Promotion Engine.

=============================================================================
PIPELINE
=============================================================================

    promote(service, tag, target)
      1. validate inputs              -> InvalidInput
      2. registry check               -> ArtifactNotFound / ExternalToolUnavailable
      3. consistency gate (prod)      -> SourceNotValidated
      4. approval gate (prod)         -> ApprovalDenied
      5. target already at tag        -> no-op result
      6. save rollback pointer, rewrite record (+ Helm mirror)
      7. dry run stops here with the would-be diff
      8. commit + push with compare-and-swap -> PublishConflict

Every stage fails fast; nothing is retried automatically. A failure after
step 6 leaves the edited files in the working tree and attaches the diff to
the raised error so the operator can see what was not published.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from gitops_promoter.errors import (
    ApprovalDenied,
    InvalidInput,
    PromoterError,
    SourceNotValidated,
)
from gitops_promoter.history import render_message
from gitops_promoter.models import (
    ApprovalStatus,
    Environment,
    PromotionAction,
    PromotionEvent,
    Service,
    utc_now,
)
from gitops_promoter.registry import RegistryVerifier
from gitops_promoter.store import DesiredStateStore, mirror_path, record_path
from gitops_promoter.utils.logging import AuditLogger
from gitops_promoter.utils.safety import build_confirmation

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime
    from pathlib import Path

    from gitops_promoter.config import PromoterSettings
    from gitops_promoter.utils.safety import ConfirmationRequired

    Approver = Callable[[ConfirmationRequired], bool]

logger = structlog.get_logger(__name__)

TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class PromotionStatus(StrEnum):
    PUBLISHED = "published"
    NO_OP = "no-op"
    DRY_RUN = "dry-run"


@dataclass
class PromotionResult:
    """Outcome of one promotion or rollback invocation."""

    status: PromotionStatus
    event: PromotionEvent
    commit: str | None = None
    changes: dict[str, str] = field(default_factory=dict)
    diff: str = ""
    previous_tag: str | None = None
    rollback_pointer: Path | None = None

    @property
    def target(self) -> str:
        return self.event.target

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "action": str(self.event.action),
            "service": str(self.event.service),
            "environment": str(self.event.environment),
            "image_tag": self.event.image_tag,
            "previous_tag": self.previous_tag,
            "approval": str(self.event.approval),
            "commit": self.commit,
            "changed_files": sorted(self.changes),
            "diff": self.diff,
            "rollback_pointer": str(self.rollback_pointer) if self.rollback_pointer else None,
        }


def parse_service(value: str | Service) -> Service:
    try:
        return Service.parse(value)
    except ValueError as e:
        raise InvalidInput(str(e)) from None


def parse_environment(value: str | Environment) -> Environment:
    try:
        return Environment.parse(value)
    except ValueError as e:
        raise InvalidInput(str(e)) from None


def validate_tag(tag: str) -> str:
    if not tag or not TAG_PATTERN.match(tag):
        raise InvalidInput(
            f"Invalid image tag: {tag!r}",
            hint="Tags are 1-128 characters of letters, digits, '_', '.' and '-'",
        )
    return tag


class PromotionEngine:
    """Moves image tags between environment tiers through the desired-state store."""

    def __init__(
        self,
        store: DesiredStateStore,
        registry: RegistryVerifier,
        actor: str = "automation",
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.registry = registry
        self.actor = actor
        self.audit = audit or AuditLogger(actor=actor)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: PromoterSettings,
        store: DesiredStateStore | None = None,
        audit: AuditLogger | None = None,
    ) -> PromotionEngine:
        return cls(
            store or DesiredStateStore.from_settings(settings),
            RegistryVerifier.from_settings(settings),
            actor=settings.actor,
            audit=audit or AuditLogger(settings.audit_log, actor=settings.actor),
        )

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # PROMOTE
    # -------------------------------------------------------------------------

    def promote(
        self,
        service: str | Service,
        tag: str,
        target: str | Environment,
        source: str | Environment | None = None,
        approve: Approver | None = None,
        skip_approval: bool = False,
        dry_run: bool = False,
    ) -> PromotionResult:
        """
        Promote ``tag`` of ``service`` into ``target``.

        Args:
            service: Service name.
            tag: Image tag to promote.
            target: Destination environment (staging or prod).
            source: Tier the tag comes from; defaults to the tier below target.
            approve: Called with a ConfirmationRequired for prod; only True
                     lets the promotion continue.
            skip_approval: Bypass the prod approval gate (recorded in the event).
            dry_run: Render the change without writing, committing or pushing.
        """
        svc = parse_service(service)
        env = parse_environment(target)
        src = self._source_for(env, source)
        validate_tag(tag)
        action = "promote"
        log = logger.bind(service=str(svc), environment=str(env), tag=tag)

        try:
            self.registry.verify(svc, tag)
            self.store.refresh()

            if env is Environment.PROD:
                source_record = self.store.read(svc, src)
                if source_record.image_tag != tag:
                    raise SourceNotValidated(str(src), source_record.image_tag, tag)
                log.info("consistency_gate_passed", source=str(src))

            current = self.store.read(svc, env)
            expected = self.expected_blobs(svc, env)
            approval = self._approval_gate(
                svc, env, src, tag, current.image_tag, approve, skip_approval, dry_run
            )
        except (SourceNotValidated, ApprovalDenied) as e:
            self.audit.log_blocked(action, f"{svc}/{env}", e.message)
            raise
        except PromoterError as e:
            self.audit.log_error(action, f"{svc}/{env}", e.message)
            raise

        event = PromotionEvent(
            action=PromotionAction.PROMOTE,
            service=svc,
            environment=env,
            image_tag=tag,
            actor=self.actor,
            timestamp=self.now(),
            approval=approval,
            source_environment=src,
            previous_tag=current.image_tag,
        )

        if current.image_tag == tag:
            log.warning("already_at_tag")
            self.audit.log_write(action, event.target, "no-op", {"tag": tag})
            return PromotionResult(PromotionStatus.NO_OP, event, previous_tag=current.image_tag)

        changes = self.store.render_tag_update(svc, env, tag)
        return self.apply(action, event, changes, expected, dry_run=dry_run)

    def mirror(
        self,
        source: str | Environment,
        target: str | Environment,
        services: Iterable[str | Service] | None = None,
        approve: Approver | None = None,
        skip_approval: bool = False,
        dry_run: bool = False,
    ) -> list[PromotionResult]:
        """
        Promote every service in ``target`` to the tag ``source`` currently runs.

        One promote() per service, in catalog order, stopping at the first
        error. Without an explicit service list, services that have no record
        in the source tier are skipped.
        """
        src = parse_environment(source)
        env = parse_environment(target)
        self._source_for(env, src)

        explicit = services is not None
        wanted = [parse_service(s) for s in services] if explicit else list(Service)

        results = []
        for svc in wanted:
            if not explicit and self.store.read_text(record_path(svc, src)) is None:
                logger.info("mirror_skipped", service=str(svc), reason=f"no {src} record")
                continue
            tag = self.store.read(svc, src).image_tag
            logger.info("mirror_service", service=str(svc), source=str(src), tag=tag)
            results.append(
                self.promote(
                    svc,
                    tag,
                    env,
                    source=src,
                    approve=approve,
                    skip_approval=skip_approval,
                    dry_run=dry_run,
                )
            )
        return results

    # -------------------------------------------------------------------------
    # SHARED MUTATION PATH (promote, tag rollback, revision rollback)
    # -------------------------------------------------------------------------

    def apply(
        self,
        action: str,
        event: PromotionEvent,
        changes: dict[str, str],
        expected: dict[str, str | None],
        dry_run: bool = False,
    ) -> PromotionResult:
        """
        Save the rollback pointer, write ``changes`` and publish them.

        ``expected`` holds the blob ids seen when the records were read; the
        store refuses to publish if the remote moved past them.
        """
        log = logger.bind(action=action, target=event.target, tag=event.image_tag)
        diff = self.store.diff(changes)

        if dry_run:
            log.info("dry_run", files=sorted(changes))
            self.audit.log_write(action, event.target, "dry_run", {"tag": event.image_tag})
            return PromotionResult(
                PromotionStatus.DRY_RUN,
                event,
                changes=changes,
                diff=diff,
                previous_tag=event.previous_tag,
            )

        pointer = None
        if event.previous_tag:
            pointer = self.store.save_rollback_pointer(
                event.service, event.environment, event.previous_tag
            )
        self.store.write(changes)

        try:
            commit = self.store.publish(sorted(changes), render_message(event), expected)
        except PromoterError as e:
            if not e.details:
                e.details = diff
            log.error("publish_failed", error=e.message)
            self.audit.log_error(action, event.target, e.message)
            raise

        event = replace(event, revision=commit)
        log.info("published", commit=commit[:12])
        self.audit.log_write(
            action,
            event.target,
            "published",
            {"tag": event.image_tag, "previous_tag": event.previous_tag, "commit": commit},
        )
        return PromotionResult(
            PromotionStatus.PUBLISHED,
            event,
            commit=commit,
            changes=changes,
            diff=diff,
            previous_tag=event.previous_tag,
            rollback_pointer=pointer,
        )

    def expected_blobs(self, service: Service, environment: Environment) -> dict[str, str | None]:
        return {
            path: self.store.blob_id(path)
            for path in (record_path(service, environment), mirror_path(service, environment))
        }

    # -------------------------------------------------------------------------
    # GATES
    # -------------------------------------------------------------------------

    @staticmethod
    def _source_for(target: Environment, source: str | Environment | None) -> Environment:
        if source is None:
            if target.predecessor is None:
                raise InvalidInput(
                    f"Cannot promote into {target}: it is the lowest tier",
                    hint="Promote into staging or prod",
                )
            return target.predecessor
        src = parse_environment(source)
        if src.tier >= target.tier:
            raise InvalidInput(
                f"Source environment {src} must be below target environment {target}"
            )
        return src

    def _approval_gate(
        self,
        service: Service,
        environment: Environment,
        source: Environment,
        tag: str,
        current_tag: str,
        approve: Approver | None,
        skip_approval: bool,
        dry_run: bool,
    ) -> ApprovalStatus:
        if not environment.requires_approval:
            return ApprovalStatus.NOT_REQUIRED
        if skip_approval:
            logger.warning("approval_skipped", service=str(service), environment=str(environment))
            return ApprovalStatus.SKIPPED
        if dry_run:
            logger.info("approval_not_prompted", reason="dry run")
            return ApprovalStatus.SKIPPED

        request = build_confirmation(
            "promote_to_prod",
            f"{service}/{environment}",
            details={
                "service": str(service),
                "image": self.registry.image_reference(service, tag),
                "from": str(source),
                "current_tag": current_tag,
                "checklist": f"tested in {source}, smoke tests passed, team notified",
            },
        )
        if approve is None or approve(request) is not True:
            raise ApprovalDenied(
                f"Deployment of {service}:{tag} to {environment} was not approved",
                hint="Re-run and confirm, or pass --skip-approval from an approved pipeline",
            )
        logger.info("approval_granted", service=str(service), environment=str(environment))
        return ApprovalStatus.APPROVED
