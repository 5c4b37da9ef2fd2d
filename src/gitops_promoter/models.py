# ABOUTME: Domain types for the promotion workflow
# ABOUTME: Services, environment tiers, desired-state records, events and sync statuses

"""Domain types shared by the store, engines and operator surfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Service(StrEnum):
    """Services managed by the GitOps repository."""

    FRONTEND = "frontend"
    CATALOGUE = "catalogue"
    VOTING = "voting"
    RECOMMENDATION = "recommendation"

    @classmethod
    def parse(cls, value: str | Service) -> Service:
        """Parse a service name, raising ValueError with the valid choices."""
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(f"Invalid service: {value}. Must be one of: {choices}") from None


class Environment(StrEnum):
    """Environment tiers, ordered by increasing trust."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @property
    def tier(self) -> int:
        return list(Environment).index(self)

    @property
    def predecessor(self) -> Environment | None:
        """The tier a promotion into this environment comes from."""
        if self.tier == 0:
            return None
        return list(Environment)[self.tier - 1]

    @property
    def requires_approval(self) -> bool:
        return self is Environment.PROD

    @classmethod
    def parse(cls, value: str | Environment) -> Environment:
        """Parse an environment name, raising ValueError with the valid choices."""
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(e.value for e in cls)
            raise ValueError(
                f"Invalid environment: {value}. Must be one of: {choices}"
            ) from None


class PromotionAction(StrEnum):
    PROMOTE = "promote"
    ROLLBACK = "rollback"


class ApprovalStatus(StrEnum):
    APPROVED = "approved"
    SKIPPED = "skipped"
    NOT_REQUIRED = "not-required"


class StrictnessPolicy(StrEnum):
    """How a check behaves when its external tool is unavailable."""

    STRICT = "strict"
    WARN_AND_PROCEED = "warn-and-proceed"


@dataclass(frozen=True)
class DesiredStateRecord:
    """The image a (service, environment) pair should run, as read from disk."""

    service: Service
    environment: Environment
    image_name: str
    image_tag: str
    path: str

    @property
    def image_reference(self) -> str:
        return f"{self.image_name}:{self.image_tag}"


@dataclass(frozen=True)
class PromotionEvent:
    """One published change to the desired-state store.

    Events are append-only: a rollback is a new event, never an edit of an
    older one. ``revision`` is only known once the event is read back from
    history.
    """

    action: PromotionAction
    service: Service
    environment: Environment
    image_tag: str
    actor: str
    timestamp: datetime
    approval: ApprovalStatus = ApprovalStatus.NOT_REQUIRED
    source_environment: Environment | None = None
    previous_tag: str | None = None
    rollback_target: str | None = None
    revision: str | None = None

    @property
    def target(self) -> str:
        return f"{self.service}/{self.environment}"


def utc_now() -> datetime:
    """Current time truncated to whole seconds, as written into commit trailers."""
    return datetime.now(UTC).replace(microsecond=0)


class SyncState(StrEnum):
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthState(StrEnum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    PROGRESSING = "Progressing"
    MISSING = "Missing"
    SUSPENDED = "Suspended"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class SyncStatus:
    """Reconciliation status reported by the controller for one application."""

    sync_state: SyncState = SyncState.UNKNOWN
    health_state: HealthState = HealthState.UNKNOWN

    @classmethod
    def from_strings(cls, sync: str | None, health: str | None) -> SyncStatus:
        """Build a status from raw controller strings; unrecognised values become Unknown."""
        try:
            sync_state = SyncState(sync)
        except ValueError:
            sync_state = SyncState.UNKNOWN
        try:
            health_state = HealthState(health)
        except ValueError:
            health_state = HealthState.UNKNOWN
        return cls(sync_state=sync_state, health_state=health_state)

    @property
    def converged(self) -> bool:
        return self.sync_state is SyncState.SYNCED and self.health_state is HealthState.HEALTHY

    def __str__(self) -> str:
        return f"Sync: {self.sync_state}, Health: {self.health_state}"


class RevisionKind(StrEnum):
    REVISION = "revision"
    TAG = "tag"
    STEPS = "steps"


@dataclass(frozen=True)
class RevisionHandle:
    """A resolved rollback target."""

    kind: RevisionKind
    image_tag: str | None
    revision: str | None = None
    steps: int | None = None
    event: PromotionEvent | None = None

    def describe(self) -> str:
        if self.kind is RevisionKind.TAG:
            return f"tag {self.image_tag}"
        if self.kind is RevisionKind.REVISION:
            return f"commit {self.revision}"
        return f"{self.steps} step(s) back (commit {self.revision})"


@dataclass(frozen=True)
class WriteResult:
    """Outcome of syncing one secret category."""

    path: str
    fields: tuple[str, ...]
    written: bool
    redacted: dict[str, str] = field(default_factory=dict)
    skipped_reason: str | None = None
    verified: bool | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "fields": list(self.fields),
            "written": self.written,
            "redacted": dict(self.redacted),
            "skipped_reason": self.skipped_reason,
            "verified": self.verified,
        }
