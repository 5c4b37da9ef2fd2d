# ABOUTME: Error taxonomy for promotion, rollback and secret sync
# ABOUTME: Every error carries a CLI exit code and a suggested next command

"""
Exception hierarchy for gitops-promoter.

All workflow errors inherit from PromoterError so callers can catch the whole
family with one except clause. Each subclass pins its own CLI exit code.

Exception Hierarchy:
    PromoterError (base, exit 1)
    ├── InvalidInput              # bad service/environment/tag/selector (2)
    ├── ArtifactNotFound          # registry definitively lacks the image (3)
    ├── SourceNotValidated        # prod tag not active in the source tier (4)
    ├── ApprovalDenied            # confirmation not granted (5)
    ├── PublishConflict           # remote moved under us, retryable (6)
    ├── InvalidRevision           # rollback commit does not resolve (7)
    ├── InsufficientHistory       # not enough events for --steps (8)
    ├── ExternalToolUnavailable   # docker/git/vault/argocd unreachable (9)
    ├── RecordNotFound            # desired-state file missing or malformed (11)
    └── SecretBackendError        # Vault rejected a read or write (12)

Exit code 10 is reserved for a sync timeout, which is a result rather than an
exception.
"""

from __future__ import annotations

SYNC_TIMEOUT_EXIT_CODE = 10


class PromoterError(Exception):
    """Base class for workflow errors.

    Attributes:
        message: Human-readable diagnostic.
        hint: Suggested next command for the operator, if any.
        details: Extra context (a diff, the offending value).
        exit_code: CLI exit code for this error type.
    """

    exit_code: int = 1
    retryable: bool = False

    def __init__(self, message: str, hint: str | None = None, details: str | None = None) -> None:
        self.message = message
        self.hint = hint
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        return self.message


class InvalidInput(PromoterError):
    exit_code = 2


class ArtifactNotFound(PromoterError):
    """The registry check ran and reported the image as absent."""

    exit_code = 3

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(
            f"Image not found: {image}",
            hint="Ensure the image has been built and pushed to the registry",
        )


class SourceNotValidated(PromoterError):
    """A production promotion asked for a tag the source tier is not running."""

    exit_code = 4

    def __init__(self, source: str, source_tag: str, requested_tag: str) -> None:
        self.source = source
        self.source_tag = source_tag
        self.requested_tag = requested_tag
        super().__init__(
            f"{source} is not using the requested tag "
            f"({source} tag: {source_tag}, requested tag: {requested_tag})",
            hint=f"Deploy and validate {requested_tag} in {source} first",
        )


class ApprovalDenied(PromoterError):
    exit_code = 5


class PublishConflict(PromoterError):
    """The shared remote changed since the record was read.

    Retry after refreshing the working copy; the engine never retries on its own.
    """

    exit_code = 6
    retryable = True


class InvalidRevision(PromoterError):
    exit_code = 7


class InsufficientHistory(PromoterError):
    exit_code = 8

    def __init__(self, target: str, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"Could not find a rollback target {requested} step(s) back for {target}: "
            f"only {available} promotion event(s) recorded",
            hint="Specify --to-commit or --to-tag explicitly",
        )


class ExternalToolUnavailable(PromoterError):
    exit_code = 9


class RecordNotFound(PromoterError):
    exit_code = 11


class SecretBackendError(PromoterError):
    exit_code = 12
