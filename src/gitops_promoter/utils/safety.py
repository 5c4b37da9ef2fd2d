# ABOUTME: Approval requests, read-only mode and rate limiting for promotion operations
# ABOUTME: Shared by the engines (approval gate) and the MCP surface (write guard)

"""Safety utilities: approval requests, blocked-operation responses and rate limiting."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_promoter.config import SecuritySettings

logger = structlog.get_logger(__name__)

IMPACTS = {
    "promote_to_prod": "Production will run the new image once ArgoCD syncs the change",
    "rollback": "The service will revert to an earlier image, may cause service disruption",
    "mirror": "Every listed service in the target environment will be re-pointed at once",
    "sync_secrets": "Existing secret values at these paths will be overwritten",
}


@dataclass
class ConfirmationRequired:
    """An approval request raised by a gate before a mutation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        """Format the request for an operator or an agent."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response indicating an operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}\n"
            f"To enable: Set {self.setting}=false in server configuration"
        )


def build_confirmation(
    operation: str,
    target: str,
    details: dict[str, Any] | None = None,
    instructions: str = "Type 'yes' to proceed",
) -> ConfirmationRequired:
    """Build an approval request with the standard impact text for ``operation``."""
    return ConfirmationRequired(
        operation=operation,
        target=target,
        impact=IMPACTS.get(operation, "This operation changes the desired state"),
        confirmation_instructions=instructions,
        details=dict(details or {}),
    )


def deny_all(request: ConfirmationRequired) -> bool:  # noqa: ARG001 - Approver signature
    """Approver used when nobody is available to approve."""
    return False


def approve_when(confirmed: bool, confirm_name: str | None) -> Callable[[ConfirmationRequired], bool]:
    """
    Approver for non-interactive callers.

    Grants a request only when ``confirmed`` is set and ``confirm_name``
    names the request's target exactly.
    """

    def approver(request: ConfirmationRequired) -> bool:
        granted = confirmed and confirm_name == request.target
        logger.info(
            "approval_decision",
            operation=request.operation,
            target=request.target,
            granted=granted,
        )
        return granted

    return approver


class RateLimiter:
    """Sliding-window call counter keyed by operation."""

    def __init__(
        self,
        max_calls: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._clock = clock
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call for ``key``; False when the window is full."""
        now = self._clock()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Read-only mode, rate limits and explicit confirmation for the MCP surface."""

    def __init__(self, settings: SecuritySettings, rate_limiter: RateLimiter | None = None) -> None:
        self._settings = settings
        self._rate_limiter = rate_limiter or RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    @property
    def read_only(self) -> bool:
        return self._settings.read_only

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Server is running in read-only mode",
                setting="MCP_READ_ONLY",
            )

        if not self._rate_limiter.check(f"write:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_confirmed_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Write check plus confirm/confirm_name matching the target.

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if the caller
            has not confirmed, None if allowed.
        """
        write_check = self.check_write_operation(operation)
        if write_check:
            return write_check

        if not confirmed or confirm_name != target:
            return build_confirmation(
                operation,
                target,
                instructions=f"To proceed, set confirm=true AND confirm_name='{target}'",
            )

        return None
