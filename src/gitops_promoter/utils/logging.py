# ABOUTME: Structured logging and audit trail for promotions, rollbacks and secret syncs
# ABOUTME: structlog pipeline with per-invocation correlation IDs plus a JSON-lines audit log

"""
Structured logging with correlation IDs and an audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Two observability features used by both operator surfaces (CLI and MCP):

1. STRUCTURED LOGGING: every module logs events as key/value pairs through
   structlog, rendered either for a terminal or as JSON lines.

2. AUDIT TRAIL: one record per state-changing operation (promote, mirror,
   rollback, sync_secrets) saying who changed what, with which outcome.

=============================================================================
CORRELATION IDs
=============================================================================

A single `gitops-promote promote --wait` run touches the registry, git, the
remote and ArgoCD. Each of those steps logs. The correlation ID ties the
lines of one invocation together:

    {"correlation_id": "a1b2c3d4", "event": "registry_check", "image": "..."}
    {"correlation_id": "a1b2c3d4", "event": "record_updated", "path": "..."}
    {"correlation_id": "a1b2c3d4", "event": "published", "commit": "9f2c..."}
    {"correlation_id": "a1b2c3d4", "event": "sync_status", "sync": "Synced"}

It lives in a ContextVar so concurrent MCP requests (each its own asyncio
task) never see each other's ID.

=============================================================================
WHERE DO LOGS GO?
=============================================================================

stderr. The CLI prints tables, diffs and JSON reports on stdout, and the MCP
server speaks JSON-RPC over stdout, so diagnostics must stay off that stream.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get the current correlation ID, generating one if none is set.

    Code that runs outside an invocation (imports, test helpers) still gets
    an ID, so log lines are always correlatable.

    Returns:
        8-character hex string taken from a UUID4.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set the correlation ID for the current context.

    The CLI calls this once per command; MCP tools call it with the request
    ID. An empty string makes the next get_correlation_id() generate a fresh ID.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor: stamp every event with the correlation ID."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structlog for the process.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with bind_contextvars (service, env)
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: invocation correlation ID
    5. Renderer: JSON lines (CI, log shipping) or console (operators)

    Calling it again reconfigures; the CLI does so once the --log-level and
    --json-logs options are parsed.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Unknown names fall
               back to INFO.
        json_output: Render JSON lines instead of colored console output.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Loggers are module-level; caching would pin the first configuration.
        cache_logger_on_first_use=False,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail for state-changing operations.

    ENTRY SHAPE:
    ------------
    {"timestamp": "2026-10-18T10:00:00+00:00", "correlation_id": "a1b2c3d4",
     "action": "promote", "target": "catalogue/prod", "actor": "alice",
     "result": "published", "details": {"tag": "v1.2.3", "commit": "9f2c..."}}

    RESULTS:
    --------
    - "published": a change was committed and pushed
    - "no-op":     the record already carried the requested tag
    - "dry_run":   changes were rendered but not applied
    - "blocked":   a safety check or approval gate refused the operation
    - "error":     the operation failed

    The git history already records what was published; the audit trail also
    covers the attempts that never produced a commit (blocked, denied, failed).

    Output goes to a JSON-lines file when a path is given (appended, never
    truncated), otherwise through structlog as an "audit" event.
    """

    def __init__(self, log_path: Path | None = None, actor: str | None = None) -> None:
        self._log_path = log_path
        self._actor = actor
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Record one auditable operation.

        Args:
            action: Operation name, e.g. "promote", "rollback", "sync_secrets".
            target: "{service}/{environment}", or "{environment}" for
                    environment-wide operations.
            result: One of the results listed on the class.
            details: Extra context (tag, commit, reason). Never secret values.
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if self._actor:
            entry["actor"] = self._actor
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                actor=self._actor,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a write attempt that got past the gates (published, no-op, dry_run)."""
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record an operation refused by read-only mode, rate limiting or approval."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})
