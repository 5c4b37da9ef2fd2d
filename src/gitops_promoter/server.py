# ABOUTME: FastMCP server exposing desired state, history, sync status, promotion and rollback
# ABOUTME: Agent-facing surface; writes are gated by read-only mode and explicit confirmation

"""GitOps Promoter MCP Server - promotion workflow tools for agents."""

from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_promoter.config import PromoterSettings, load_settings
from gitops_promoter.errors import PromoterError
from gitops_promoter.history import PromotionLog
from gitops_promoter.models import Environment, Service
from gitops_promoter.promotion import PromotionEngine, PromotionResult, PromotionStatus
from gitops_promoter.rollback import RollbackResolver
from gitops_promoter.store import DesiredStateStore
from gitops_promoter.sync_monitor import SyncMonitor
from gitops_promoter.utils.client import ArgocdClient
from gitops_promoter.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_promoter.utils.safety import ConfirmationRequired, SafetyGuard, approve_when

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: PromoterSettings | None = None
_engine: PromotionEngine | None = None
_client: ArgocdClient | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, open the repository and ArgoCD client, clean up on shutdown."""
    global _settings, _engine, _client, _safety_guard, _audit_logger

    logger.info("Starting GitOps Promoter MCP Server")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(
        _settings.security.audit_log or _settings.audit_log,
        actor=_settings.actor,
    )
    _engine = PromotionEngine.from_settings(
        _settings,
        store=DesiredStateStore.from_settings(_settings),
        audit=_audit_logger,
    )
    logger.info("Opened GitOps repository", path=str(_settings.repo_path))

    instance = _settings.argocd_instance
    if instance is not None:
        _client = ArgocdClient(instance=instance, mask_secrets=_settings.security.mask_secrets)
        await _client.__aenter__()
        logger.info("Connected to ArgoCD instance", url=instance.url)

    yield {"settings": _settings, "engine": _engine}

    if _client is not None:
        await _client.__aexit__(None, None, None)
        logger.info("Disconnected from ArgoCD instance")
        _client = None

    logger.info("GitOps Promoter MCP Server stopped")


mcp = FastMCP("gitops-promoter", lifespan=lifespan)


def get_settings() -> PromoterSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_engine() -> PromotionEngine:
    """Get the promotion engine bound to the repository clone."""
    if not _engine:
        raise RuntimeError("Server not initialized")
    return _engine


def get_client() -> ArgocdClient:
    """Get the ArgoCD client; fails when ARGOCD_URL was not configured."""
    if _client is None:
        raise ValueError("No ArgoCD instance configured. Set ARGOCD_URL and ARGOCD_TOKEN.")
    return _client


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _format_error(e: PromoterError) -> str:
    lines = [f"Error: {e.message}"]
    if e.hint:
        lines.append(f"Hint: {e.hint}")
    if e.details:
        lines.extend(["", e.details])
    return "\n".join(lines)


def _format_result(result: PromotionResult) -> str:
    event = result.event
    if result.status is PromotionStatus.NO_OP:
        return f"{event.target} is already using tag {event.image_tag}. Nothing to do."
    if result.status is PromotionStatus.DRY_RUN:
        return "\n".join(
            [
                f"[DRY RUN] Would {event.action} {event.target}: "
                f"{result.previous_tag} -> {event.image_tag}",
                "",
                result.diff or "(no diff)",
            ]
        )
    lines = [
        f"{event.action.capitalize()} published: {event.target}",
        f"  Previous tag: {result.previous_tag}",
        f"  New tag:      {event.image_tag}",
        f"  Approval:     {event.approval}",
        f"  Commit:       {result.commit}",
    ]
    if event.rollback_target:
        lines.append(f"  Rolled back to: {event.rollback_target}")
    return "\n".join(lines)


# =============================================================================
# TIER 1: Read Operations (Always Available)
# =============================================================================


class GetDesiredStateParams(BaseModel):
    """Parameters for get_desired_state tool."""

    service: Service | None = Field(default=None, description="Only this service")
    environment: Environment | None = Field(default=None, description="Only this environment")


@mcp.tool()
async def get_desired_state(params: GetDesiredStateParams, ctx: MCPContext) -> str:
    """
    Show the image tag each service should run in each environment.

    Reads the desired-state records from the GitOps repository. Use this to
    see what staging runs before promoting to prod.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    blocked = get_safety_guard().check_read_operation("get_desired_state")
    if blocked:
        get_audit_logger().log_blocked("get_desired_state", "all", blocked.reason)
        return blocked.format_message()

    store = get_engine().store
    environments = [params.environment] if params.environment else list(Environment)
    services = [params.service] if params.service else list(Service)

    try:
        records = await asyncio.to_thread(store.read_all, environments)
    except PromoterError as e:
        get_audit_logger().log_error("get_desired_state", "all", e.message)
        return _format_error(e)

    records = [r for r in records if r.service in services]
    get_audit_logger().log_read("get_desired_state", f"{params.service or 'all'}/{params.environment or 'all'}")

    if not records:
        return "No desired-state records found."

    lines = [f"Desired state ({len(records)} record(s)):", ""]
    for r in records:
        lines.append(f"- {r.service}/{r.environment}: {r.image_reference}  ({r.path})")
    return "\n".join(lines)


class GetPromotionHistoryParams(BaseModel):
    """Parameters for get_promotion_history tool."""

    service: Service = Field(description="Service name")
    environment: Environment = Field(description="Environment")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum events to return")


@mcp.tool()
async def get_promotion_history(params: GetPromotionHistoryParams, ctx: MCPContext) -> str:
    """
    List promotion and rollback events for a service in one environment.

    Newest first. The position in this list is what rollback_service's
    ``steps`` counts.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")
    target = f"{params.service}/{params.environment}"

    blocked = get_safety_guard().check_read_operation("get_promotion_history")
    if blocked:
        get_audit_logger().log_blocked("get_promotion_history", target, blocked.reason)
        return blocked.format_message()

    log = PromotionLog(get_engine().store)
    events = await asyncio.to_thread(log.events, params.service, params.environment, params.limit)
    get_audit_logger().log_read("get_promotion_history", target)

    if not events:
        return f"No promotion history for {target}."

    lines = [f"Promotion history for {target}:", ""]
    for i, e in enumerate(events):
        lines.append(
            f"[{i}] {e.revision[:10]} {e.timestamp:%Y-%m-%d %H:%M} {e.action} "
            f"{e.previous_tag or '-'} -> {e.image_tag} by {e.actor} ({e.approval})"
        )
    return "\n".join(lines)


class GetSyncStatusParams(BaseModel):
    """Parameters for get_sync_status tool."""

    service: Service = Field(description="Service name")
    environment: Environment = Field(description="Environment")
    refresh: bool = Field(default=False, description="Ask ArgoCD to refresh before reporting")


@mcp.tool()
async def get_sync_status(params: GetSyncStatusParams, ctx: MCPContext) -> str:
    """Report ArgoCD's sync and health status for a service in one environment."""
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")
    target = f"{params.service}/{params.environment}"

    blocked = get_safety_guard().check_read_operation("get_sync_status")
    if blocked:
        get_audit_logger().log_blocked("get_sync_status", target, blocked.reason)
        return blocked.format_message()

    try:
        monitor = SyncMonitor.from_settings(get_client(), get_settings())
    except ValueError as e:
        return str(e)

    status = await monitor.snapshot(params.service, params.environment, refresh=params.refresh)
    get_audit_logger().log_read("get_sync_status", target)
    marker = "[OK]" if status.converged else "[!]"
    return f"{monitor.application_for(params.service, params.environment)}: {status} {marker}"


class WaitForSyncParams(BaseModel):
    """Parameters for wait_for_sync tool."""

    service: Service = Field(description="Service name")
    environment: Environment = Field(description="Environment")
    timeout: int | None = Field(
        default=None,
        ge=0,
        description="Seconds to wait (default 300, 600 for prod)",
    )


@mcp.tool()
async def wait_for_sync(params: WaitForSyncParams, ctx: MCPContext) -> str:
    """
    Poll ArgoCD until the service is Synced and Healthy, or the timeout passes.

    A timeout is reported, not raised: the change stays published and ArgoCD
    may still converge later.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")
    target = f"{params.service}/{params.environment}"

    blocked = get_safety_guard().check_read_operation("wait_for_sync")
    if blocked:
        get_audit_logger().log_blocked("wait_for_sync", target, blocked.reason)
        return blocked.format_message()

    settings = get_settings()
    try:
        monitor = SyncMonitor.from_settings(get_client(), settings)
    except ValueError as e:
        return str(e)

    timeout = params.timeout
    if timeout is None:
        timeout = settings.timeout_for(params.environment)

    await ctx.report_progress(0, 1, f"Waiting for {target} to converge")
    result = await monitor.await_convergence(params.service, params.environment, timeout)
    await ctx.report_progress(1, 1, str(result.last_status))
    get_audit_logger().log_read("wait_for_sync", target)

    if result.converged:
        return f"{result.application} is Synced and Healthy after {result.elapsed:.0f}s."
    return (
        f"Timed out after {timeout}s waiting for {result.application}.\n"
        f"Last status: {result.last_status} ({len(result.observations)} observation(s))"
    )


# =============================================================================
# TIER 2: Write Operations (Require read_only=false, confirmation for prod)
# =============================================================================


class PromoteServiceParams(BaseModel):
    """Parameters for promote_service tool."""

    service: Service = Field(description="Service name")
    tag: str = Field(description="Image tag to promote")
    environment: Environment = Field(
        default=Environment.STAGING,
        description="Target environment (staging or prod)",
    )
    source: Environment | None = Field(
        default=None,
        description="Source environment (defaults to the tier below the target)",
    )
    dry_run: bool = Field(default=False, description="Show the diff without publishing")
    confirm: bool = Field(default=False, description="Must be true to promote to prod")
    confirm_name: str | None = Field(
        default=None,
        description="Type '<service>/prod' to confirm a production promotion",
    )


@mcp.tool()
async def promote_service(params: PromoteServiceParams, ctx: MCPContext) -> str:
    """
    Promote an image tag into staging or prod.

    Production promotions require confirm=true AND confirm_name='<service>/prod',
    and the tag must already be the one staging runs. Set dry_run=true to see
    the change first.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")
    target = f"{params.service}/{params.environment}"
    guard = get_safety_guard()

    if params.dry_run:
        blocked = guard.check_read_operation("promote_service")
    elif params.environment.requires_approval:
        blocked = guard.check_confirmed_operation(
            "promote_to_prod", target, params.confirm, params.confirm_name
        )
    else:
        blocked = guard.check_write_operation("promote_service")

    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            get_audit_logger().log_blocked("promote_service", target, "confirmation required")
        else:
            get_audit_logger().log_blocked("promote_service", target, blocked.reason)
        return blocked.format_message()

    engine = get_engine()
    await ctx.report_progress(0, 1, f"Promoting {params.service}:{params.tag} to {params.environment}")
    try:
        result = await asyncio.to_thread(
            engine.promote,
            params.service,
            params.tag,
            params.environment,
            source=params.source,
            approve=approve_when(params.confirm, params.confirm_name),
            dry_run=params.dry_run,
        )
    except PromoterError as e:
        return _format_error(e)

    await ctx.report_progress(1, 1, str(result.status))
    return _format_result(result)


class RollbackServiceParams(BaseModel):
    """Parameters for rollback_service tool."""

    service: Service = Field(description="Service name")
    environment: Environment = Field(description="Environment")
    steps: int | None = Field(
        default=None,
        ge=1,
        description="Promotion events to go back (default 1)",
    )
    to_commit: str | None = Field(default=None, description="Restore the record from this commit")
    to_tag: str | None = Field(default=None, description="Set the record to this image tag")
    dry_run: bool = Field(default=False, description="Show the diff without publishing")
    confirm: bool = Field(default=False, description="Must be true to roll back")
    confirm_name: str | None = Field(
        default=None,
        description="Type '<service>/<environment>' to confirm the rollback",
    )


@mcp.tool()
async def rollback_service(params: RollbackServiceParams, ctx: MCPContext) -> str:
    """
    Roll a service back to an earlier image tag.

    Give at most one of steps, to_commit and to_tag. Every rollback requires
    confirm=true AND confirm_name='<service>/<environment>'. The rollback is
    published as a new commit; history is never rewritten.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")
    target = f"{params.service}/{params.environment}"
    guard = get_safety_guard()

    if params.dry_run:
        blocked = guard.check_read_operation("rollback_service")
    else:
        blocked = guard.check_confirmed_operation(
            "rollback", target, params.confirm, params.confirm_name
        )

    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            get_audit_logger().log_blocked("rollback_service", target, "confirmation required")
        else:
            get_audit_logger().log_blocked("rollback_service", target, blocked.reason)
        return blocked.format_message()

    resolver = RollbackResolver(get_engine())
    await ctx.report_progress(0, 1, f"Rolling back {target}")
    try:
        result = await asyncio.to_thread(
            resolver.rollback,
            params.service,
            params.environment,
            revision=params.to_commit,
            tag=params.to_tag,
            steps=params.steps,
            approve=approve_when(params.confirm, params.confirm_name),
            dry_run=params.dry_run,
        )
    except PromoterError as e:
        return _format_error(e)

    await ctx.report_progress(1, 1, str(result.status))
    return _format_result(result)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://environments")
async def get_environments_resource() -> str:
    """Environment tiers and the promotion path between them."""
    lines = ["Environment Tiers:", ""]
    for env in Environment:
        source = env.predecessor or "-"
        approval = "approval required" if env.requires_approval else "no approval"
        lines.append(f"- {env} (tier {env.tier}, promoted from {source}, {approval})")
    lines.extend(["", "Services: " + ", ".join(s.value for s in Service)])
    return "\n".join(lines)


@mcp.resource("gitops://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s\n"
        f"  Registry strictness: {settings.strictness}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps Promoter MCP server."""
    configure_logging(level="INFO")
    logger.info("GitOps Promoter MCP Server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
