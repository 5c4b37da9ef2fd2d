# ABOUTME: `gitops-promote` command line for promotions, rollbacks, sync waits and secret syncs
# ABOUTME: click group mapping each workflow error to its own exit code

"""
Operator command line.

Examples:
    $ gitops-promote promote --service catalogue --tag v1.2.3
    $ gitops-promote promote --service catalogue --tag v1.2.3 --environment prod --wait
    $ gitops-promote mirror --from dev --to staging --dry-run
    $ gitops-promote rollback --service frontend --environment prod --steps 1
    $ gitops-promote sync-secrets --environment staging --from-env --verify
    $ gitops-promote history --service voting --environment prod

Human-readable output goes to stdout; logs, warnings and errors to stderr.
"""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import structlog
from pydantic import ValidationError

from gitops_promoter import __version__
from gitops_promoter.config import PromoterSettings, load_settings
from gitops_promoter.errors import (
    SYNC_TIMEOUT_EXIT_CODE,
    ExternalToolUnavailable,
    InvalidInput,
    PromoterError,
)
from gitops_promoter.history import PromotionLog
from gitops_promoter.models import Environment, Service, SyncStatus
from gitops_promoter.promotion import PromotionEngine, PromotionResult, PromotionStatus
from gitops_promoter.rollback import RollbackResolver
from gitops_promoter.secrets import SecretSynchronizer, SyncMode
from gitops_promoter.store import DesiredStateStore
from gitops_promoter.sync_monitor import ConvergenceResult, SyncMonitor
from gitops_promoter.utils.client import ArgocdClient
from gitops_promoter.utils.logging import configure_logging, set_correlation_id
from gitops_promoter.utils.safety import ConfirmationRequired, build_confirmation

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = structlog.get_logger(__name__)

SERVICES = click.Choice([s.value for s in Service])
ENVIRONMENTS = click.Choice([e.value for e in Environment])
OUTPUT = click.Choice(["table", "json"], case_sensitive=False)


# =============================================================================
# OUTPUT HELPERS
# =============================================================================


def error(message: str) -> None:
    click.echo(f"Error: {message}", err=True)


def warn(message: str) -> None:
    click.echo(f"Warning: {message}", err=True)


def info(message: str) -> None:
    click.echo(message, err=True)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print workflow errors with their hint and exit with the error's code."""
    try:
        yield
    except PromoterError as e:
        error(e.message)
        if e.details:
            click.echo(e.details, err=True)
        if e.hint:
            click.echo(f"Hint: {e.hint}", err=True)
        sys.exit(e.exit_code)


def prompt_approval(request: ConfirmationRequired) -> bool:
    """Terminal approver: show the request and require the literal answer 'yes'."""
    click.echo(request.format_message(), err=True)
    answer = click.prompt("Confirm", default="", show_default=False, err=True)
    return answer.strip() == "yes"


def approve_all(request: ConfirmationRequired) -> bool:
    logger.info("approval_preconfirmed", operation=request.operation, target=request.target)
    return True


def secret_prompt(label: str, default: str | None) -> str:
    return click.prompt(
        label,
        default=default or "",
        hide_input=True,
        show_default=False,
        err=True,
    )


def _emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _print_result(result: PromotionResult) -> None:
    event = result.event
    if result.status is PromotionStatus.NO_OP:
        warn(f"{event.target} is already using tag {event.image_tag}")
        return
    if result.status is PromotionStatus.DRY_RUN:
        click.echo(f"[DRY RUN] Would {event.action} {event.target} to {event.image_tag}")
        click.echo(result.diff, nl=False)
        return
    click.echo(f"{event.action.capitalize()} complete: {event.target} -> {event.image_tag}")
    click.echo(f"  Previous tag: {result.previous_tag}")
    click.echo(f"  Commit:       {result.commit}")
    if result.rollback_pointer:
        click.echo(f"  Saved previous tag to {result.rollback_pointer}")
    if event.environment is Environment.PROD:
        click.echo("Rollback available via:")
        click.echo(
            f"  gitops-promote rollback --service {event.service} --environment {event.environment}"
        )


# =============================================================================
# SYNC WAITING
# =============================================================================


async def _await_sync(
    settings: PromoterSettings,
    service: Service,
    environment: Environment,
    timeout: int,
) -> ConvergenceResult:
    instance = settings.argocd_instance
    if instance is None:
        raise ExternalToolUnavailable(
            "ARGOCD_URL is not set, cannot watch sync status",
            hint="Export ARGOCD_URL and ARGOCD_TOKEN",
        )

    def show(status: SyncStatus) -> None:
        info(f"  {status}")

    async with ArgocdClient(instance, mask_secrets=settings.security.mask_secrets) as client:
        monitor = SyncMonitor.from_settings(client, settings)
        return await monitor.await_convergence(service, environment, timeout, on_status=show)


async def _snapshot(settings: PromoterSettings, service: Service, environment: Environment) -> SyncStatus:
    instance = settings.argocd_instance
    async with ArgocdClient(instance, mask_secrets=settings.security.mask_secrets) as client:
        return await SyncMonitor.from_settings(client, settings).snapshot(service, environment)


def _wait(
    settings: PromoterSettings,
    service: Service,
    environment: Environment,
    timeout: int | None,
    published: bool = False,
) -> None:
    """Block until the application converges; exit 10 on timeout.

    ``published`` is set right after a change was pushed, in which case the
    rollback command is suggested too (nothing is reverted automatically).
    """
    seconds = settings.timeout_for(environment) if timeout is None else timeout
    info(f"Waiting for ArgoCD to sync {service} in {environment} (timeout: {seconds}s)...")
    result = asyncio.run(_await_sync(settings, service, environment, seconds))
    if not result.converged:
        error(f"Timeout waiting for sync of {result.application} (last status: {result.last_status})")
        click.echo(f"Hint: argocd app get {result.application}", err=True)
        if published:
            click.echo(
                "The change stays published. To revert it:\n"
                f"  gitops-promote rollback --service {service} --environment {environment}",
                err=True,
            )
        sys.exit(SYNC_TIMEOUT_EXIT_CODE)
    click.echo(f"{result.application} is Synced and Healthy ({result.elapsed:.0f}s)")


# =============================================================================
# CLI GROUP
# =============================================================================


@dataclass
class CliState:
    settings: PromoterSettings

    def store(self) -> DesiredStateStore:
        return DesiredStateStore.from_settings(self.settings)

    def engine(self) -> PromotionEngine:
        return PromotionEngine.from_settings(self.settings, store=self.store())


@click.group(
    help="Promote, roll back and sync secrets for services in a GitOps repository.",
    epilog="""
Exit Codes:
    0  - Success
    2  - Invalid input
    3  - Image not found in registry
    4  - Source environment not running the requested tag
    5  - Approval denied
    6  - Publish conflict (retry after pulling)
    7  - Invalid rollback commit
    8  - Not enough promotion history for --steps
    9  - External tool unavailable (docker, git remote, ArgoCD, Vault)
    10 - Timed out waiting for sync
    11 - Desired-state record not found
    12 - Secret backend rejected the request
""",
)
@click.option(
    "--repo",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="GitOps repository clone. Defaults to $GITOPS_REPO_PATH or the current directory.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level. Defaults to $GITOPS_LOG_LEVEL or INFO.",
)
@click.option("--json-logs", is_flag=True, default=False, help="Emit JSON log lines on stderr.")
@click.version_option(__version__, prog_name="gitops-promote")
@click.pass_context
def cli(ctx: click.Context, repo: Path | None, log_level: str | None, json_logs: bool) -> None:
    overrides: dict[str, Any] = {}
    if repo is not None:
        overrides["repo_path"] = repo
    if log_level is not None:
        overrides["log_level"] = log_level.upper()
    if json_logs:
        overrides["json_logs"] = True

    try:
        settings = load_settings(**overrides)
    except ValidationError as e:
        error(f"Invalid configuration: {e}")
        sys.exit(InvalidInput.exit_code)

    configure_logging(settings.log_level, settings.json_logs)
    set_correlation_id("")
    structlog.contextvars.bind_contextvars(command=ctx.invoked_subcommand)
    ctx.obj = CliState(settings)


# =============================================================================
# COMMANDS
# =============================================================================


@cli.command(
    epilog="""
Examples:
    $ gitops-promote promote --service catalogue --tag v1.2.3
    $ gitops-promote promote --service catalogue --tag v1.2.3 --environment prod --wait
""",
)
@click.option("--service", "-s", type=SERVICES, required=True, help="Service to promote.")
@click.option("--tag", "-t", required=True, help="Image tag to promote.")
@click.option(
    "--environment",
    "-e",
    type=click.Choice(["staging", "prod"]),
    default="staging",
    show_default=True,
    help="Target environment.",
)
@click.option("--from", "source", type=ENVIRONMENTS, default=None, help="Source environment.")
@click.option("--skip-approval", is_flag=True, help="Skip the production approval prompt.")
@click.option("--wait/--no-wait", default=False, help="Wait for ArgoCD to sync the change.")
@click.option("--timeout", type=int, default=None, help="Sync wait timeout in seconds.")
@click.option("--dry-run", is_flag=True, help="Show the change without applying it.")
@click.pass_obj
def promote(
    state: CliState,
    service: str,
    tag: str,
    environment: str,
    source: str | None,
    skip_approval: bool,
    wait: bool,
    timeout: int | None,
    dry_run: bool,
) -> None:
    """Promote an image tag into staging or prod."""
    svc = Service(service)
    env = Environment(environment)
    with handle_errors():
        if env is Environment.PROD and state.settings.argocd_instance is not None:
            src = Environment(source) if source else Environment.STAGING
            status = asyncio.run(_snapshot(state.settings, svc, src))
            if not status.converged:
                warn(f"{svc} in {src} is not healthy ({status}); proceed with caution")

        result = state.engine().promote(
            svc,
            tag,
            env,
            source=source,
            approve=prompt_approval,
            skip_approval=skip_approval,
            dry_run=dry_run,
        )
        _print_result(result)
        if wait and result.status is PromotionStatus.PUBLISHED:
            _wait(state.settings, svc, env, timeout, published=True)


@cli.command(
    epilog="""
Examples:
    $ gitops-promote mirror --from dev --to staging
    $ gitops-promote mirror --from dev --to staging --service frontend --service voting --yes
""",
)
@click.option("--from", "source", type=ENVIRONMENTS, required=True, help="Source environment.")
@click.option("--to", "target", type=ENVIRONMENTS, required=True, help="Target environment.")
@click.option(
    "--service",
    "-s",
    "services",
    type=SERVICES,
    multiple=True,
    help="Service to mirror (repeatable). Defaults to all services.",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--skip-approval", is_flag=True, help="Skip the production approval prompt.")
@click.option("--dry-run", is_flag=True, help="Show the changes without applying them.")
@click.pass_obj
def mirror(
    state: CliState,
    source: str,
    target: str,
    services: tuple[str, ...],
    yes: bool,
    skip_approval: bool,
    dry_run: bool,
) -> None:
    """Set every service in TARGET to the tag SOURCE currently runs."""
    with handle_errors():
        engine = state.engine()
        if not dry_run and not yes:
            plan = {
                r.service: r.image_tag
                for r in engine.store.read_all([Environment(source)])
                if not services or r.service in services
            }
            request = build_confirmation("mirror", f"{source} -> {target}", details=plan)
            if not prompt_approval(request):
                warn("Changes not applied")
                sys.exit(0)

        approve = approve_all if yes else prompt_approval
        results = engine.mirror(
            source,
            target,
            services=list(services) or None,
            approve=approve,
            skip_approval=skip_approval,
            dry_run=dry_run,
        )
        for result in results:
            _print_result(result)
        published = sum(1 for r in results if r.status is PromotionStatus.PUBLISHED)
        click.echo(f"{published} of {len(results)} service(s) updated in {target}")


@cli.command(
    epilog="""
Examples:
    $ gitops-promote rollback --service frontend --environment prod
    $ gitops-promote rollback --service frontend --environment prod --steps 2
    $ gitops-promote rollback --service frontend --environment staging --to-tag v1.2.2
""",
)
@click.option("--service", "-s", type=SERVICES, required=True, help="Service to roll back.")
@click.option("--environment", "-e", type=ENVIRONMENTS, required=True, help="Environment.")
@click.option("--steps", type=int, default=None, help="Promotion events to go back (default 1).")
@click.option("--to-commit", "to_commit", default=None, help="Restore the record from this commit.")
@click.option("--to-tag", "to_tag", default=None, help="Set the record to this image tag.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--wait/--no-wait", default=False, help="Wait for ArgoCD to sync the change.")
@click.option("--timeout", type=int, default=None, help="Sync wait timeout in seconds.")
@click.option("--dry-run", is_flag=True, help="Show the change without applying it.")
@click.pass_obj
def rollback(
    state: CliState,
    service: str,
    environment: str,
    steps: int | None,
    to_commit: str | None,
    to_tag: str | None,
    yes: bool,
    wait: bool,
    timeout: int | None,
    dry_run: bool,
) -> None:
    """Roll a service back to an earlier image tag."""
    svc = Service(service)
    env = Environment(environment)
    with handle_errors():
        engine = state.engine()
        recent = PromotionLog(engine.store).events(svc, env, limit=5)
        if recent:
            info(f"Recent deployments for {svc} in {env}:")
            for event in recent:
                info(f"  {event.revision[:10]} {event.action:<8} {event.image_tag:<20} {event.actor}")

        result = RollbackResolver(engine).rollback(
            svc,
            env,
            revision=to_commit,
            tag=to_tag,
            steps=steps,
            approve=approve_all if yes else prompt_approval,
            dry_run=dry_run,
        )
        _print_result(result)
        if wait and result.status is PromotionStatus.PUBLISHED:
            _wait(state.settings, svc, env, timeout, published=True)


@cli.command("sync-secrets")
@click.option("--environment", "-e", type=ENVIRONMENTS, required=True, help="Environment.")
@click.option("--service", "-s", type=SERVICES, default=None, help="Only this service.")
@click.option("--interactive", "mode", flag_value=SyncMode.INTERACTIVE.value, help="Prompt for each value.")
@click.option(
    "--from-env",
    "mode",
    flag_value=SyncMode.FROM_ENV.value,
    default=True,
    help="Read values from environment variables (default).",
)
@click.option("--dry-run", is_flag=True, help="Resolve values without writing to Vault.")
@click.option("--verify", is_flag=True, help="Read each record back after writing.")
@click.option("--output", type=OUTPUT, default="table", show_default=True, help="Output format.")
@click.pass_obj
def sync_secrets(
    state: CliState,
    environment: str,
    service: str | None,
    mode: str,
    dry_run: bool,
    verify: bool,
    output: str,
) -> None:
    """Write the secret catalog for an environment into Vault."""
    sync_mode = SyncMode.DRY_RUN if dry_run else SyncMode(mode)
    with handle_errors():
        if sync_mode is SyncMode.DRY_RUN:
            warn("DRY RUN MODE - no secrets will be written")
        synchronizer = SecretSynchronizer.from_settings(state.settings, prompt=secret_prompt)
        results = asyncio.run(synchronizer.sync(environment, service, sync_mode, verify=verify))

    if output == "json":
        _emit_json([r.as_dict() for r in results])
        return

    mount = state.settings.vault.mount
    for r in results:
        if r.written:
            mark = "ok"
            if r.verified is False:
                mark = "MISMATCH"
            click.echo(f"[{mark}] {mount}/{r.path}: {', '.join(r.fields)}")
        else:
            click.echo(f"[skip] {mount}/{r.path}: {r.skipped_reason}")
            for name, value in r.redacted.items():
                click.echo(f"         {name}={value}")


@cli.command()
@click.option("--service", "-s", type=SERVICES, required=True, help="Service.")
@click.option("--environment", "-e", type=ENVIRONMENTS, required=True, help="Environment.")
@click.option("--timeout", type=int, default=None, help="Timeout in seconds.")
@click.pass_obj
def wait(state: CliState, service: str, environment: str, timeout: int | None) -> None:
    """Wait until ArgoCD reports the service Synced and Healthy."""
    with handle_errors():
        _wait(state.settings, Service(service), Environment(environment), timeout)


@cli.command()
@click.option("--service", "-s", type=SERVICES, required=True, help="Service.")
@click.option("--environment", "-e", type=ENVIRONMENTS, required=True, help="Environment.")
@click.option("--limit", "-n", type=int, default=10, show_default=True, help="Events to show.")
@click.option("--output", type=OUTPUT, default="table", show_default=True, help="Output format.")
@click.pass_obj
def history(state: CliState, service: str, environment: str, limit: int, output: str) -> None:
    """List promotion and rollback events, newest first."""
    with handle_errors():
        events = PromotionLog(state.store()).events(Service(service), Environment(environment), limit)

    if output == "json":
        _emit_json(
            [
                {
                    "revision": e.revision,
                    "action": str(e.action),
                    "image_tag": e.image_tag,
                    "previous_tag": e.previous_tag,
                    "actor": e.actor,
                    "approval": str(e.approval),
                    "timestamp": e.timestamp.isoformat(),
                    "rollback_target": e.rollback_target,
                }
                for e in events
            ]
        )
        return

    if not events:
        warn(f"No promotion history for {service} in {environment}")
        return
    for e in events:
        click.echo(
            f"{e.revision[:10]}  {e.timestamp:%Y-%m-%d %H:%M}  {e.action:<8}  "
            f"{e.previous_tag or '-'} -> {e.image_tag}  ({e.actor}, {e.approval})"
        )


@cli.command()
@click.option("--environment", "-e", type=ENVIRONMENTS, default=None, help="Only this environment.")
@click.option("--output", type=OUTPUT, default="table", show_default=True, help="Output format.")
@click.pass_obj
def status(state: CliState, environment: str | None, output: str) -> None:
    """Show the desired image tag of every service."""
    environments = [Environment(environment)] if environment else list(Environment)
    with handle_errors():
        store = state.store()
        records = store.read_all(environments)

    if output == "json":
        _emit_json(
            [
                {
                    "service": str(r.service),
                    "environment": str(r.environment),
                    "image": r.image_reference,
                    "rollback_tag": store.read_rollback_pointer(r.service, r.environment),
                }
                for r in records
            ]
        )
        return

    click.echo(f"{'SERVICE':<16}{'ENV':<10}{'TAG':<24}ROLLBACK")
    for r in records:
        pointer = store.read_rollback_pointer(r.service, r.environment) or "-"
        click.echo(f"{r.service:<16}{r.environment:<10}{r.image_tag:<24}{pointer}")


def main() -> None:
    """Entry point for the gitops-promote console script."""
    cli(prog_name="gitops-promote")


if __name__ == "__main__":
    main()
