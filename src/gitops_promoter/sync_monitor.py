# ABOUTME: Waits for ArgoCD to report a promoted service as Synced and Healthy
# ABOUTME: Fixed-interval async polling bounded by a hard deadline

"""
Sync Monitor.

=============================================================================
HOW IT WORKS
=============================================================================

After a publish, ArgoCD notices the new commit and reconciles the cluster.
The monitor polls the application for that (service, environment):

    craftista-catalogue-staging  ->  Sync: OutOfSync, Health: Healthy
                                 ->  Sync: Synced,    Health: Progressing
                                 ->  Sync: Synced,    Health: Healthy   (converged)

It stops on the first Synced + Healthy observation or at the deadline,
whichever comes first. Running out of time is reported as a TIMED_OUT
result, not raised: the commit is already published and the operator
decides what to do next.

A failed status query (ArgoCD down, 404 while the application is being
created) counts as an Unknown observation; polling continues.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from gitops_promoter.models import Environment, Service, SyncState, SyncStatus
from gitops_promoter.utils.client import ArgocdClient, ArgocdError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from gitops_promoter.config import PromoterSettings

logger = structlog.get_logger(__name__)


class ConvergenceOutcome(StrEnum):
    CONVERGED = "converged"
    TIMED_OUT = "timed-out"


@dataclass
class ConvergenceResult:
    outcome: ConvergenceOutcome
    application: str
    last_status: SyncStatus | None = None
    observations: list[SyncStatus] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def converged(self) -> bool:
        return self.outcome is ConvergenceOutcome.CONVERGED

    def as_dict(self) -> dict[str, Any]:
        return {
            "outcome": str(self.outcome),
            "application": self.application,
            "last_status": str(self.last_status) if self.last_status else None,
            "observations": len(self.observations),
            "elapsed": round(self.elapsed, 1),
        }


class SyncMonitor:
    """
    Polls ArgoCD until an application converges or a deadline passes.

    The client must already be entered (``async with client``). ``sleep``
    and ``clock`` are injectable so the loop can be driven without real time.
    """

    def __init__(
        self,
        client: ArgocdClient,
        app_prefix: str = "craftista",
        interval: float = 10.0,
        prod_interval: float = 15.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.app_prefix = app_prefix
        self.interval = interval
        self.prod_interval = prod_interval
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, client: ArgocdClient, settings: PromoterSettings) -> SyncMonitor:
        return cls(
            client,
            app_prefix=settings.app_prefix,
            interval=settings.poll_interval,
            prod_interval=settings.prod_poll_interval,
        )

    def application_for(self, service: Service, environment: Environment) -> str:
        return f"{self.app_prefix}-{service}-{environment}"

    def interval_for(self, environment: Environment) -> float:
        return self.prod_interval if environment is Environment.PROD else self.interval

    async def snapshot(
        self,
        service: Service,
        environment: Environment,
        refresh: bool = False,
    ) -> SyncStatus:
        """Current status of one application; query failures read as Unknown."""
        name = self.application_for(service, environment)
        try:
            app = await self._client.get_application(name, refresh=refresh)
        except (ArgocdError, httpx.HTTPError) as e:
            logger.warning("sync_status_unavailable", application=name, error=str(e))
            return SyncStatus()
        return app.status

    async def await_convergence(
        self,
        service: Service,
        environment: Environment,
        timeout: float,
        interval: float | None = None,
        on_status: Callable[[SyncStatus], None] | None = None,
    ) -> ConvergenceResult:
        """
        Poll until Synced + Healthy or ``timeout`` seconds have passed.

        Args:
            service: Service that was promoted.
            environment: Environment it was promoted into.
            timeout: Seconds to wait. Zero or less returns TIMED_OUT at once
                     without querying ArgoCD.
            interval: Seconds between polls; defaults per environment.
            on_status: Called with every observation, in order.
        """
        name = self.application_for(service, environment)
        log = logger.bind(application=name)
        result = ConvergenceResult(ConvergenceOutcome.TIMED_OUT, name)

        if timeout <= 0:
            log.warning("sync_wait_skipped", timeout=timeout)
            return result

        step = interval if interval is not None else self.interval_for(environment)
        start = self._clock()
        deadline = start + timeout
        log.info("waiting_for_sync", timeout=timeout, interval=step)

        first = True
        while True:
            status = await self.snapshot(service, environment, refresh=first)
            first = False
            result.observations.append(status)
            result.last_status = status
            result.elapsed = self._clock() - start
            log.info(
                "sync_status",
                sync=str(status.sync_state),
                health=str(status.health_state),
                elapsed=round(result.elapsed, 1),
            )
            if on_status is not None:
                on_status(status)

            if status.converged:
                result.outcome = ConvergenceOutcome.CONVERGED
                log.info("sync_converged", elapsed=round(result.elapsed, 1))
                return result

            if environment is Environment.PROD and status.sync_state is SyncState.OUT_OF_SYNC:
                log.warning("manual sync may be required", application=name)

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(step, remaining))
            if self._clock() >= deadline:
                break

        result.elapsed = self._clock() - start
        log.warning("sync_timed_out", timeout=timeout, last=str(result.last_status))
        return result
