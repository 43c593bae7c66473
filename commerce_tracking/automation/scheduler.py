"""
Sync Scheduler

Runs the periodic resync and aggregation jobs that heal drift from missed
webhooks:

- ``realtime``: CMS order and inventory resync
- ``hourly``: analytics, support agent and category tables
- ``daily``: support metrics, business intelligence, forecasting, daily report
- ``weekly``: cohorts and the weekly report
- ``monthly``: customer segments, supplier performance, business report

Each run holds a lease in the claim store, so a job never overlaps itself
(across processes too when the claims live in Redis).
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog
from prometheus_client import Counter, Histogram

from commerce_tracking.coordination import ClaimStore
from commerce_tracking.errors import TrackingError
from commerce_tracking.notifications.email import NotificationDispatcher
from commerce_tracking.tracking.models import SyncResult

if TYPE_CHECKING:
    from commerce_tracking.service import TrackingService

logger = structlog.get_logger(__name__)

HOUR = 3600
DAY = 24 * HOUR


# =============================================================================
# METRICS
# =============================================================================

SYNC_RUNS = Counter(
    "tracking_sync_runs_total",
    "Sync job runs by job and status",
    ["job", "status"],
)

SYNC_DURATION = Histogram(
    "tracking_sync_duration_seconds",
    "Time spent running sync jobs",
    ["job"],
)


@dataclass
class ScheduledJob:
    """A named job run every ``interval_seconds``"""
    name: str
    interval_seconds: float
    run: Callable[[], Awaitable[SyncResult]]


class SyncScheduler:
    """
    Interval scheduler for sync jobs.

    Each job loops in its own asyncio task. Stopping lets an in-flight run
    finish; failures are logged and alerted but never end the loop.

    Example:
        scheduler = SyncScheduler(build_jobs(service), claims, notifier)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        jobs: Sequence[ScheduledJob],
        claims: ClaimStore,
        notifier: Optional[NotificationDispatcher] = None,
        lease_seconds: float = HOUR,
    ):
        self.jobs: Dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self.claims = claims
        self.notifier = notifier
        self.lease_seconds = lease_seconds
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._shutdown_event = asyncio.Event()
        for job in self.jobs.values():
            self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"sync-{job.name}")
        logger.info(
            "Sync scheduler started",
            jobs={name: job.interval_seconds for name, job in self.jobs.items()},
        )

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping sync scheduler")
        self._running = False
        self._shutdown_event.set()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Sync scheduler stopped")

    async def _loop(self, job: ScheduledJob) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=job.interval_seconds)
            except asyncio.TimeoutError:
                pass
            if not self._running:
                break
            try:
                await self.run_job(job.name)
            except Exception as e:
                logger.error("Sync loop error", job=job.name, error=str(e), exc_info=True)

    async def run_job(self, name: str) -> Optional[SyncResult]:
        """
        Run one job now under its lease.

        Returns:
            The job's result, or None when another run holds the lease

        Raises:
            KeyError: unknown job name
        """
        job = self.jobs[name]
        async with self.claims.lease(f"sync:{name}", self.lease_seconds) as acquired:
            if not acquired:
                SYNC_RUNS.labels(job=name, status="skipped").inc()
                logger.warning("Sync job already running, skipped", job=name)
                return None

            logger.info("Sync job started", job=name)
            started = time.perf_counter()
            try:
                result = await job.run()
            except Exception as e:
                SYNC_RUNS.labels(job=name, status="failed").inc()
                logger.error("Sync job failed", job=name, error=str(e), exc_info=True)
                await self._alert(name, str(e), severity="high")
                return SyncResult(errors=[str(e)])
            finally:
                SYNC_DURATION.labels(job=name).observe(time.perf_counter() - started)

        status = "success" if result.success else "partial"
        SYNC_RUNS.labels(job=name, status=status).inc()
        logger.info(
            "Sync job completed",
            job=name,
            status=status,
            processed=result.records_processed,
            added=result.records_added,
            updated=result.records_updated,
            errors=len(result.errors),
        )
        if not result.success:
            await self._alert(name, "; ".join(result.errors[:5]), severity="medium", errors=len(result.errors))
        return result

    async def _alert(self, name: str, error: str, severity: str, errors: int = 1) -> None:
        if self.notifier is None:
            return
        await self.notifier.send_system_error_alert(
            f"sync:{name}",
            error,
            severity=severity,
            context={"Job": name, "Errors": errors},
        )


# =============================================================================
# JOBS
# =============================================================================

async def _step(result: SyncResult, label: str, operation: Awaitable[Any]) -> Any:
    """Await one job step, folding its failure or SyncResult into ``result``"""
    try:
        outcome = await operation
    except TrackingError as e:
        result.errors.append(f"{label}: {e}")
        logger.warning("Sync step failed", step=label, error=str(e))
        return None
    if isinstance(outcome, SyncResult):
        result.merge(outcome)
    return outcome


def build_jobs(service: "TrackingService") -> List[ScheduledJob]:
    """The standard job set over a wired tracking service"""

    async def realtime() -> SyncResult:
        result = SyncResult()
        await _step(result, "Orders", service.orders.sync_orders_from_strapi())
        await _step(result, "Inventory", service.inventory.sync_inventory_data())
        return result

    async def hourly() -> SyncResult:
        result = SyncResult()
        await _step(result, "Analytics", service.journey.sync_analytics_data())
        await _step(result, "Agent performance", service.support.update_agent_performance())
        await _step(result, "Category analysis", service.support.update_category_analysis())
        return result

    async def daily() -> SyncResult:
        result = SyncResult()
        await _step(result, "Support metrics", service.support.update_daily_metrics())
        await _step(result, "Business intelligence", service.intelligence.sync_business_intelligence())
        await _step(result, "Inventory forecasting", service.inventory.update_inventory_forecasting())
        report = await _step(result, "Daily report", service.intelligence.daily_report())
        if report is not None:
            await service.notifier.send_daily_report(report)
        return result

    async def weekly() -> SyncResult:
        result = SyncResult()
        today = service.intelligence.today()
        await _step(
            result,
            "Cohort analysis",
            service.journey.generate_cohort_analysis(today - timedelta(days=365), today),
        )
        report = await _step(result, "Weekly report", service.intelligence.weekly_report(today))
        if report is not None:
            await service.notifier.send_weekly_report(report)
        return result

    async def monthly() -> SyncResult:
        result = SyncResult()
        today = service.intelligence.today()
        await _step(result, "Customer segments", service.intelligence.update_customer_segments())
        await _step(result, "Supplier performance", service.inventory.update_supplier_performance())
        report = await _step(
            result,
            "Business report",
            service.intelligence.generate_business_report(today - timedelta(days=30), today),
        )
        if report is not None:
            logger.info("Monthly business report generated", **{
                key: value for key, value in report.items() if key != "top_products"
            })
        return result

    return [
        ScheduledJob("realtime", service.settings.sync.interval_minutes * 60, realtime),
        ScheduledJob("hourly", HOUR, hourly),
        ScheduledJob("daily", DAY, daily),
        ScheduledJob("weekly", 7 * DAY, weekly),
        ScheduledJob("monthly", 30 * DAY, monthly),
    ]
