"""
Tracking Service

Wires the stores, trackers, notification dispatcher, CMS client, claim
store and sync scheduler together and owns their lifecycle.
"""

import asyncio
import logging
import os
import sys
from typing import Callable, Dict, Optional

import structlog

from commerce_tracking.automation.scheduler import SyncScheduler, build_jobs
from commerce_tracking.cms.client import StrapiClient
from commerce_tracking.config.settings import Settings
from commerce_tracking.coordination import ClaimStore, KeyedLock, create_claim_store
from commerce_tracking.notifications.email import NotificationDispatcher, Sender
from commerce_tracking.store.base import TabularStore
from commerce_tracking.store.initializer import initialize_workbooks
from commerce_tracking.store.memory import InMemoryStore
from commerce_tracking.store.sheets import ServiceAccountTokens, SheetsStore
from commerce_tracking.tracking.base import Clock
from commerce_tracking.tracking.intelligence import IntelligenceTracker
from commerce_tracking.tracking.inventory import InventoryTracker
from commerce_tracking.tracking.journey import JourneyTracker
from commerce_tracking.tracking.orders import OrderTracker
from commerce_tracking.tracking.support import SupportTracker

logger = structlog.get_logger(__name__)


def build_stores(settings: Settings) -> Dict[str, TabularStore]:
    """One store per workbook domain, backed by Sheets or memory"""
    spreadsheet_ids = settings.spreadsheets.by_domain()
    if settings.store_backend == "memory":
        return {domain: InMemoryStore(sid) for domain, sid in spreadsheet_ids.items()}

    tokens = ServiceAccountTokens(settings.google)
    return {
        domain: SheetsStore(sid, settings.google, tokens=tokens)
        for domain, sid in spreadsheet_ids.items()
    }


class TrackingService:
    """
    The running tracking service.

    Example:
        service = TrackingService(get_settings())
        await service.start()
        await service.orders.track_order(order)
        await service.stop()
    """

    def __init__(
        self,
        settings: Settings,
        stores: Optional[Dict[str, TabularStore]] = None,
        sender: Optional[Sender] = None,
        clock: Optional[Clock] = None,
        claims: Optional[ClaimStore] = None,
        cms: Optional[StrapiClient] = None,
    ):
        self.settings = settings
        self.stores = stores if stores is not None else build_stores(settings)
        self.locks = KeyedLock()
        self.notifier = NotificationDispatcher(settings.email, sender=sender)
        self.cms = cms or StrapiClient(settings.strapi, batch_size=settings.sync.batch_size)
        self.claims = claims or create_claim_store(
            settings.redis.url,
            settings.redis.key_prefix,
            settings.redis.socket_timeout,
        )

        shared = {"clock": clock, "locks": self.locks}
        self.orders = OrderTracker(self.stores["orders"], self.notifier, self.cms, **shared)
        self.inventory = InventoryTracker(self.stores["inventory"], self.notifier, self.cms, **shared)
        self.support = SupportTracker(self.stores["support"], self.notifier, **shared)
        self.journey = JourneyTracker(self.stores["analytics"], **shared)
        self.intelligence = IntelligenceTracker(
            self.stores["business_intelligence"],
            orders_store=self.stores["orders"],
            inventory_store=self.stores["inventory"],
            support_store=self.stores["support"],
            analytics_store=self.stores["analytics"],
            **shared,
        )

        self.scheduler = SyncScheduler(
            build_jobs(self),
            self.claims,
            self.notifier,
            lease_seconds=settings.sync.lease_seconds,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        logger.info(
            "Tracking service starting",
            env=self.settings.app_env,
            backend=self.settings.store_backend,
            tracking_enabled=self.settings.tracking_enabled,
        )

        if self.settings.store_backend == "memory":
            await initialize_workbooks(self.stores)

        if not await self.notifier.test_connection():
            logger.warning("Notifications may not be delivered")

        if self.settings.tracking_enabled:
            await self.scheduler.start()
        else:
            logger.info("Sync scheduler disabled")

        self._started = True
        await self.notifier.send_startup_notice(self.settings.app_name, self.settings.version)
        logger.info("Tracking service started")

    async def stop(self) -> None:
        if not self._started:
            return
        logger.info("Tracking service stopping")
        await self.scheduler.stop()
        await self.stop_clients()
        self._started = False
        logger.info("Tracking service stopped")

    async def stop_clients(self) -> None:
        """Close the CMS, store and claim store connections"""
        await self.cms.close()
        for store in self.stores.values():
            await store.close()
        await self.claims.close()


def install_exception_hooks(
    loop: Optional[asyncio.AbstractEventLoop] = None,
    exit_process: Callable[[int], None] = os._exit,
) -> None:
    """
    Log uncaught exceptions and unhandled task errors, then exit with status 1.
    """

    def excepthook(exc_type, exc, tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        logger.critical("Uncaught exception", error=str(exc), exc_info=(exc_type, exc, tb))
        logging.shutdown()
        exit_process(1)

    def loop_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.critical(
            "Unhandled asyncio error",
            message=context.get("message"),
            error=str(exc) if exc else None,
            exc_info=exc,
        )
        logging.shutdown()
        exit_process(1)

    sys.excepthook = excepthook
    (loop or asyncio.get_running_loop()).set_exception_handler(loop_handler)
