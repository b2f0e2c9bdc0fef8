"""
Consolidated Background Job Scheduler - Order Maintenance

Four jobs keep the commerce core healthy:
1. Order Expiry - pending orders past ORDER_EXPIRE_HOURS become expired
2. Order Cleanup - old expired orders are purged
3. Delivery Retry - failed hand-offs are re-attempted up to DELIVERY_MAX_RETRIES
4. Balance Reconciliation - ledger replay against stored balances

Expiry and cleanup also run once right after start.
"""

import logging
from datetime import datetime, timezone

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.order_maintenance import (
    run_balance_reconciliation,
    run_delivery_retry,
    run_order_cleanup,
    run_order_expiry,
    stop_event,
)

logger = logging.getLogger(__name__)


class ConsolidatedScheduler:
    """APScheduler wrapper owning the maintenance jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # A sweep never overlaps itself
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def setup_jobs(self):
        """Register the maintenance jobs"""
        now = datetime.now(timezone.utc)

        # ===== ORDER EXPIRY =====
        self.scheduler.add_job(
            run_order_expiry,
            trigger=IntervalTrigger(seconds=Config.ORDER_EXPIRE_INTERVAL_SECONDS),
            id="order_expiry",
            name="⏰ Order Expiry - Expire Stale Pending Orders",
            next_run_time=now,
            replace_existing=True
        )
        logger.info(f"✅ Order Expiry scheduled every {Config.ORDER_EXPIRE_INTERVAL_SECONDS}s (enabled={Config.ENABLE_AUTO_EXPIRE})")

        # ===== ORDER CLEANUP =====
        self.scheduler.add_job(
            run_order_cleanup,
            trigger=IntervalTrigger(seconds=Config.ORDER_CLEANUP_INTERVAL_SECONDS),
            id="order_cleanup",
            name="🧹 Order Cleanup - Purge Old Expired Orders",
            next_run_time=now,
            replace_existing=True
        )
        logger.info(f"✅ Order Cleanup scheduled every {Config.ORDER_CLEANUP_INTERVAL_SECONDS}s (enabled={Config.ENABLE_AUTO_CLEANUP})")

        # ===== DELIVERY RETRY =====
        self.scheduler.add_job(
            run_delivery_retry,
            trigger=IntervalTrigger(seconds=Config.DELIVERY_RETRY_INTERVAL_SECONDS),
            id="delivery_retry",
            name="🔄 Delivery Retry - Re-attempt Failed Hand-offs",
            replace_existing=True
        )
        logger.info(f"✅ Delivery Retry scheduled every {Config.DELIVERY_RETRY_INTERVAL_SECONDS}s")

        # ===== BALANCE RECONCILIATION =====
        self.scheduler.add_job(
            run_balance_reconciliation,
            trigger=IntervalTrigger(seconds=Config.BALANCE_RECONCILIATION_INTERVAL_SECONDS),
            id="balance_reconciliation",
            name="📊 Balance Reconciliation - Ledger Replay",
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Balance Reconciliation scheduled every {Config.BALANCE_RECONCILIATION_INTERVAL_SECONDS}s")

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[job.id for job in jobs]}")

    def start(self):
        """Register jobs and start; must be called with a running event loop"""
        if self.scheduler.running:
            return
        stop_event.clear()
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Consolidated scheduler started")

    def stop(self):
        """Signal running sweeps to stop between orders, then shut down"""
        stop_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Consolidated job scheduler stopped")


# Global instance
_global_scheduler = None


def get_consolidated_scheduler_instance():
    """Get the global consolidated scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ConsolidatedScheduler()
    return _global_scheduler


__all__ = [
    "ConsolidatedScheduler",
    "get_consolidated_scheduler_instance",
]
