"""
Order Maintenance Jobs - scheduler entry points for the maintenance sweeps

The sweeps are synchronous database work, so each job hands its sweep to a
worker thread and keeps the event loop free for webhook traffic. A failing
sweep is logged and retried on the next tick.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, Optional

from config import Config
from services import ledger_service, order_maintenance_service
from services.order_maintenance_service import SweepResult

logger = logging.getLogger(__name__)

# Set during shutdown; sweeps stop between orders once it is set
stop_event = threading.Event()


def should_stop() -> bool:
    return stop_event.is_set()


async def run_order_expiry() -> Optional[SweepResult]:
    """Expire stale pending orders (hourly)"""
    if not Config.ENABLE_AUTO_EXPIRE:
        logger.debug("🚫 ORDER_EXPIRY: disabled (ENABLE_AUTO_EXPIRE=false)")
        return None
    try:
        result = await asyncio.to_thread(order_maintenance_service.expire_pending_orders, None, should_stop)
        logger.info(f"✅ ORDER_EXPIRY: {result}")
        return result
    except Exception as e:
        logger.error(f"❌ ORDER_EXPIRY: sweep failed - {e}", exc_info=True)
        return None


async def run_order_cleanup() -> Optional[SweepResult]:
    """Purge old expired orders (daily)"""
    if not Config.ENABLE_AUTO_CLEANUP:
        logger.debug("🚫 ORDER_CLEANUP: disabled (ENABLE_AUTO_CLEANUP=false)")
        return None
    try:
        result = await asyncio.to_thread(order_maintenance_service.cleanup_expired_orders, None, should_stop)
        logger.info(f"✅ ORDER_CLEANUP: {result}")
        return result
    except Exception as e:
        logger.error(f"❌ ORDER_CLEANUP: sweep failed - {e}", exc_info=True)
        return None


async def run_delivery_retry() -> Optional[SweepResult]:
    """Re-attempt failed hand-offs that are due (every few minutes)"""
    try:
        result = await asyncio.to_thread(order_maintenance_service.retry_failed_deliveries, None, should_stop)
        if result.processed or result.failed:
            logger.info(f"✅ DELIVERY_RETRY: {result}")
        return result
    except Exception as e:
        logger.error(f"❌ DELIVERY_RETRY: sweep failed - {e}", exc_info=True)
        return None


async def run_balance_reconciliation() -> Optional[Dict[str, Any]]:
    """Replay every user's ledger against the stored balance"""
    try:
        report = await asyncio.to_thread(ledger_service.audit_all_balances)
        inconsistent = report["inconsistent"]
        if inconsistent:
            logger.critical(
                f"🚨 BALANCE_RECONCILIATION: {len(inconsistent)}/{report['checked']} users inconsistent: "
                f"{[r.user_id for r in inconsistent]}"
            )
        else:
            logger.info(f"✅ BALANCE_RECONCILIATION: {report['checked']} users consistent")
        return report
    except Exception as e:
        logger.error(f"❌ BALANCE_RECONCILIATION: failed - {e}", exc_info=True)
        return None
