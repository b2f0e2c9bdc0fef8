"""
Order Maintenance Service - expiration, cleanup and delivery-retry sweeps

Every sweep walks its candidates one order at a time, each in its own short
transaction, and checks ``should_stop`` between orders. Interrupting a sweep
therefore never leaves an order half-transitioned; the next run continues
where it left off.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from sqlalchemy import delete, exists, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import BalanceTransaction, Code, Order, OrderStatus, Product, User
from services import inventory_claim
from services.commerce_events import CommerceEvent, CommerceEventType, event_dispatcher, publish_after_commit
from services.order_service import expire_order
from utils.atomic_transactions import require_atomic_transaction
from utils.commerce_errors import NoStockError
from utils.datetime_helpers import ensure_naive_datetime, utcnow
from utils.financial_audit_logger import FinancialEventType, financial_audit_logger
from utils.order_state_machine import transition_order

logger = logging.getLogger(__name__)

StopCheck = Optional[Callable[[], bool]]


@dataclass
class SweepResult:
    sweep: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    interrupted: bool = False

    def __str__(self):
        return (
            f"{self.sweep}: processed={self.processed} failed={self.failed} "
            f"skipped={self.skipped} interrupted={self.interrupted}"
        )


def _run_sweep(result: SweepResult, next_candidate, process_one, should_stop: StopCheck) -> SweepResult:
    """Drive one-order-per-transaction processing until no candidate is left"""
    passed_over: Set[int] = set()
    while True:
        if should_stop is not None and should_stop():
            result.interrupted = True
            logger.info(f"⏹️ SWEEP_INTERRUPTED: {result}")
            break

        order_id = next_candidate(passed_over)
        if order_id is None:
            break

        try:
            if process_one(order_id):
                result.processed += 1
            else:
                # Locked by a concurrent worker or no longer eligible
                result.skipped += 1
                passed_over.add(order_id)
        except Exception as e:
            result.failed += 1
            passed_over.add(order_id)
            logger.error(f"❌ SWEEP_ORDER_FAILED: {result.sweep} order {order_id}: {e}", exc_info=True)

    return result


@require_atomic_transaction
def _first_order_id(*criteria, exclude: Set[int], session: Optional[Session] = None) -> Optional[int]:
    query = select(Order.id).where(*criteria).order_by(Order.id).limit(1)
    if exclude:
        query = query.where(Order.id.not_in(exclude))
    return session.execute(query).scalar_one_or_none()


def _lock_if_eligible(session: Session, order_id: int, *criteria) -> Optional[Order]:
    return session.execute(
        select(Order)
        .where(Order.id == order_id, *criteria)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


# ============================================================================
# EXPIRATION
# ============================================================================

def expire_pending_orders(now: Optional[datetime] = None, should_stop: StopCheck = None) -> SweepResult:
    """pending orders created strictly before ``now - ORDER_EXPIRE_HOURS`` become expired"""
    now = ensure_naive_datetime(now) or utcnow()
    cutoff = now - timedelta(hours=Config.ORDER_EXPIRE_HOURS)
    criteria = (Order.status == OrderStatus.PENDING.value, Order.created_at < cutoff)

    @require_atomic_transaction
    def expire_one(order_id: int, session: Optional[Session] = None) -> bool:
        if _lock_if_eligible(session, order_id, *criteria) is None:
            return False
        return expire_order(session, order_id)

    result = _run_sweep(
        SweepResult("expire"),
        lambda exclude: _first_order_id(*criteria, exclude=exclude),
        expire_one,
        should_stop,
    )
    if result.processed or result.failed:
        logger.info(f"⏰ ORDERS_EXPIRED: {result} (cutoff {cutoff.isoformat()})")
    return result


# ============================================================================
# CLEANUP
# ============================================================================

def cleanup_expired_orders(now: Optional[datetime] = None, should_stop: StopCheck = None) -> SweepResult:
    """
    Purge expired orders older than ORDER_CLEANUP_DAYS. Orders referenced by a
    ledger row are kept so the ledger never points at a missing order.
    """
    now = ensure_naive_datetime(now) or utcnow()
    cutoff = now - timedelta(days=Config.ORDER_CLEANUP_DAYS)
    criteria = (
        Order.status == OrderStatus.EXPIRED.value,
        Order.created_at < cutoff,
        ~exists().where(BalanceTransaction.order_id == Order.id),
        ~exists().where(Code.order_id == Order.id),
    )

    @require_atomic_transaction
    def delete_one(order_id: int, session: Optional[Session] = None) -> bool:
        if _lock_if_eligible(session, order_id, *criteria) is None:
            return False
        session.execute(
            delete(Order).where(Order.id == order_id).execution_options(synchronize_session=False)
        )
        return True

    result = _run_sweep(
        SweepResult("cleanup"),
        lambda exclude: _first_order_id(*criteria, exclude=exclude),
        delete_one,
        should_stop,
    )
    if result.processed or result.failed:
        logger.info(f"🧹 EXPIRED_ORDERS_CLEANED: {result} (older than {cutoff.isoformat()})")
    return result


# ============================================================================
# DELIVERY RETRY
# ============================================================================

def _delivery_event(session: Session, order: Order, payload: Optional[str]) -> CommerceEvent:
    user = session.get(User, order.user_id)
    product = session.get(Product, order.product_id) if order.product_id else None
    return CommerceEvent(
        event_type=CommerceEventType.BALANCE_CREDITED if order.is_topup else CommerceEventType.ORDER_DELIVERED,
        user_id=order.user_id,
        order_id=order.id,
        amount_cents=order.amount_cents,
        balance_after=user.balance_cents if (user and order.is_topup) else None,
        product_id=order.product_id,
        product_name=product.name if product else None,
        code=payload,
        telegram_id=user.telegram_id if user else None,
        language_code=user.language_code if user else None,
        data={"retry": order.delivery_retries + 1},
    )


def retry_failed_deliveries(now: Optional[datetime] = None, should_stop: StopCheck = None) -> SweepResult:
    """
    Re-attempt delivery of failed_delivery orders. Each order goes through
    three steps: a short transaction that locks it, stamps last_retry_at and
    claims a code if none is bound yet; the hand-off to the collaborator
    outside any transaction; and a closing transaction that records success
    (delivered) or the failed attempt (delivery_failed_permanent at the cap).
    """
    now = ensure_naive_datetime(now) or utcnow()
    max_retries = Config.DELIVERY_MAX_RETRIES
    retry_cutoff = now - timedelta(seconds=Config.DELIVERY_RETRY_MIN_INTERVAL_SECONDS)
    criteria = (
        Order.status == OrderStatus.FAILED_DELIVERY.value,
        Order.delivery_retries < max_retries,
        or_(Order.last_retry_at.is_(None), Order.last_retry_at < retry_cutoff),
    )

    @require_atomic_transaction
    def prepare(order_id: int, session: Optional[Session] = None):
        order = _lock_if_eligible(session, order_id, *criteria)
        if order is None:
            return None
        order.last_retry_at = now

        if order.is_topup:
            return _delivery_event(session, order, None), None

        code = inventory_claim.get_order_code(order.id, session=session)
        if code is not None:
            return _delivery_event(session, order, code.code), None
        try:
            claimed = inventory_claim.claim_one(session, order.product_id, order.id)
        except NoStockError:
            return None, "no stock available"
        return _delivery_event(session, order, claimed.payload), None

    @require_atomic_transaction
    def record(order_id: int, error: Optional[str], session: Optional[Session] = None) -> None:
        order = session.get(Order, order_id)
        if error is None:
            if transition_order(
                session, order_id, OrderStatus.FAILED_DELIVERY, OrderStatus.DELIVERED,
                delivered_at=now, last_delivery_error=None,
            ):
                logger.info(f"✅ DELIVERY_RETRY_SUCCESS: order {order_id} delivered on retry {order.delivery_retries + 1}")
            return

        retries = order.delivery_retries + 1
        if retries >= max_retries:
            if transition_order(
                session, order_id, OrderStatus.FAILED_DELIVERY, OrderStatus.DELIVERY_FAILED_PERMANENT,
                delivery_retries=retries, last_delivery_error=error[:500],
            ):
                publish_after_commit(session, CommerceEvent(
                    event_type=CommerceEventType.DELIVERY_FAILED_PERMANENT,
                    user_id=order.user_id,
                    order_id=order_id,
                    amount_cents=order.amount_cents,
                    product_id=order.product_id,
                    data={"retries": retries, "error": error},
                ))
                logger.critical(f"🚨 DELIVERY_FAILED_PERMANENT: order {order_id} after {retries} attempts: {error}")
                financial_audit_logger.log_order_event(
                    event_type=FinancialEventType.ORDER_DELIVERY_FAILED_PERMANENT,
                    order_id=order_id,
                    user_id=order.user_id,
                    amount_cents=order.amount_cents,
                    previous_state=OrderStatus.FAILED_DELIVERY.value,
                    new_state=OrderStatus.DELIVERY_FAILED_PERMANENT.value,
                    level=logging.CRITICAL,
                    retries=retries,
                    error=error,
                )
            return

        order.delivery_retries = retries
        order.last_delivery_error = error[:500]
        logger.warning(f"⚠️ DELIVERY_RETRY_FAILED: order {order_id} attempt {retries}/{max_retries}: {error}")

    def retry_one(order_id: int) -> bool:
        prepared = prepare(order_id)
        if prepared is None:
            return False
        commerce_event, error = prepared
        if commerce_event is not None and not event_dispatcher.deliver_now(commerce_event):
            error = "collaborator hand-off failed"
        record(order_id, error)
        return True

    result = _run_sweep(
        SweepResult("delivery_retry"),
        lambda exclude: _first_order_id(*criteria, exclude=exclude),
        retry_one,
        should_stop,
    )
    if result.processed or result.failed:
        logger.info(f"🔄 DELIVERY_RETRY_SWEEP: {result}")
    return result
