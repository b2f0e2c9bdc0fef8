"""
Order Service - order creation, payment confirmation and fulfillment

Orders move through the state machine in utils/order_state_machine.py:

    pending -> paid -> delivered | paid_no_stock | failed_delivery
    pending -> expired
    failed_delivery -> delivered | delivery_failed_permanent

Payment confirmation is idempotent: the order row is locked, anything not
``pending`` is acknowledged as a duplicate, and every status write is a
compare-and-set, so a callback fired any number of times claims at most one
code and credits at most one top-up.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import BalanceTransaction, BalanceTransactionType, Order, OrderStatus, Product, User
from services import inventory_claim
from services.commerce_events import (
    DELIVERY_EVENT_TYPES,
    CommerceEvent,
    CommerceEventType,
    event_dispatcher,
    publish_after_commit,
)
from services.epay_service import EpayNotification, EpayService, epay_service
from services.ledger_service import adjust_balance
from utils.atomic_transactions import lock_row, require_atomic_transaction
from utils.commerce_errors import (
    AmountMismatchError,
    InvalidOrderStateError,
    InvalidSignatureError,
    NoStockError,
    OrderNotFoundError,
)
from utils.datetime_helpers import unix_timestamp, utcnow
from utils.financial_audit_logger import FinancialEventType, financial_audit_logger
from utils.order_state_machine import transition_order

logger = logging.getLogger(__name__)


class PaymentOutcome(Enum):
    DELIVERED = "delivered"      # product order, code claimed
    NO_STOCK = "no_stock"        # product order, payment kept, delivery deferred
    CREDITED = "credited"        # top-up order, balance credited
    DUPLICATE = "duplicate"      # order already left pending; no side effects
    IGNORED = "ignored"          # non-success trade status


@dataclass
class PaymentConfirmationResult:
    outcome: PaymentOutcome
    order_id: Optional[int] = None
    status: Optional[str] = None
    code_id: Optional[int] = None


# ============================================================================
# ORDER CREATION
# ============================================================================

def _load_active_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None or not product.is_active:
        raise ValueError(f"Product {product_id} is not available")
    return product


def _assign_correlation_id(session: Session, order: Order) -> None:
    session.flush()
    order.epay_out_trade_no = f"{order.id}-{unix_timestamp(order.created_at)}"
    session.flush()


def _log_order_created(order: Order) -> None:
    logger.info(
        f"🧾 ORDER_CREATED: order {order.id} user {order.user_id} product {order.product_id} "
        f"amount {order.amount_cents} (balance {order.balance_used}, payable {order.payment_amount})"
    )
    financial_audit_logger.log_order_event(
        event_type=FinancialEventType.ORDER_CREATED,
        order_id=order.id,
        user_id=order.user_id,
        amount_cents=order.amount_cents,
        new_state=order.status,
        balance_used=order.balance_used,
        payment_amount=order.payment_amount,
    )


@require_atomic_transaction
def create_order(user_id: int, product_id: int, session: Optional[Session] = None) -> Order:
    """Gateway-funded purchase: the whole price is payable"""
    product = _load_active_product(session, product_id)
    order = Order(
        user_id=user_id,
        product_id=product.id,
        amount_cents=product.price_cents,
        balance_used=0,
        payment_amount=product.price_cents,
        status=OrderStatus.PENDING.value,
        created_at=utcnow(),
    )
    session.add(order)
    _assign_correlation_id(session, order)
    _log_order_created(order)
    return order


@require_atomic_transaction
def create_order_with_balance(user_id: int, product_id: int, session: Optional[Session] = None) -> Order:
    """
    Balance-assisted purchase. The available balance (up to the price) is
    debited immediately; when it covers the whole price the order is paid and
    fulfilled in this same transaction without waiting for a callback.
    """
    product = _load_active_product(session, product_id)
    user = lock_row(session, User, user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    now = utcnow()
    used = min(user.balance_cents, product.price_cents)
    order = Order(
        user_id=user_id,
        product_id=product.id,
        amount_cents=product.price_cents,
        balance_used=used,
        payment_amount=product.price_cents - used,
        status=OrderStatus.PENDING.value,
        created_at=now,
    )
    session.add(order)
    _assign_correlation_id(session, order)

    if used > 0:
        adjust_balance(
            user_id, -used, BalanceTransactionType.PURCHASE,
            f"Order #{order.id}: {product.name}", order_id=order.id, session=session,
        )
    _log_order_created(order)

    if order.payment_amount == 0:
        transition_order(session, order.id, OrderStatus.PENDING, OrderStatus.PAID, paid_at=now)
        _stage_order_event(session, order, CommerceEventType.ORDER_PAID)
        logger.info(f"💰 ORDER_PAID_WITH_BALANCE: order {order.id} fully covered by balance")
        fulfill_paid_order(session, order)

    return order


@require_atomic_transaction
def create_topup_order(user_id: int, amount_cents: int, session: Optional[Session] = None) -> Order:
    """Pure balance top-up through the gateway (no product)"""
    if amount_cents <= 0:
        raise ValueError("Top-up amount must be positive")
    if session.get(User, user_id) is None:
        raise ValueError(f"User {user_id} not found")

    order = Order(
        user_id=user_id,
        product_id=None,
        amount_cents=amount_cents,
        balance_used=0,
        payment_amount=amount_cents,
        status=OrderStatus.PENDING.value,
        created_at=utcnow(),
    )
    session.add(order)
    _assign_correlation_id(session, order)
    _log_order_created(order)
    return order


# ============================================================================
# FULFILLMENT
# ============================================================================

def _stage_order_event(session: Session, order: Order, event_type: CommerceEventType, **fields) -> None:
    user = session.get(User, order.user_id)
    product = session.get(Product, order.product_id) if order.product_id else None
    publish_after_commit(session, CommerceEvent(
        event_type=event_type,
        user_id=order.user_id,
        order_id=order.id,
        amount_cents=order.amount_cents,
        product_id=order.product_id,
        product_name=product.name if product else None,
        telegram_id=user.telegram_id if user else None,
        language_code=user.language_code if user else None,
        **fields,
    ))


def fulfill_paid_order(session: Session, order: Order) -> PaymentOutcome:
    """
    Deliver a ``paid`` order inside the caller's transaction: credit the
    balance for a top-up, otherwise claim one code. No stock leaves the order
    ``paid_no_stock`` with the payment kept.
    """
    now = utcnow()

    if order.is_topup:
        entry = adjust_balance(
            order.user_id, order.amount_cents, BalanceTransactionType.RECHARGE,
            f"Recharge order #{order.id}", order_id=order.id, session=session,
        )
        transition_order(session, order.id, OrderStatus.PAID, OrderStatus.DELIVERED, delivered_at=now)
        _stage_order_event(session, order, CommerceEventType.BALANCE_CREDITED, balance_after=entry.balance_after)
        _log_transition(order, OrderStatus.PAID, OrderStatus.DELIVERED, FinancialEventType.ORDER_DELIVERED)
        return PaymentOutcome.CREDITED

    try:
        claimed = inventory_claim.claim_one(session, order.product_id, order.id)
    except NoStockError:
        transition_order(session, order.id, OrderStatus.PAID, OrderStatus.PAID_NO_STOCK)
        _stage_order_event(session, order, CommerceEventType.ORDER_NO_STOCK)
        _log_transition(order, OrderStatus.PAID, OrderStatus.PAID_NO_STOCK, FinancialEventType.ORDER_NO_STOCK)
        return PaymentOutcome.NO_STOCK

    transition_order(session, order.id, OrderStatus.PAID, OrderStatus.DELIVERED, delivered_at=now)
    _stage_order_event(session, order, CommerceEventType.ORDER_DELIVERED, code=claimed.payload)
    _log_transition(order, OrderStatus.PAID, OrderStatus.DELIVERED, FinancialEventType.ORDER_DELIVERED, code_id=claimed.code_id)
    return PaymentOutcome.DELIVERED


def _log_transition(order: Order, from_status: OrderStatus, to_status: OrderStatus,
                    event_type: FinancialEventType, level: int = logging.INFO, **data) -> None:
    logger.log(level, f"📦 ORDER_{to_status.value.upper()}: order {order.id} ({from_status.value} -> {to_status.value})")
    financial_audit_logger.log_order_event(
        event_type=event_type,
        order_id=order.id,
        user_id=order.user_id,
        amount_cents=order.amount_cents,
        previous_state=from_status.value,
        new_state=to_status.value,
        level=level,
        **data,
    )


# ============================================================================
# PAYMENT CONFIRMATION
# ============================================================================

def confirm_payment(params: Mapping[str, Any], epay: Optional[EpayService] = None) -> PaymentConfirmationResult:
    """
    Process a gateway payment callback.

    Raises:
        InvalidSignatureError: signature mismatch; nothing else is looked at
        OrderNotFoundError: no order for the correlation id
        AmountMismatchError: notified amount differs from the payable amount
        TransientStoreError: store unavailable after retries
    """
    epay = epay or epay_service
    out_trade_no = str(params.get("out_trade_no") or "")

    if not epay.verify_signature(params):
        logger.critical(f"🚨 EPAY_SIGNATURE_INVALID: out_trade_no={out_trade_no!r}")
        financial_audit_logger.log_webhook_event(
            FinancialEventType.WEBHOOK_SIGNATURE_FAILED, out_trade_no, level=logging.CRITICAL,
            params={k: v for k, v in params.items()},
        )
        raise InvalidSignatureError(out_trade_no=out_trade_no)

    notification = epay.parse_notification(params)
    if not notification.is_success:
        logger.info(f"⏭️ EPAY_IGNORED: {notification.out_trade_no} trade_status={notification.trade_status}")
        return PaymentConfirmationResult(PaymentOutcome.IGNORED)

    return _apply_payment(notification)


def _find_order_for_update(session: Session, out_trade_no: str) -> Optional[Order]:
    order = session.execute(
        select(Order)
        .where(Order.epay_out_trade_no == out_trade_no)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is not None:
        return order

    # Correlation ids are "{order_id}-{unix_ts}"; fall back to the id prefix
    prefix = out_trade_no.split("-", 1)[0]
    if prefix.isdigit():
        return lock_row(session, Order, int(prefix))
    return None


@require_atomic_transaction
def _apply_payment(notification: EpayNotification, session: Optional[Session] = None) -> PaymentConfirmationResult:
    out_trade_no = notification.out_trade_no
    order = _find_order_for_update(session, out_trade_no)
    if order is None:
        logger.error(f"❌ EPAY_ORDER_NOT_FOUND: out_trade_no={out_trade_no!r}")
        financial_audit_logger.log_webhook_event(
            FinancialEventType.WEBHOOK_UNMATCHED, out_trade_no, level=logging.ERROR,
            trade_no=notification.trade_no, money=notification.money,
        )
        raise OrderNotFoundError(out_trade_no=out_trade_no)

    if order.status != OrderStatus.PENDING.value:
        logger.info(f"🔁 EPAY_DUPLICATE: order {order.id} already {order.status}")
        financial_audit_logger.log_webhook_event(
            FinancialEventType.WEBHOOK_DUPLICATE_DETECTED, out_trade_no,
            order_id=order.id, status=order.status, trade_no=notification.trade_no,
        )
        return PaymentConfirmationResult(PaymentOutcome.DUPLICATE, order.id, order.status)

    try:
        paid_cents = notification.amount_cents
    except ValueError:
        paid_cents = None
    if paid_cents != order.payment_amount:
        logger.critical(
            f"🚨 EPAY_AMOUNT_MISMATCH: order {order.id} expected {order.payment_amount} cents, "
            f"gateway reported {notification.money!r} (trade_no={notification.trade_no}); order left pending"
        )
        financial_audit_logger.log_webhook_event(
            FinancialEventType.WEBHOOK_AMOUNT_MISMATCH, out_trade_no, level=logging.CRITICAL,
            order_id=order.id, user_id=order.user_id, expected_cents=order.payment_amount,
            reported_money=notification.money, trade_no=notification.trade_no,
        )
        raise AmountMismatchError(
            order_id=order.id, expected_cents=order.payment_amount, reported=notification.money,
        )

    if not transition_order(
        session, order.id, OrderStatus.PENDING, OrderStatus.PAID,
        paid_at=utcnow(), epay_trade_no=notification.trade_no or None,
    ):
        return PaymentConfirmationResult(PaymentOutcome.DUPLICATE, order.id, order.status)

    _stage_order_event(session, order, CommerceEventType.ORDER_PAID)
    _log_transition(order, OrderStatus.PENDING, OrderStatus.PAID, FinancialEventType.WEBHOOK_PAYMENT_CONFIRMED,
                    trade_no=notification.trade_no)

    outcome = fulfill_paid_order(session, order)
    claimed = inventory_claim.get_order_code(order.id, session=session) if outcome == PaymentOutcome.DELIVERED else None
    return PaymentConfirmationResult(outcome, order.id, order.status, claimed.id if claimed else None)


# ============================================================================
# DELIVERY FAILURE / REFUND / EXPIRY
# ============================================================================

@require_atomic_transaction
def mark_delivery_failed(order_id: int, reason: str, session: Optional[Session] = None) -> bool:
    """The collaborator could not hand the order's payload to the user"""
    order = lock_row(session, Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id=order_id)
    previous = order.status
    if not transition_order(
        session, order_id, [OrderStatus.PAID, OrderStatus.DELIVERED], OrderStatus.FAILED_DELIVERY,
        last_delivery_error=(reason or "")[:500],
    ):
        return False
    logger.warning(f"⚠️ ORDER_FAILED_DELIVERY: order {order_id} ({previous}): {reason}")
    financial_audit_logger.log_order_event(
        event_type=FinancialEventType.ORDER_DELIVERY_FAILED,
        order_id=order_id,
        user_id=order.user_id,
        previous_state=previous,
        new_state=OrderStatus.FAILED_DELIVERY.value,
        level=logging.WARNING,
        reason=reason,
    )
    return True


def _handle_delivery_failure(commerce_event: CommerceEvent, reason: str) -> None:
    if commerce_event.event_type in DELIVERY_EVENT_TYPES and commerce_event.order_id:
        mark_delivery_failed(commerce_event.order_id, reason)


event_dispatcher.on_delivery_failure(_handle_delivery_failure)


@require_atomic_transaction
def requeue_no_stock_order(order_id: int, session: Optional[Session] = None) -> bool:
    """After a restock, hand a paid_no_stock order to the delivery retry sweep"""
    if lock_row(session, Order, order_id) is None:
        raise OrderNotFoundError(order_id=order_id)
    requeued = transition_order(
        session, order_id, OrderStatus.PAID_NO_STOCK, OrderStatus.FAILED_DELIVERY,
        delivery_retries=0, last_retry_at=None, last_delivery_error="requeued after restock",
    )
    if requeued:
        logger.info(f"🔄 ORDER_REQUEUED: order {order_id} queued for delivery retry")
    return requeued


@require_atomic_transaction
def refund_order_to_balance(order_id: int, session: Optional[Session] = None) -> BalanceTransaction:
    """
    Return the full price of an undeliverable product order to the user's
    balance. A code already bound to the order stays sold.
    """
    order = lock_row(session, Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id=order_id)
    refundable = (OrderStatus.PAID_NO_STOCK.value, OrderStatus.DELIVERY_FAILED_PERMANENT.value)
    if order.is_topup or order.status not in refundable:
        raise InvalidOrderStateError(
            f"Order {order_id} in status {order.status} cannot be refunded",
            order_id=order_id, status=order.status,
        )

    previous = OrderStatus(order.status)
    transition_order(session, order_id, previous, OrderStatus.REFUNDED)
    entry = adjust_balance(
        order.user_id, order.amount_cents, BalanceTransactionType.REFUND,
        f"Refund order #{order.id}", order_id=order.id, session=session,
    )
    _stage_order_event(session, order, CommerceEventType.BALANCE_CREDITED, balance_after=entry.balance_after)
    _log_transition(order, previous, OrderStatus.REFUNDED, FinancialEventType.ORDER_REFUNDED)
    return entry


def expire_order(session: Session, order_id: int) -> bool:
    """
    pending -> expired inside the caller's transaction, returning the balance
    portion of a balance-assisted order as a refund row.
    """
    order = session.get(Order, order_id)
    if order is None:
        raise OrderNotFoundError(order_id=order_id)
    if not transition_order(session, order_id, OrderStatus.PENDING, OrderStatus.EXPIRED):
        return False

    if order.balance_used > 0:
        adjust_balance(
            order.user_id, order.balance_used, BalanceTransactionType.REFUND,
            f"Expired order #{order.id} balance returned", order_id=order.id, session=session,
        )
    _stage_order_event(session, order, CommerceEventType.ORDER_EXPIRED)
    _log_transition(order, OrderStatus.PENDING, OrderStatus.EXPIRED, FinancialEventType.ORDER_EXPIRED,
                    balance_returned=order.balance_used)
    return True


@require_atomic_transaction
def manual_expire_order(order_id: int, session: Optional[Session] = None) -> bool:
    if lock_row(session, Order, order_id) is None:
        raise OrderNotFoundError(order_id=order_id)
    return expire_order(session, order_id)


# ============================================================================
# QUERIES
# ============================================================================

@require_atomic_transaction
def get_order(order_id: int, session: Optional[Session] = None) -> Optional[Order]:
    return session.get(Order, order_id)


@require_atomic_transaction
def get_user_orders(user_id: int, limit: int = 10, offset: int = 0, session: Optional[Session] = None):
    return list(session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.id.desc()).limit(limit).offset(offset)
    ).scalars())


@require_atomic_transaction
def get_order_stats(session: Optional[Session] = None) -> Dict[str, int]:
    """Order count per status (every status present, zero when unused)"""
    stats = {status.value: 0 for status in OrderStatus}
    for status, count in session.execute(select(Order.status, func.count(Order.id)).group_by(Order.status)):
        stats[status] = count
    stats["total"] = sum(stats.values())
    return stats
