"""
Order State Machine with Atomic Operations
Every order status write is a compare-and-set against the expected prior state
"""

import logging
from typing import Dict, Iterable, Set, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Order, OrderStatus
from utils.commerce_errors import InvalidOrderStateError

logger = logging.getLogger(__name__)

StatusLike = Union[OrderStatus, str]


class OrderStateValidator:
    """Validates order state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[str, Set[str]] = {
        # Only pending and expired are reachable without a payment success
        OrderStatus.PENDING.value: {
            OrderStatus.PAID.value,
            OrderStatus.EXPIRED.value,
        },
        OrderStatus.PAID.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.PAID_NO_STOCK.value,
            OrderStatus.FAILED_DELIVERY.value,
        },
        # Collaborator could not hand the payload to the user after commit
        OrderStatus.DELIVERED.value: {
            OrderStatus.FAILED_DELIVERY.value,
        },
        OrderStatus.PAID_NO_STOCK.value: {
            OrderStatus.FAILED_DELIVERY.value,  # requeued for the retry sweep after restock
            OrderStatus.REFUNDED.value,
        },
        OrderStatus.FAILED_DELIVERY.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.DELIVERY_FAILED_PERMANENT.value,
        },
        OrderStatus.DELIVERY_FAILED_PERMANENT.value: {
            OrderStatus.REFUNDED.value,
        },
        # Terminal states
        OrderStatus.EXPIRED.value: set(),
        OrderStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: StatusLike, new_status: StatusLike) -> bool:
        return _value(new_status) in cls.VALID_TRANSITIONS.get(_value(current_status), set())

    @classmethod
    def is_terminal_state(cls, status: StatusLike) -> bool:
        return len(cls.VALID_TRANSITIONS.get(_value(status), set())) == 0


def _value(status: StatusLike) -> str:
    return status.value if isinstance(status, OrderStatus) else status


def transition_order(
    session: Session,
    order_id: int,
    from_statuses: Union[StatusLike, Iterable[StatusLike]],
    to_status: StatusLike,
    **values,
) -> bool:
    """
    Move an order to ``to_status`` only if it is currently in one of
    ``from_statuses``, writing any extra column ``values`` in the same UPDATE.

    Returns False when another transaction already moved the order; raises
    InvalidOrderStateError when the requested edge is not in the table.
    """
    if isinstance(from_statuses, (OrderStatus, str)):
        from_statuses = [from_statuses]
    expected = [_value(status) for status in from_statuses]
    target = _value(to_status)

    for current in expected:
        if not OrderStateValidator.is_valid_transition(current, target):
            raise InvalidOrderStateError(
                f"Invalid order transition {current} -> {target}",
                order_id=order_id, from_status=current, to_status=target,
            )

    result = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(expected))
        .values(status=target, **values)
    )
    if result.rowcount != 1:
        logger.info(f"⏭️ ORDER_TRANSITION_SKIPPED: order {order_id} no longer in {expected} (wanted {target})")
        return False

    logger.debug(f"Order {order_id} transitioned {expected} -> {target}")
    return True
