"""
Order State Machine Tests
Transition table and compare-and-set status writes
"""

import pytest

from database import SessionLocal
from models import Order, OrderStatus
from utils.commerce_errors import CommerceErrorKind, InvalidOrderStateError
from utils.order_state_machine import OrderStateValidator, transition_order


class TestTransitionTable:

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.PAID),
        (OrderStatus.PENDING, OrderStatus.EXPIRED),
        (OrderStatus.PAID, OrderStatus.DELIVERED),
        (OrderStatus.PAID, OrderStatus.PAID_NO_STOCK),
        (OrderStatus.FAILED_DELIVERY, OrderStatus.DELIVERED),
        (OrderStatus.FAILED_DELIVERY, OrderStatus.DELIVERY_FAILED_PERMANENT),
        # post-commit hand-off failure and restock requeue
        (OrderStatus.DELIVERED, OrderStatus.FAILED_DELIVERY),
        (OrderStatus.PAID_NO_STOCK, OrderStatus.FAILED_DELIVERY),
        (OrderStatus.PAID_NO_STOCK, OrderStatus.REFUNDED),
    ])
    def test_allowed(self, current, new):
        assert OrderStateValidator.is_valid_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        (OrderStatus.PENDING, OrderStatus.DELIVERED),
        (OrderStatus.EXPIRED, OrderStatus.PAID),
        (OrderStatus.DELIVERED, OrderStatus.PAID),
        (OrderStatus.PAID_NO_STOCK, OrderStatus.PENDING),
        (OrderStatus.DELIVERED, OrderStatus.REFUNDED),
    ])
    def test_forbidden(self, current, new):
        assert not OrderStateValidator.is_valid_transition(current, new)

    def test_terminal_states(self):
        assert OrderStateValidator.is_terminal_state("expired")
        assert OrderStateValidator.is_terminal_state(OrderStatus.REFUNDED)
        assert not OrderStateValidator.is_terminal_state(OrderStatus.DELIVERED)


class TestTransitionOrder:

    def test_compare_and_set(self, make_user, make_order, fetch):
        order_id = make_order(make_user(), None, status=OrderStatus.PENDING)

        with SessionLocal() as session:
            assert transition_order(session, order_id, OrderStatus.PENDING, OrderStatus.PAID, epay_trade_no="T-1")
            # Second writer expecting pending loses
            assert not transition_order(session, order_id, OrderStatus.PENDING, OrderStatus.EXPIRED)
            session.commit()

        stored = fetch(Order, order_id)
        assert stored.status == "paid"
        assert stored.epay_trade_no == "T-1"

    def test_invalid_edge_raises(self, make_user, make_order):
        order_id = make_order(make_user(), None, status=OrderStatus.PENDING)

        with SessionLocal() as session:
            with pytest.raises(InvalidOrderStateError) as exc_info:
                transition_order(session, order_id, OrderStatus.PENDING, OrderStatus.DELIVERED)

        assert exc_info.value.kind == CommerceErrorKind.INVALID_ORDER_STATE
