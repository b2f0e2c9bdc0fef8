"""
Shared Test Fixtures for the Shop Commerce Core
Provides a fresh database per test, object factories and signed EPay callbacks.

Key Components:
1. Database fixture: a file-backed SQLite database per test (worker threads
   share it), or PostgreSQL when TEST_DATABASE_URL is set
2. Commerce event dispatcher reset and an event recorder
3. User / product / order factories that go through the real services
4. EPay merchant configured with a test key and a signed-callback builder
"""

import itertools
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from config import Config
from database import SessionLocal, configure_engine, create_tables
from models import Base, Order, OrderStatus, Product
from services import inventory_claim, order_service
from services.commerce_events import CommerceEvent, CommerceEventType, event_dispatcher
from services.epay_service import EpayService, cents_to_amount
from services.ledger_service import credit_balance
from services.user_service import get_or_create_user
from utils.datetime_helpers import unix_timestamp, utcnow

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

TEST_EPAY_PID = "1001"
TEST_EPAY_KEY = "test-merchant-key-0123456789"
TEST_EPAY_GATEWAY = "https://pay.example.com"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture(autouse=True)
def db_engine(tmp_path):
    """Fresh schema for every test"""
    database_url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path / 'shop_test.db'}"
    engine = configure_engine(database_url)
    Base.metadata.drop_all(engine)
    assert create_tables()
    inventory_claim.install_claim_engine()
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def fetch():
    """Read a row back in a throwaway session"""
    def _fetch(model, row_id):
        with SessionLocal() as session:
            return session.get(model, row_id)
    return _fetch


# ============================================================================
# EVENTS
# ============================================================================

@pytest.fixture(autouse=True)
def dispatcher():
    """Dispatcher with no subscribers and an empty queue; the worker thread is not started"""
    event_dispatcher.unsubscribe_all()
    event_dispatcher.drain()
    yield event_dispatcher
    event_dispatcher.unsubscribe_all()
    event_dispatcher.drain()


@pytest.fixture
def recorded_events(dispatcher) -> List[CommerceEvent]:
    """Every event handed to subscribers, in delivery order (call dispatcher.drain())"""
    events: List[CommerceEvent] = []
    for event_type in CommerceEventType:
        dispatcher.subscribe(event_type, events.append)
    return events


# ============================================================================
# FACTORIES
# ============================================================================

_telegram_ids = itertools.count(700000001)


@pytest.fixture
def make_user():
    """Create a user (optionally funded through the ledger) and return its id"""
    def _make(balance_cents: int = 0, language_code: str = "en") -> int:
        user = get_or_create_user(next(_telegram_ids), username=None, language_code=language_code)
        if balance_cents:
            credit_balance(user.id, balance_cents, description="test funding")
        return user.id
    return _make


@pytest.fixture
def make_product():
    """Create an active product with ``stock`` unsold codes and return its id"""
    def _make(price_cents: int = 1000, stock: int = 0, name: str = "Gift Card") -> int:
        with SessionLocal() as session:
            product = Product(name=name, price_cents=price_cents, is_active=True)
            session.add(product)
            session.commit()
            product_id = product.id
        if stock:
            inventory_claim.add_codes(product_id, [f"CODE-{product_id}-{i:04d}" for i in range(stock)])
        return product_id
    return _make


@pytest.fixture
def make_order():
    """
    Insert an order directly, bypassing creation rules, so tests can start
    from any status and creation time.
    """
    def _make(
        user_id: int,
        product_id: Optional[int] = None,
        amount_cents: int = 1000,
        balance_used: int = 0,
        status: OrderStatus = OrderStatus.PENDING,
        created_at: Optional[datetime] = None,
        **values: Any,
    ) -> int:
        with SessionLocal() as session:
            order = Order(
                user_id=user_id,
                product_id=product_id,
                amount_cents=amount_cents,
                balance_used=balance_used,
                payment_amount=amount_cents - balance_used,
                status=status.value,
                created_at=created_at or utcnow(),
                **values,
            )
            session.add(order)
            session.flush()
            order.epay_out_trade_no = f"{order.id}-{unix_timestamp(order.created_at)}"
            session.commit()
            return order.id
    return _make


# ============================================================================
# EPAY
# ============================================================================

@pytest.fixture
def epay(monkeypatch) -> EpayService:
    """Merchant client with a known key, installed as the service default"""
    service = EpayService(pid=TEST_EPAY_PID, key=TEST_EPAY_KEY, gateway=TEST_EPAY_GATEWAY)
    monkeypatch.setattr(order_service, "epay_service", service)
    monkeypatch.setattr(Config, "BASE_URL", "https://shop.example.com")
    return service


@pytest.fixture
def signed_callback(epay, fetch):
    """Build the parameters of a gateway notification for an order, signed with the test key"""
    def _build(order_id: int, money: Optional[str] = None, trade_status: str = "TRADE_SUCCESS",
               **overrides: Any) -> Dict[str, str]:
        order = fetch(Order, order_id)
        params = {
            "pid": TEST_EPAY_PID,
            "trade_no": f"2024{order_id:010d}",
            "out_trade_no": order.epay_out_trade_no,
            "type": "alipay",
            "name": f"Order {order_id}",
            "money": money if money is not None else cents_to_amount(order.payment_amount),
            "trade_status": trade_status,
        }
        params.update({k: str(v) for k, v in overrides.items()})
        params["sign"] = epay.generate_sign(params)
        params["sign_type"] = "MD5"
        return params
    return _build
