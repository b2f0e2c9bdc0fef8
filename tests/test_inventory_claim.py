"""
Inventory Claim Tests
Both claim backends must hand out each code at most once under concurrency
"""

import threading

import pytest
from sqlalchemy import select

from database import SessionLocal
from models import Code, OrderStatus
from services import inventory_claim, ledger_service
from services.inventory_claim import (
    ConditionalUpdateClaimEngine,
    SkipLockedClaimEngine,
    select_claim_engine,
)
from utils.atomic_transactions import atomic_transaction
from utils.commerce_errors import CommerceErrorKind, NoStockError

CLAIM_ENGINES = [SkipLockedClaimEngine, ConditionalUpdateClaimEngine]


@pytest.fixture(params=CLAIM_ENGINES, ids=lambda cls: cls.name)
def claim_engine(request):
    engine = inventory_claim.install_claim_engine(request.param())
    yield engine
    inventory_claim.install_claim_engine()


def _claim(product_id, order_id):
    with atomic_transaction() as session:
        return inventory_claim.claim_one(session, product_id, order_id)


class TestClaimOne:
    """Single claims against a product's pool"""

    def test_claim_marks_code_sold_and_binds_order(self, claim_engine, make_user, make_product, make_order, fetch):
        user_id = make_user()
        product_id = make_product(stock=2)
        order_id = make_order(user_id, product_id, status=OrderStatus.PAID)

        claimed = _claim(product_id, order_id)

        code = fetch(Code, claimed.code_id)
        assert code.is_sold is True
        assert code.order_id == order_id
        assert code.sold_at is not None
        assert claimed.payload == code.code
        assert inventory_claim.count_available_codes(product_id) == 1
        assert inventory_claim.get_order_code(order_id).id == claimed.code_id

    def test_empty_pool_raises_no_stock(self, claim_engine, make_user, make_product, make_order):
        user_id = make_user()
        product_id = make_product(stock=0)
        order_id = make_order(user_id, product_id, status=OrderStatus.PAID)

        with pytest.raises(NoStockError) as exc_info:
            _claim(product_id, order_id)

        assert exc_info.value.kind == CommerceErrorKind.NO_STOCK

    def test_claim_only_takes_codes_of_the_product(self, claim_engine, make_user, make_product, make_order):
        user_id = make_user()
        stocked = make_product(stock=3)
        empty = make_product(stock=0)
        order_id = make_order(user_id, empty, status=OrderStatus.PAID)

        with pytest.raises(NoStockError):
            _claim(empty, order_id)
        assert inventory_claim.count_available_codes(stocked) == 3

    def test_rolled_back_claim_returns_code_to_pool(self, claim_engine, make_user, make_product, make_order):
        user_id = make_user()
        product_id = make_product(stock=1)
        order_id = make_order(user_id, product_id, status=OrderStatus.PAID)

        with SessionLocal() as session:
            inventory_claim.claim_one(session, product_id, order_id)
            session.rollback()

        assert inventory_claim.count_available_codes(product_id) == 1

    def test_no_stock_keeps_earlier_work_in_the_transaction(self, claim_engine, make_user, make_product, make_order):
        user_id = make_user()
        product_id = make_product(stock=0)
        order_id = make_order(user_id, product_id, status=OrderStatus.PAID)

        with atomic_transaction() as session:
            ledger_service.credit_balance(user_id, 500, session=session)
            with pytest.raises(NoStockError):
                inventory_claim.claim_one(session, product_id, order_id)

        assert ledger_service.get_balance(user_id) == 500
        assert ledger_service.verify_balance_consistency(user_id).consistent


class TestConcurrentClaims:
    """N claimers racing for K codes: exactly min(N, K) succeed with distinct codes"""

    @pytest.mark.parametrize("claimers,stock", [(10, 3), (4, 4), (3, 8)])
    def test_no_code_is_sold_twice(self, claim_engine, make_user, make_product, make_order, claimers, stock):
        user_id = make_user()
        product_id = make_product(stock=stock)
        order_ids = [make_order(user_id, product_id, status=OrderStatus.PAID) for _ in range(claimers)]
        claimed, no_stock, errors = [], [], []
        barrier = threading.Barrier(claimers)

        def worker(order_id):
            barrier.wait()
            try:
                claimed.append(_claim(product_id, order_id))
            except NoStockError:
                no_stock.append(order_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(order_id,)) for order_id in order_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        expected = min(claimers, stock)
        assert errors == []
        assert len(claimed) == expected
        assert len(no_stock) == claimers - expected
        assert len({c.code_id for c in claimed}) == expected
        assert len({c.order_id for c in claimed}) == expected

        with SessionLocal() as session:
            sold = session.execute(
                select(Code).where(Code.product_id == product_id, Code.is_sold.is_(True))
            ).scalars().all()
        assert len(sold) == expected
        assert all(code.order_id is not None for code in sold)


class TestStockHelpers:

    def test_add_codes_skips_blank_lines(self, make_product):
        product_id = make_product()

        added = inventory_claim.add_codes(product_id, ["AAA-1", "  ", "", "  BBB-2  "])

        assert added == 2
        assert inventory_claim.count_available_codes(product_id) == 2

    def test_backend_selection_follows_dialect(self, db_engine):
        engine = select_claim_engine(db_engine)
        if db_engine.dialect.name == "postgresql":
            assert isinstance(engine, SkipLockedClaimEngine)
        else:
            assert isinstance(engine, ConditionalUpdateClaimEngine)
