"""
Recharge Card Tests
Redemption limits, rejection order and concurrent redemption of one card
"""

import re
import threading
from datetime import timedelta

import pytest

from database import SessionLocal
from models import BalanceTransaction, RechargeCard
from services import ledger_service, recharge_card_service
from services.commerce_events import CommerceEventType
from services.recharge_card_service import generate_recharge_card_code, redeem_card
from utils.commerce_errors import (
    CardAlreadyUsedError,
    CardExpiredError,
    CardMaxUsesPerUserReachedError,
    CardMaxUsesReachedError,
    CardNotFoundError,
    CommerceErrorKind,
)
from utils.datetime_helpers import utcnow


@pytest.fixture
def make_card():
    def _make(amount_cents=500, max_uses=1, max_uses_per_user=1, expires_at=None, used_count=0):
        cards = recharge_card_service.generate_recharge_cards(
            1, amount_cents, max_uses=max_uses, max_uses_per_user=max_uses_per_user, expires_at=expires_at,
        )
        card = cards[0]
        if used_count:
            with SessionLocal() as session:
                session.get(RechargeCard, card.id).used_count = used_count
                session.commit()
        return card.code
    return _make


class TestRedeemCard:

    def test_redeem_credits_balance_and_counts_use(self, make_user, make_card, fetch):
        user_id = make_user(balance_cents=100)
        code = make_card(amount_cents=500)

        result = redeem_card(code, user_id)

        assert result.amount_cents == 500
        assert result.balance_after == 600
        assert result.card_used_count == 1
        assert result.user_use_count == 1
        assert ledger_service.get_balance(user_id) == 600

        entry = ledger_service.get_balance_history(user_id)[0]
        assert entry.transaction_type == "recharge"
        assert entry.recharge_card_id == result.card_id
        assert entry.description == f"Recharge card: {code}"

    def test_code_is_normalized(self, make_user, make_card):
        user_id = make_user()
        code = make_card()

        result = redeem_card(f"  {code.lower()} ", user_id)

        assert result.code == code

    def test_unknown_card(self, make_user):
        with pytest.raises(CardNotFoundError) as exc_info:
            redeem_card("RC-0000-0000-0000-0000", make_user())
        assert exc_info.value.kind == CommerceErrorKind.CARD_NOT_FOUND

    def test_single_use_card_already_used(self, make_user, make_card):
        code = make_card(max_uses=1)
        redeem_card(code, make_user())

        with pytest.raises(CardAlreadyUsedError) as exc_info:
            redeem_card(code, make_user())
        assert exc_info.value.kind == CommerceErrorKind.CARD_ALREADY_USED

    def test_multi_use_card_exhausted(self, make_user, make_card):
        code = make_card(max_uses=3, used_count=3)

        with pytest.raises(CardMaxUsesReachedError) as exc_info:
            redeem_card(code, make_user())
        assert exc_info.value.kind == CommerceErrorKind.CARD_MAX_USES_REACHED

    def test_per_user_cap(self, make_user, make_card, fetch):
        code = make_card(amount_cents=200, max_uses=10, max_uses_per_user=2)
        user_id = make_user()
        redeem_card(code, user_id)
        redeem_card(code, user_id)

        with pytest.raises(CardMaxUsesPerUserReachedError):
            redeem_card(code, user_id)

        # Another user can still use it
        redeem_card(code, make_user())
        assert ledger_service.get_balance(user_id) == 400

    def test_unlimited_caps(self, make_user, make_card):
        code = make_card(amount_cents=100, max_uses=0, max_uses_per_user=0)
        user_id = make_user()

        for _ in range(5):
            redeem_card(code, user_id)

        assert ledger_service.get_balance(user_id) == 500

    def test_expiry_is_checked_before_usage(self, make_user, make_card):
        code = make_card(max_uses=1, used_count=1, expires_at=utcnow() - timedelta(minutes=1))

        with pytest.raises(CardExpiredError):
            redeem_card(code, make_user())

    def test_rejection_changes_nothing(self, make_user, make_card):
        code = make_card(max_uses=5, max_uses_per_user=1)
        user_id = make_user(balance_cents=50)
        redeem_card(code, user_id)

        with pytest.raises(CardMaxUsesPerUserReachedError):
            redeem_card(code, user_id)

        with SessionLocal() as session:
            card = session.query(RechargeCard).filter_by(code=code).one()
            assert card.used_count == 1
            assert session.query(BalanceTransaction).filter_by(user_id=user_id).count() == 2
        assert ledger_service.verify_balance_consistency(user_id).consistent

    def test_card_redeemed_event_after_commit(self, make_user, make_card, dispatcher, recorded_events):
        user_id = make_user()
        code = make_card(amount_cents=300)

        redeem_card(code, user_id)
        dispatcher.drain()

        redeemed = [e for e in recorded_events if e.event_type == CommerceEventType.CARD_REDEEMED]
        assert len(redeemed) == 1
        assert redeemed[0].card_code == code
        assert redeemed[0].balance_after == 300


class TestConcurrentRedemption:
    """One card, many redeemers: used_count never exceeds max_uses"""

    def test_single_use_card_redeemed_once(self, make_user, make_card):
        code = make_card(amount_cents=1000, max_uses=1)
        user_ids = [make_user() for _ in range(8)]
        successes, rejected, errors = [], [], []
        barrier = threading.Barrier(len(user_ids))

        def worker(user_id):
            barrier.wait()
            try:
                successes.append(redeem_card(code, user_id))
            except CardMaxUsesReachedError:
                rejected.append(user_id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(successes) == 1
        assert len(rejected) == 7
        total = sum(ledger_service.get_balance(uid) for uid in user_ids)
        assert total == 1000

    def test_shared_card_caps_total_and_per_user_uses(self, make_user, make_card):
        code = make_card(amount_cents=400, max_uses=3, max_uses_per_user=1)
        user_ids = [make_user() for _ in range(10)]
        successes, capped, errors = [], [], []
        barrier = threading.Barrier(len(user_ids))

        def worker(user_id):
            barrier.wait()
            try:
                successes.append(redeem_card(code, user_id))
            except CardMaxUsesReachedError as e:
                capped.append(e)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(successes) == 3
        assert len({r.user_id for r in successes}) == 3
        assert len(capped) == 7
        assert all(type(e) is CardMaxUsesReachedError for e in capped)
        assert sum(ledger_service.get_balance(uid) for uid in user_ids) == 1200
        with SessionLocal() as session:
            assert session.query(RechargeCard).filter_by(code=code).one().used_count == 3

    def test_same_user_twice_on_single_use_per_user_card(self, make_user, make_card):
        code = make_card(amount_cents=250, max_uses=3, max_uses_per_user=1)
        user_id = make_user()

        redeem_card(code, user_id)
        with pytest.raises(CardMaxUsesPerUserReachedError) as exc_info:
            redeem_card(code, user_id)

        assert exc_info.value.kind == CommerceErrorKind.CARD_MAX_USES_PER_USER_REACHED
        assert ledger_service.get_balance(user_id) == 250

    def test_same_user_respects_per_user_cap(self, make_user, make_card):
        code = make_card(amount_cents=100, max_uses=0, max_uses_per_user=3)
        user_id = make_user()
        outcomes = []

        def worker():
            try:
                redeem_card(code, user_id)
                outcomes.append("ok")
            except CardMaxUsesPerUserReachedError:
                outcomes.append("capped")

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 3
        assert ledger_service.get_balance(user_id) == 300


class TestCardAdministration:

    def test_generated_code_format(self):
        code = generate_recharge_card_code("vip")
        assert re.fullmatch(r"VIP(-[0-9A-F]{4}){4}", code)

    def test_generate_cards_are_unique(self):
        cards = recharge_card_service.generate_recharge_cards(20, 500)
        assert len({card.code for card in cards}) == 20

    def test_generate_rejects_bad_input(self):
        with pytest.raises(ValueError):
            recharge_card_service.generate_recharge_cards(0, 500)
        with pytest.raises(ValueError):
            recharge_card_service.generate_recharge_cards(1, 0)

    def test_delete_only_unused_cards(self, make_user, make_card):
        used_code = make_card()
        unused_code = make_card()
        redeem_card(used_code, make_user())
        with SessionLocal() as session:
            used_id = session.query(RechargeCard.id).filter_by(code=used_code).scalar()
            unused_id = session.query(RechargeCard.id).filter_by(code=unused_code).scalar()

        assert recharge_card_service.delete_unused_card(used_id) is False
        assert recharge_card_service.delete_unused_card(unused_id) is True
        with pytest.raises(CardNotFoundError):
            recharge_card_service.delete_unused_card(unused_id)

    def test_card_stats(self, make_user, make_card):
        make_card()
        make_card(expires_at=utcnow() - timedelta(days=1))
        redeem_card(make_card(), make_user())

        stats = recharge_card_service.get_card_stats()

        assert stats == {"total": 3, "active": 1, "fully_used": 1, "expired": 1}
        assert len(recharge_card_service.list_recharge_cards()) == 2
        assert len(recharge_card_service.list_recharge_cards(show_used=True)) == 3

    def test_card_usages_track_each_redeemer(self, make_user, make_card):
        code = make_card(amount_cents=100, max_uses=0, max_uses_per_user=0)
        first, second = make_user(), make_user()
        result = redeem_card(code, first)
        redeem_card(code, first)
        redeem_card(code, second)

        usages = recharge_card_service.get_card_usages(result.card_id)

        assert {u.user_id: u.use_count for u in usages} == {first: 2, second: 1}
        assert recharge_card_service.get_card_usages(result.card_id + 999) == []
