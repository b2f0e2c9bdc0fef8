"""
Recharge Card Service - redemption with total and per-user usage caps

A card is redeemed in one transaction: the card row is locked, limits are
checked, both usage counters are incremented and the face value is credited
through the ledger. Any failed check raises before a counter or the balance
is touched.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from config import Config
from models import BalanceTransactionType, RechargeCard, RechargeCardUsage, User
from services.commerce_events import CommerceEvent, CommerceEventType, publish_after_commit
from services.ledger_service import adjust_balance
from utils.atomic_transactions import require_atomic_transaction
from utils.commerce_errors import (
    CardAlreadyUsedError,
    CardExpiredError,
    CardMaxUsesPerUserReachedError,
    CardMaxUsesReachedError,
    CardNotFoundError,
    CommerceError,
)
from utils.datetime_helpers import ensure_naive_datetime, utcnow
from utils.financial_audit_logger import EntityType, FinancialEventType, financial_audit_logger

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    card_id: int
    code: str
    user_id: int
    amount_cents: int
    balance_after: int
    card_used_count: int
    user_use_count: int


def normalize_card_code(card_code: str) -> str:
    return (card_code or "").strip().upper()


def generate_recharge_card_code(prefix: Optional[str] = None) -> str:
    """PREFIX-XXXX-XXXX-XXXX-XXXX with upper-case hex groups"""
    prefix = (prefix or Config.RECHARGE_CARD_PREFIX).upper()
    digits = secrets.token_bytes(8).hex().upper()
    groups = [digits[i:i + 4] for i in range(0, 16, 4)]
    return "-".join([prefix] + groups)


@require_atomic_transaction
def redeem_card(card_code: str, user_id: int, session: Optional[Session] = None) -> RedemptionResult:
    """
    Redeem a recharge card for a user.

    Raises:
        CardNotFoundError, CardExpiredError, CardAlreadyUsedError,
        CardMaxUsesReachedError, CardMaxUsesPerUserReachedError
    """
    code = normalize_card_code(card_code)
    try:
        card = session.execute(
            select(RechargeCard)
            .where(RechargeCard.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if card is None:
            raise CardNotFoundError(card_code=code, user_id=user_id)

        now = utcnow()
        if card.expires_at is not None and card.expires_at < now:
            raise CardExpiredError(card_id=card.id, user_id=user_id)

        if card.is_fully_used:
            if card.max_uses == 1:
                raise CardAlreadyUsedError(card_id=card.id, user_id=user_id)
            raise CardMaxUsesReachedError(card_id=card.id, user_id=user_id, max_uses=card.max_uses)

        usage = session.execute(
            select(RechargeCardUsage).where(
                RechargeCardUsage.recharge_card_id == card.id,
                RechargeCardUsage.user_id == user_id,
            )
        ).scalar_one_or_none()
        if usage is not None and 0 < card.max_uses_per_user <= usage.use_count:
            raise CardMaxUsesPerUserReachedError(
                card_id=card.id, user_id=user_id, max_uses_per_user=card.max_uses_per_user
            )
    except CommerceError as e:
        logger.info(f"🎫 CARD_REJECTED: {code} for user {user_id}: {e.kind.value}")
        financial_audit_logger.log_financial_event(
            event_type=FinancialEventType.CARD_REJECTED,
            entity_type=EntityType.RECHARGE_CARD,
            entity_id=code,
            user_id=user_id,
            additional_data={"reason": e.kind.value},
        )
        raise

    if usage is None:
        usage = RechargeCardUsage(recharge_card_id=card.id, user_id=user_id, use_count=0, last_used_at=now)
        session.add(usage)
    usage.use_count += 1
    usage.last_used_at = now
    card.used_count += 1
    session.flush()

    entry = adjust_balance(
        user_id,
        card.amount_cents,
        BalanceTransactionType.RECHARGE,
        f"Recharge card: {code}",
        recharge_card_id=card.id,
        session=session,
    )

    user = session.get(User, user_id)
    publish_after_commit(session, CommerceEvent(
        event_type=CommerceEventType.CARD_REDEEMED,
        user_id=user_id,
        amount_cents=card.amount_cents,
        balance_after=entry.balance_after,
        card_code=code,
        telegram_id=user.telegram_id if user else None,
        language_code=user.language_code if user else None,
    ))

    logger.info(
        f"✅ CARD_REDEEMED: {code} by user {user_id} for {card.amount_cents} "
        f"(card uses {card.used_count}/{card.max_uses or '∞'}, user uses {usage.use_count})"
    )
    financial_audit_logger.log_financial_event(
        event_type=FinancialEventType.CARD_REDEEMED,
        entity_type=EntityType.RECHARGE_CARD,
        entity_id=card.id,
        user_id=user_id,
        related_entities={"balance_transaction_id": entry.id},
        additional_data={"used_count": card.used_count, "user_use_count": usage.use_count},
    )
    return RedemptionResult(
        card_id=card.id,
        code=code,
        user_id=user_id,
        amount_cents=card.amount_cents,
        balance_after=entry.balance_after,
        card_used_count=card.used_count,
        user_use_count=usage.use_count,
    )


@require_atomic_transaction
def generate_recharge_cards(
    count: int,
    amount_cents: int,
    max_uses: int = 1,
    max_uses_per_user: int = 1,
    expires_at: Optional[datetime] = None,
    prefix: Optional[str] = None,
    session: Optional[Session] = None,
) -> List[RechargeCard]:
    """Create ``count`` cards with unique codes (admin bulk operation)"""
    if count <= 0:
        raise ValueError("Card count must be positive")
    if amount_cents <= 0:
        raise ValueError("Card amount must be positive")
    if max_uses < 0 or max_uses_per_user < 0:
        raise ValueError("Usage caps cannot be negative (0 means unlimited)")

    codes = set()
    while len(codes) < count:
        candidates = {generate_recharge_card_code(prefix) for _ in range(count - len(codes))}
        taken = set(session.execute(
            select(RechargeCard.code).where(RechargeCard.code.in_(candidates))
        ).scalars())
        codes |= candidates - taken

    cards = [
        RechargeCard(
            code=code,
            amount_cents=amount_cents,
            max_uses=max_uses,
            max_uses_per_user=max_uses_per_user,
            used_count=0,
            expires_at=ensure_naive_datetime(expires_at),
        )
        for code in sorted(codes)
    ]
    session.add_all(cards)
    session.flush()
    logger.info(f"🎫 CARDS_GENERATED: {count} x {amount_cents} (max_uses={max_uses}, per_user={max_uses_per_user})")
    return cards


@require_atomic_transaction
def list_recharge_cards(
    limit: int = 50, offset: int = 0, show_used: bool = False, session: Optional[Session] = None
) -> List[RechargeCard]:
    query = select(RechargeCard)
    if not show_used:
        query = query.where(or_(RechargeCard.max_uses == 0, RechargeCard.used_count < RechargeCard.max_uses))
    return list(session.execute(
        query.order_by(RechargeCard.id.desc()).limit(limit).offset(offset)
    ).scalars())


@require_atomic_transaction
def get_card_usages(card_id: int, session: Optional[Session] = None) -> List[RechargeCardUsage]:
    return list(session.execute(
        select(RechargeCardUsage)
        .where(RechargeCardUsage.recharge_card_id == card_id)
        .order_by(RechargeCardUsage.last_used_at.desc())
    ).scalars())


@require_atomic_transaction
def delete_unused_card(card_id: int, session: Optional[Session] = None) -> bool:
    """Delete a card nobody has redeemed; used cards stay for the ledger trail"""
    card = session.execute(
        select(RechargeCard).where(RechargeCard.id == card_id).with_for_update()
    ).scalar_one_or_none()
    if card is None:
        raise CardNotFoundError(card_id=card_id)
    if card.used_count > 0:
        logger.warning(f"⚠️ CARD_DELETE_REFUSED: card {card_id} already used {card.used_count} times")
        return False
    session.delete(card)
    logger.info(f"🗑️ CARD_DELETED: card {card_id}")
    return True


@require_atomic_transaction
def get_card_stats(session: Optional[Session] = None) -> Dict[str, Any]:
    now = utcnow()
    not_full = or_(RechargeCard.max_uses == 0, RechargeCard.used_count < RechargeCard.max_uses)
    not_expired = or_(RechargeCard.expires_at.is_(None), RechargeCard.expires_at > now)

    def count(*criteria) -> int:
        query = select(func.count(RechargeCard.id))
        if criteria:
            query = query.where(*criteria)
        return session.execute(query).scalar_one()

    return {
        "total": count(),
        "active": count(not_full, not_expired),
        "fully_used": count(RechargeCard.max_uses > 0, RechargeCard.used_count >= RechargeCard.max_uses),
        "expired": count(RechargeCard.expires_at.is_not(None), RechargeCard.expires_at < now),
    }
