"""
Ledger Service - atomic balance mutation backed by an append-only ledger

The cached ``User.balance_cents`` is a denormalized value: after every commit
it equals the sum of that user's ``BalanceTransaction.amount_cents`` rows. All
balance writes in the codebase go through ``adjust_balance``; nothing else
touches the cached field.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import BalanceTransaction, BalanceTransactionType, User
from utils.atomic_transactions import lock_row, require_atomic_transaction
from utils.commerce_errors import InsufficientBalanceError
from utils.datetime_helpers import utcnow
from utils.financial_audit_logger import FinancialEventType, financial_audit_logger

logger = logging.getLogger(__name__)

_EVENT_BY_KIND = {
    BalanceTransactionType.RECHARGE: FinancialEventType.BALANCE_CREDIT,
    BalanceTransactionType.PURCHASE: FinancialEventType.BALANCE_DEBIT,
    BalanceTransactionType.REFUND: FinancialEventType.BALANCE_REFUND,
}


@dataclass
class LedgerAuditResult:
    """Outcome of replaying one user's ledger against the cached balance"""
    user_id: int
    cached_balance: int
    ledger_sum: int
    transaction_count: int = 0
    snapshot_errors: List[str] = field(default_factory=list)

    @property
    def discrepancy(self) -> int:
        return self.cached_balance - self.ledger_sum

    @property
    def consistent(self) -> bool:
        return self.discrepancy == 0 and not self.snapshot_errors


@require_atomic_transaction
def adjust_balance(
    user_id: int,
    delta_cents: int,
    kind: Union[BalanceTransactionType, str],
    description: Optional[str] = None,
    recharge_card_id: Optional[int] = None,
    order_id: Optional[int] = None,
    session: Optional[Session] = None,
) -> BalanceTransaction:
    """
    Apply a signed balance change and append its ledger row in one transaction.

    The user row is locked first so concurrent adjustments for the same user
    serialize; a change that would go negative raises InsufficientBalanceError
    before anything is written.

    Args:
        user_id: Target user
        delta_cents: Signed change, never zero
        kind: recharge / purchase / refund
        description: Free text stored on the ledger row
        recharge_card_id: Card that caused the change, if any
        order_id: Order that caused the change, if any
        session: Join the caller's transaction instead of opening one

    Returns:
        The appended BalanceTransaction (flushed, id assigned)
    """
    if delta_cents == 0:
        raise ValueError("Balance adjustment amount must be non-zero")
    kind = BalanceTransactionType(kind)

    user = lock_row(session, User, user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    balance_before = user.balance_cents
    new_balance = balance_before + delta_cents
    if new_balance < 0:
        logger.info(
            f"💸 LEDGER_INSUFFICIENT: user {user_id} balance {balance_before} "
            f"cannot cover {-delta_cents} ({kind.value})"
        )
        raise InsufficientBalanceError(
            user_id=user_id, balance_cents=balance_before, requested_cents=-delta_cents
        )

    user.balance_cents = new_balance
    entry = BalanceTransaction(
        user_id=user_id,
        transaction_type=kind.value,
        amount_cents=delta_cents,
        balance_after=new_balance,
        recharge_card_id=recharge_card_id,
        order_id=order_id,
        description=(description or "")[:200] or None,
        created_at=utcnow(),
    )
    session.add(entry)
    session.flush()

    logger.info(
        f"✅ LEDGER_{kind.value.upper()}: user {user_id} {delta_cents:+d} -> {new_balance} "
        f"(tx {entry.id}, order={order_id}, card={recharge_card_id})"
    )
    financial_audit_logger.log_balance_event(
        event_type=_EVENT_BY_KIND[kind],
        user_id=user_id,
        amount_cents=delta_cents,
        balance_before=balance_before,
        balance_after=new_balance,
        transaction_id=entry.id,
        order_id=order_id,
        recharge_card_id=recharge_card_id,
        description=description,
    )
    return entry


def credit_balance(
    user_id: int,
    amount_cents: int,
    kind: Union[BalanceTransactionType, str] = BalanceTransactionType.RECHARGE,
    description: Optional[str] = None,
    session: Optional[Session] = None,
    **refs,
) -> BalanceTransaction:
    """Add a positive amount to the user's balance"""
    if amount_cents <= 0:
        raise ValueError("Credit amount must be positive")
    return adjust_balance(user_id, amount_cents, kind, description, session=session, **refs)


def debit_balance(
    user_id: int,
    amount_cents: int,
    kind: Union[BalanceTransactionType, str] = BalanceTransactionType.PURCHASE,
    description: Optional[str] = None,
    session: Optional[Session] = None,
    **refs,
) -> BalanceTransaction:
    """Subtract a positive amount from the user's balance"""
    if amount_cents <= 0:
        raise ValueError("Debit amount must be positive")
    return adjust_balance(user_id, -amount_cents, kind, description, session=session, **refs)


@require_atomic_transaction
def get_balance(user_id: int, session: Optional[Session] = None) -> int:
    balance = session.execute(select(User.balance_cents).where(User.id == user_id)).scalar_one_or_none()
    if balance is None:
        raise ValueError(f"User {user_id} not found")
    return balance


@require_atomic_transaction
def get_balance_history(
    user_id: int, limit: int = 20, offset: int = 0, session: Optional[Session] = None
) -> List[BalanceTransaction]:
    """Ledger rows for a user, newest first"""
    return list(
        session.execute(
            select(BalanceTransaction)
            .where(BalanceTransaction.user_id == user_id)
            .order_by(BalanceTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars()
    )


@require_atomic_transaction
def replay_ledger(user_id: int, session: Optional[Session] = None) -> int:
    """Authoritative balance: the sum of every ledger row for the user"""
    return session.execute(
        select(func.coalesce(func.sum(BalanceTransaction.amount_cents), 0))
        .where(BalanceTransaction.user_id == user_id)
    ).scalar_one()


@require_atomic_transaction
def verify_balance_consistency(user_id: int, session: Optional[Session] = None) -> LedgerAuditResult:
    """
    Replay a user's ledger in order and compare it with the cached balance.
    Also checks that every row's snapshot equals the running sum and is never
    negative.
    """
    user = session.get(User, user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    rows = session.execute(
        select(BalanceTransaction.id, BalanceTransaction.amount_cents, BalanceTransaction.balance_after)
        .where(BalanceTransaction.user_id == user_id)
        .order_by(BalanceTransaction.id)
    ).all()

    running = 0
    snapshot_errors = []
    for tx_id, amount_cents, balance_after in rows:
        running += amount_cents
        if balance_after != running:
            snapshot_errors.append(f"tx {tx_id}: snapshot {balance_after} != running sum {running}")
        if running < 0:
            snapshot_errors.append(f"tx {tx_id}: running balance negative ({running})")

    result = LedgerAuditResult(
        user_id=user_id,
        cached_balance=user.balance_cents,
        ledger_sum=running,
        transaction_count=len(rows),
        snapshot_errors=snapshot_errors,
    )
    if not result.consistent:
        logger.critical(
            f"🚨 LEDGER_MISMATCH: user {user_id} cached={result.cached_balance} "
            f"ledger={result.ledger_sum} snapshot_errors={snapshot_errors[:5]}"
        )
    return result


@require_atomic_transaction
def audit_all_balances(session: Optional[Session] = None) -> Dict[str, Any]:
    """
    Compare every cached balance with its ledger sum. Mismatches are logged
    and reported for manual inspection; nothing is corrected automatically.
    """
    ledger_sums = (
        select(
            BalanceTransaction.user_id.label("user_id"),
            func.sum(BalanceTransaction.amount_cents).label("ledger_sum"),
        )
        .group_by(BalanceTransaction.user_id)
        .subquery()
    )
    rows = session.execute(
        select(User.id, User.balance_cents, func.coalesce(ledger_sums.c.ledger_sum, 0))
        .outerjoin(ledger_sums, ledger_sums.c.user_id == User.id)
        .order_by(User.id)
    ).all()

    inconsistent = []
    for user_id, cached_balance, ledger_sum in rows:
        if cached_balance != ledger_sum:
            inconsistent.append(verify_balance_consistency(user_id, session=session))

    for result in inconsistent:
        financial_audit_logger.log_balance_event(
            event_type=FinancialEventType.BALANCE_MISMATCH,
            user_id=result.user_id,
            amount_cents=result.discrepancy,
            balance_before=result.ledger_sum,
            balance_after=result.cached_balance,
            level=logging.CRITICAL,
        )

    if inconsistent:
        logger.critical(f"🚨 BALANCE_RECONCILIATION: {len(inconsistent)}/{len(rows)} users inconsistent")
    else:
        logger.info(f"✅ BALANCE_RECONCILIATION: {len(rows)} users consistent")

    return {"checked": len(rows), "inconsistent": inconsistent}
