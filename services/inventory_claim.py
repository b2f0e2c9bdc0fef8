"""
Inventory Claim Engine - atomic "take one unsold code" for a product

Two interchangeable backends give the same guarantee: under N concurrent
claimers racing for K unsold codes exactly min(N, K) succeed, each with a
distinct code, and the rest get NoStockError.

- SkipLockedClaimEngine: SELECT ... FOR UPDATE SKIP LOCKED LIMIT 1, then UPDATE.
  Used on PostgreSQL.
- ConditionalUpdateClaimEngine: a single UPDATE guarded by ``is_sold = false``
  whose affected-row count decides the outcome, then a read-back. Used where
  the store has no skip-locked support (SQLite).

Both run inside the caller's transaction. NoStockError is raised before any
write, so the caller's earlier work is never rolled back by a failed claim.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

import database
from models import Code
from utils.atomic_transactions import require_atomic_transaction
from utils.commerce_errors import NoStockError
from utils.datetime_helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimedCode:
    code_id: int
    product_id: int
    order_id: int
    payload: str


class CodeClaimEngine(ABC):
    """Marks exactly one unsold code of a product as sold to an order"""

    name = "abstract"

    @abstractmethod
    def claim_one(self, session: Session, product_id: int, order_id: int) -> ClaimedCode:
        """Claim one code inside ``session``'s transaction or raise NoStockError"""

    def _no_stock(self, product_id: int, order_id: int) -> NoStockError:
        logger.warning(f"📦 NO_STOCK: product {product_id} has no unsold code for order {order_id} ({self.name})")
        return NoStockError(product_id=product_id, order_id=order_id)

    def __repr__(self):
        return f"<{type(self).__name__}>"


class SkipLockedClaimEngine(CodeClaimEngine):
    """Row-lock-and-skip strategy for stores with FOR UPDATE SKIP LOCKED"""

    name = "skip_locked"

    def claim_one(self, session: Session, product_id: int, order_id: int) -> ClaimedCode:
        candidate = session.execute(
            select(Code.id, Code.code)
            .where(Code.product_id == product_id, Code.is_sold.is_(False))
            .order_by(Code.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        ).first()
        if candidate is None:
            raise self._no_stock(product_id, order_id)

        session.execute(
            update(Code)
            .where(Code.id == candidate.id)
            .values(is_sold=True, sold_at=utcnow(), order_id=order_id)
        )
        logger.info(f"🎟️ CODE_CLAIMED: code {candidate.id} of product {product_id} -> order {order_id}")
        return ClaimedCode(candidate.id, product_id, order_id, candidate.code)


class ConditionalUpdateClaimEngine(CodeClaimEngine):
    """Single guarded UPDATE strategy; the affected-row count reveals the winner"""

    name = "conditional_update"

    # A lost race re-evaluates the subquery while unsold stock remains
    MAX_ATTEMPTS = 5

    def claim_one(self, session: Session, product_id: int, order_id: int) -> ClaimedCode:
        for attempt in range(self.MAX_ATTEMPTS):
            candidate_id = (
                select(Code.id)
                .where(Code.product_id == product_id, Code.is_sold.is_(False))
                .order_by(Code.id)
                .limit(1)
                .scalar_subquery()
            )
            result = session.execute(
                update(Code)
                .where(Code.id == candidate_id, Code.is_sold.is_(False))
                .values(is_sold=True, sold_at=utcnow(), order_id=order_id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed = session.execute(
                    select(Code.id, Code.code).where(Code.order_id == order_id)
                ).one()
                logger.info(f"🎟️ CODE_CLAIMED: code {claimed.id} of product {product_id} -> order {order_id}")
                return ClaimedCode(claimed.id, product_id, order_id, claimed.code)

            remaining = session.execute(
                select(func.count(Code.id)).where(Code.product_id == product_id, Code.is_sold.is_(False))
            ).scalar_one()
            if remaining == 0:
                break
            logger.debug(f"Claim race lost for product {product_id} (attempt {attempt + 1}), {remaining} left")

        raise self._no_stock(product_id, order_id)


def select_claim_engine(bind: Engine) -> CodeClaimEngine:
    """Pick the backend matching the store's locking model"""
    if database.is_postgres(bind):
        return SkipLockedClaimEngine()
    return ConditionalUpdateClaimEngine()


_claim_engine: Optional[CodeClaimEngine] = None


def install_claim_engine(claim_engine: Optional[CodeClaimEngine] = None) -> CodeClaimEngine:
    """Fix the process-wide backend; selects by dialect when none is given"""
    global _claim_engine
    _claim_engine = claim_engine or select_claim_engine(database.get_engine())
    logger.info(f"🔧 Inventory claim engine: {_claim_engine.name}")
    return _claim_engine


def get_claim_engine() -> CodeClaimEngine:
    if _claim_engine is None:
        return install_claim_engine()
    return _claim_engine


def claim_one(session: Session, product_id: int, order_id: int) -> ClaimedCode:
    return get_claim_engine().claim_one(session, product_id, order_id)


@require_atomic_transaction
def count_available_codes(product_id: int, session: Optional[Session] = None) -> int:
    return session.execute(
        select(func.count(Code.id)).where(Code.product_id == product_id, Code.is_sold.is_(False))
    ).scalar_one()


@require_atomic_transaction
def add_codes(product_id: int, payloads: Iterable[str], session: Optional[Session] = None) -> int:
    """Import stock for a product; blank lines are skipped"""
    codes = [Code(product_id=product_id, code=payload.strip()) for payload in payloads if payload and payload.strip()]
    session.add_all(codes)
    session.flush()
    logger.info(f"📦 STOCK_IMPORTED: {len(codes)} codes added to product {product_id}")
    return len(codes)


@require_atomic_transaction
def get_order_code(order_id: int, session: Optional[Session] = None) -> Optional[Code]:
    return session.execute(select(Code).where(Code.order_id == order_id)).scalar_one_or_none()
