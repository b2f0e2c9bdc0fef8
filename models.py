"""
Shop Bot Commerce Core - Database Schema
========================================

Schema for the transactional commerce core:
- Products and their finite pool of redemption codes
- Users with a cached balance backed by an append-only ledger
- Orders driven through the payment / delivery state machine
- Recharge cards with total and per-user usage caps

All monetary amounts are integer cents.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint, func
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    PAID_NO_STOCK = "paid_no_stock"
    FAILED_DELIVERY = "failed_delivery"
    DELIVERY_FAILED_PERMANENT = "delivery_failed_permanent"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class BalanceTransactionType(Enum):
    """Kinds of ledger rows"""
    RECHARGE = "recharge"  # top-up: recharge card or gateway-funded deposit
    PURCHASE = "purchase"
    REFUND = "refund"


def _enum_values(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# CORE ENTITIES
# ============================================================================

class User(Base):
    """Telegram user with a cached balance"""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    language_code: Mapped[str] = mapped_column(String(10), default="en", nullable=False)

    # Denormalized: always equals the sum of this user's ledger rows
    balance_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    orders: Mapped[list["Order"]] = relationship("Order", back_populates="user")
    balance_transactions: Mapped[list["BalanceTransaction"]] = relationship(
        "BalanceTransaction", back_populates="user", order_by="BalanceTransaction.id"
    )

    __table_args__ = (
        Index('ix_users_telegram_id', 'telegram_id', unique=True),
        CheckConstraint('balance_cents >= 0', name='ck_user_balance_non_negative'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, balance_cents={self.balance_cents})>"


class Product(Base):
    """Sellable product backed by a pool of codes"""
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        CheckConstraint('price_cents > 0', name='ck_product_price_positive'),
    )


class Code(Base):
    """One unit of digital inventory; transitions unsold -> sold exactly once"""
    __tablename__ = 'codes'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(Integer, ForeignKey('products.id'), nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    is_sold: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sold_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    product: Mapped["Product"] = relationship("Product")

    __table_args__ = (
        # A claimed code belongs to exactly one order and an order owns at most one code
        CheckConstraint('(is_sold AND order_id IS NOT NULL) OR (NOT is_sold AND order_id IS NULL)',
                        name='ck_code_sold_has_order'),
        Index('ix_codes_product_unsold', 'product_id', 'is_sold'),
        Index('ix_codes_order_id', 'order_id', unique=True),
    )


class Order(Base):
    """Purchase or balance top-up order"""
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    # NULL product means a pure balance top-up
    product_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('products.id'), nullable=True, index=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    payment_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # remaining payable via gateway

    status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING.value, nullable=False)

    # Gateway correlation
    epay_trade_no: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    epay_out_trade_no: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)

    # Delivery retry tracking
    delivery_retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    last_delivery_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="orders")
    product: Mapped[Optional["Product"]] = relationship("Product")

    @property
    def is_topup(self) -> bool:
        return self.product_id is None

    __table_args__ = (
        CheckConstraint(f"status IN ({_enum_values(OrderStatus)})", name='ck_order_status_valid'),
        CheckConstraint('amount_cents > 0', name='ck_order_amount_positive'),
        CheckConstraint('balance_used >= 0', name='ck_order_balance_used_non_negative'),
        CheckConstraint('payment_amount >= 0', name='ck_order_payment_non_negative'),
        CheckConstraint('amount_cents = balance_used + payment_amount', name='ck_order_amount_split'),
        Index('ix_orders_status_created', 'status', 'created_at'),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, user_id={self.user_id}, status={self.status})>"


class RechargeCard(Base):
    """Pre-generated code redeemable for a fixed balance credit"""
    __tablename__ = 'recharge_cards'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    # 0 means unlimited
    max_uses: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_uses_per_user: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), server_default=func.now(), nullable=False)

    usages: Mapped[list["RechargeCardUsage"]] = relationship("RechargeCardUsage", back_populates="card")

    @property
    def is_fully_used(self) -> bool:
        return self.max_uses > 0 and self.used_count >= self.max_uses

    __table_args__ = (
        CheckConstraint('amount_cents > 0', name='ck_card_amount_positive'),
        CheckConstraint('max_uses >= 0', name='ck_card_max_uses_non_negative'),
        CheckConstraint('max_uses_per_user >= 0', name='ck_card_max_uses_per_user_non_negative'),
        CheckConstraint('max_uses = 0 OR used_count <= max_uses', name='ck_card_used_within_cap'),
    )


class RechargeCardUsage(Base):
    """Per-user redemption counter for a recharge card"""
    __tablename__ = 'recharge_card_usages'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recharge_card_id: Mapped[int] = mapped_column(Integer, ForeignKey('recharge_cards.id'), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    use_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    card: Mapped["RechargeCard"] = relationship("RechargeCard", back_populates="usages")
    user: Mapped["User"] = relationship("User")

    __table_args__ = (
        UniqueConstraint('recharge_card_id', 'user_id', name='uq_card_usage_card_user'),
    )


class BalanceTransaction(Base):
    """Append-only balance ledger; never updated or deleted"""
    __tablename__ = 'balance_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)  # signed
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    recharge_card_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('recharge_cards.id'), nullable=True)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('orders.id'), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="balance_transactions")
    recharge_card: Mapped[Optional["RechargeCard"]] = relationship("RechargeCard")
    order: Mapped[Optional["Order"]] = relationship("Order")

    __table_args__ = (
        CheckConstraint(f"transaction_type IN ({_enum_values(BalanceTransactionType)})", name='ck_balance_tx_type_valid'),
        CheckConstraint('amount_cents <> 0', name='ck_balance_tx_amount_non_zero'),
        CheckConstraint('balance_after >= 0', name='ck_balance_tx_snapshot_non_negative'),
        Index('ix_balance_transactions_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<BalanceTransaction(user_id={self.user_id}, type={self.transaction_type}, "
            f"amount_cents={self.amount_cents}, balance_after={self.balance_after})>"
        )
