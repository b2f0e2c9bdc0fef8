"""
Commerce error taxonomy

Every failure the commerce core reports carries a CommerceErrorKind. Business
outcomes (no stock, insufficient balance, card limits) are returned to the
caller for UI handling; fraud signals (amount mismatch, bad signature) are
logged and leave the order pending; transient store errors are retried by the
transaction boundary or surfaced so the gateway retries.
"""

from enum import Enum
from typing import Any, Dict, Optional


class CommerceErrorKind(Enum):
    NO_STOCK = "no_stock"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    CARD_NOT_FOUND = "card_not_found"
    CARD_ALREADY_USED = "card_already_used"
    CARD_EXPIRED = "card_expired"
    CARD_MAX_USES_REACHED = "card_max_uses_reached"
    CARD_MAX_USES_PER_USER_REACHED = "card_max_uses_per_user_reached"
    ORDER_NOT_FOUND = "order_not_found"
    AMOUNT_MISMATCH = "amount_mismatch"
    DUPLICATE_CALLBACK = "duplicate_callback"  # reported as an outcome, never raised
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_ORDER_STATE = "invalid_order_state"
    TRANSIENT_STORE_ERROR = "transient_store_error"


BUSINESS_ERROR_KINDS = frozenset({
    CommerceErrorKind.NO_STOCK,
    CommerceErrorKind.INSUFFICIENT_BALANCE,
    CommerceErrorKind.CARD_NOT_FOUND,
    CommerceErrorKind.CARD_ALREADY_USED,
    CommerceErrorKind.CARD_EXPIRED,
    CommerceErrorKind.CARD_MAX_USES_REACHED,
    CommerceErrorKind.CARD_MAX_USES_PER_USER_REACHED,
    CommerceErrorKind.ORDER_NOT_FOUND,
})

FRAUD_SIGNAL_KINDS = frozenset({
    CommerceErrorKind.AMOUNT_MISMATCH,
    CommerceErrorKind.INVALID_SIGNATURE,
})


def is_business_error(kind: CommerceErrorKind) -> bool:
    return kind in BUSINESS_ERROR_KINDS


def is_fraud_signal(kind: CommerceErrorKind) -> bool:
    return kind in FRAUD_SIGNAL_KINDS


class CommerceError(Exception):
    """Base exception for commerce core failures"""

    kind: CommerceErrorKind = CommerceErrorKind.TRANSIENT_STORE_ERROR
    is_retryable: bool = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        super().__init__(message or self.kind.value.replace("_", " "))
        self.context: Dict[str, Any] = context

    def __repr__(self):
        return f"<{type(self).__name__}(kind={self.kind.value}, context={self.context})>"


class NoStockError(CommerceError):
    kind = CommerceErrorKind.NO_STOCK


class InsufficientBalanceError(CommerceError):
    kind = CommerceErrorKind.INSUFFICIENT_BALANCE


class CardNotFoundError(CommerceError):
    kind = CommerceErrorKind.CARD_NOT_FOUND


class CardExpiredError(CommerceError):
    kind = CommerceErrorKind.CARD_EXPIRED


class CardMaxUsesReachedError(CommerceError):
    kind = CommerceErrorKind.CARD_MAX_USES_REACHED


class CardAlreadyUsedError(CardMaxUsesReachedError):
    """Single-use card that has already been redeemed"""
    kind = CommerceErrorKind.CARD_ALREADY_USED


class CardMaxUsesPerUserReachedError(CommerceError):
    kind = CommerceErrorKind.CARD_MAX_USES_PER_USER_REACHED


class OrderNotFoundError(CommerceError):
    kind = CommerceErrorKind.ORDER_NOT_FOUND


class AmountMismatchError(CommerceError):
    kind = CommerceErrorKind.AMOUNT_MISMATCH


class InvalidSignatureError(CommerceError):
    kind = CommerceErrorKind.INVALID_SIGNATURE


class InvalidOrderStateError(CommerceError):
    kind = CommerceErrorKind.INVALID_ORDER_STATE


class TransientStoreError(CommerceError):
    """Lock timeout, deadlock or lost connection after retries were exhausted"""
    kind = CommerceErrorKind.TRANSIENT_STORE_ERROR
    is_retryable = True


# End-user messages, keyed by kind then language
_USER_MESSAGES: Dict[CommerceErrorKind, Dict[str, str]] = {
    CommerceErrorKind.NO_STOCK: {
        "en": "Sorry, this product is temporarily out of stock. Your payment is safe; please contact support or wait for restock.",
        "zh": "抱歉，商品暂时缺货。您的付款已保留，请联系客服或等待补货。",
    },
    CommerceErrorKind.INSUFFICIENT_BALANCE: {
        "en": "Insufficient balance.",
        "zh": "余额不足。",
    },
    CommerceErrorKind.CARD_NOT_FOUND: {
        "en": "Recharge card not found. Please check the code and try again.",
        "zh": "充值卡不存在，请检查卡密后重试。",
    },
    CommerceErrorKind.CARD_ALREADY_USED: {
        "en": "This recharge card has already been used.",
        "zh": "该充值卡已被使用。",
    },
    CommerceErrorKind.CARD_EXPIRED: {
        "en": "This recharge card has expired.",
        "zh": "该充值卡已过期。",
    },
    CommerceErrorKind.CARD_MAX_USES_REACHED: {
        "en": "This recharge card has reached its maximum number of uses.",
        "zh": "该充值卡已达到最大使用次数。",
    },
    CommerceErrorKind.CARD_MAX_USES_PER_USER_REACHED: {
        "en": "You have reached the maximum uses for this card.",
        "zh": "您已达到该充值卡的使用上限。",
    },
    CommerceErrorKind.ORDER_NOT_FOUND: {
        "en": "Order not found.",
        "zh": "订单不存在。",
    },
}

_GENERIC_MESSAGE = {
    "en": "Something went wrong. Please try again later.",
    "zh": "处理失败，请稍后重试。",
}


def user_message(kind: CommerceErrorKind, language: Optional[str] = "en") -> str:
    """Localized end-user text for a kind; fraud and store errors get the generic text"""
    lang = (language or "en").split("-")[0].lower()
    messages = _USER_MESSAGES.get(kind, _GENERIC_MESSAGE)
    return messages.get(lang, messages["en"])
