"""
Financial Audit Logger
Structured audit trail for every balance, order and payment state change
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated channel so operators can route audit records to their own handler
audit_logger = logging.getLogger("financial_audit")


class FinancialEventType(Enum):
    """Types of financial events for comprehensive tracking"""

    # Balance ledger
    BALANCE_CREDIT = "balance_credit"
    BALANCE_DEBIT = "balance_debit"
    BALANCE_REFUND = "balance_refund"
    BALANCE_MISMATCH = "balance_mismatch"

    # Orders
    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    ORDER_DELIVERED = "order_delivered"
    ORDER_NO_STOCK = "order_no_stock"
    ORDER_DELIVERY_FAILED = "order_delivery_failed"
    ORDER_DELIVERY_FAILED_PERMANENT = "order_delivery_failed_permanent"
    ORDER_EXPIRED = "order_expired"
    ORDER_REFUNDED = "order_refunded"

    # Recharge cards
    CARD_REDEEMED = "card_redeemed"
    CARD_REJECTED = "card_rejected"

    # Gateway callbacks
    WEBHOOK_PAYMENT_CONFIRMED = "webhook_payment_confirmed"
    WEBHOOK_DUPLICATE_DETECTED = "webhook_duplicate_detected"
    WEBHOOK_SIGNATURE_FAILED = "webhook_signature_failed"
    WEBHOOK_AMOUNT_MISMATCH = "webhook_amount_mismatch"
    WEBHOOK_UNMATCHED = "webhook_unmatched"


class EntityType(Enum):
    """Entity types for financial tracking"""
    USER = "user"
    ORDER = "order"
    RECHARGE_CARD = "recharge_card"
    BALANCE_TRANSACTION = "balance_transaction"
    WEBHOOK_EVENT = "webhook_event"


@dataclass
class FinancialContext:
    """Financial context for audit events (integer cents)"""
    amount_cents: Optional[int] = None
    expected_cents: Optional[int] = None
    balance_before: Optional[int] = None
    balance_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


class FinancialAuditLogger:
    """
    Emits one JSON audit record per financial event on the ``financial_audit``
    logger. Records are written by the caller after the state change is known;
    nothing here touches the database.
    """

    SENSITIVE_FIELDS = {'key', 'secret', 'password', 'token', 'sign'}

    def _sanitize_event_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = {}
        for key, value in data.items():
            key_str = str(key)
            if key_str.lower() in self.SENSITIVE_FIELDS:
                sanitized[key_str] = '[REDACTED]'
            else:
                sanitized[key_str] = self._sanitize_value(value)
        return sanitized

    def _sanitize_value(self, value: Any) -> Any:
        if value is None or isinstance(value, (int, float, bool, str)):
            return value
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return self._sanitize_event_data(value)
        if isinstance(value, (list, tuple)):
            return [self._sanitize_value(item) for item in list(value)[:10]]
        return str(value)

    def log_financial_event(
        self,
        event_type: FinancialEventType,
        entity_type: EntityType,
        entity_id: Any,
        user_id: Optional[int] = None,
        financial_context: Optional[FinancialContext] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        related_entities: Optional[Dict[str, Any]] = None,
        additional_data: Optional[Dict[str, Any]] = None,
        level: int = logging.INFO,
    ) -> str:
        """
        Log a financial event as a single structured record

        Returns:
            Event ID for correlation
        """
        event_id = str(uuid.uuid4())
        record: Dict[str, Any] = {
            'event_id': event_id,
            'event_type': event_type.value,
            'entity_type': entity_type.value,
            'entity_id': str(entity_id),
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        if user_id is not None:
            record['user_id'] = user_id
        if previous_state is not None or new_state is not None:
            record['previous_state'] = previous_state
            record['new_state'] = new_state
        if financial_context:
            record.update(financial_context.to_dict())
        if related_entities:
            record['related'] = self._sanitize_event_data(related_entities)
        if additional_data:
            record['data'] = self._sanitize_event_data(additional_data)

        try:
            audit_logger.log(level, json.dumps(record, ensure_ascii=False, sort_keys=True))
        except (TypeError, ValueError) as e:
            # Never let audit serialization break the financial operation itself
            logger.error(f"❌ AUDIT_SERIALIZATION_FAILED: {event_type.value} {entity_id}: {e}")
        return event_id

    def log_balance_event(
        self,
        event_type: FinancialEventType,
        user_id: int,
        amount_cents: int,
        balance_before: int,
        balance_after: int,
        transaction_id: Optional[int] = None,
        level: int = logging.INFO,
        **kwargs
    ) -> str:
        """Convenience method for ledger rows"""
        return self.log_financial_event(
            event_type=event_type,
            entity_type=EntityType.USER,
            entity_id=user_id,
            user_id=user_id,
            financial_context=FinancialContext(
                amount_cents=amount_cents,
                balance_before=balance_before,
                balance_after=balance_after,
            ),
            related_entities={'balance_transaction_id': transaction_id} if transaction_id else None,
            additional_data=kwargs,
            level=level,
        )

    def log_order_event(
        self,
        event_type: FinancialEventType,
        order_id: int,
        user_id: Optional[int] = None,
        amount_cents: Optional[int] = None,
        previous_state: Optional[str] = None,
        new_state: Optional[str] = None,
        level: int = logging.INFO,
        **kwargs
    ) -> str:
        """Convenience method for order state changes"""
        return self.log_financial_event(
            event_type=event_type,
            entity_type=EntityType.ORDER,
            entity_id=order_id,
            user_id=user_id,
            financial_context=FinancialContext(amount_cents=amount_cents) if amount_cents is not None else None,
            previous_state=previous_state,
            new_state=new_state,
            additional_data=kwargs,
            level=level,
        )

    def log_webhook_event(
        self,
        event_type: FinancialEventType,
        out_trade_no: str,
        level: int = logging.INFO,
        **kwargs
    ) -> str:
        """Convenience method for gateway callbacks"""
        return self.log_financial_event(
            event_type=event_type,
            entity_type=EntityType.WEBHOOK_EVENT,
            entity_id=out_trade_no,
            additional_data=kwargs,
            level=level,
        )


# Global instance
financial_audit_logger = FinancialAuditLogger()
