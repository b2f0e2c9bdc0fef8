"""
EPay gateway boundary - MD5 request signing, callback verification and parsing

The gateway signs callbacks over the sorted ``key=value`` pairs of every
non-empty parameter except ``sign`` / ``sign_type``, joined with ``&`` and
followed directly by the merchant key.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

from config import Config

logger = logging.getLogger(__name__)

TRADE_SUCCESS = "TRADE_SUCCESS"
EXCLUDED_SIGN_FIELDS = ("sign", "sign_type")
AMOUNT_PATTERN = re.compile(r"\d+(\.\d{1,2})?", re.ASCII)


def amount_to_cents(money: Any) -> int:
    """Convert a two-decimal major-unit amount string ("12.30") to integer cents"""
    text = str(money).strip()
    if not AMOUNT_PATTERN.fullmatch(text):
        raise ValueError(f"Invalid amount: {money!r}")
    return int(Decimal(text) * 100)


def cents_to_amount(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"


@dataclass
class EpayNotification:
    out_trade_no: str
    trade_no: str
    money: str
    trade_status: str
    payment_type: Optional[str] = None
    name: Optional[str] = None
    param: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.trade_status == TRADE_SUCCESS

    @property
    def amount_cents(self) -> int:
        return amount_to_cents(self.money)


class EpayService:
    """Merchant-side EPay client"""

    def __init__(self, pid: Optional[str] = None, key: Optional[str] = None, gateway: Optional[str] = None):
        self.pid = pid if pid is not None else Config.EPAY_PID
        self.key = key if key is not None else Config.EPAY_KEY
        self.gateway = (gateway if gateway is not None else Config.EPAY_GATEWAY).rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.pid and self.key and self.gateway)

    def generate_sign(self, params: Mapping[str, Any]) -> str:
        pairs = sorted(
            (str(k), str(v)) for k, v in params.items()
            if k not in EXCLUDED_SIGN_FIELDS and v is not None and str(v) != ""
        )
        payload = "&".join(f"{k}={v}" for k, v in pairs) + self.key
        return hashlib.md5(payload.encode("utf-8")).hexdigest()

    def verify_signature(self, params: Mapping[str, Any]) -> bool:
        """Constant-time check of the callback's ``sign`` parameter"""
        received = str(params.get("sign") or "")
        if not received or not self.key:
            return False
        expected = self.generate_sign(params)
        return hmac.compare_digest(expected, received.lower())

    def parse_notification(self, params: Mapping[str, Any]) -> EpayNotification:
        def field(name: str) -> str:
            return str(params.get(name) or "").strip()

        return EpayNotification(
            out_trade_no=field("out_trade_no"),
            trade_no=field("trade_no"),
            money=field("money"),
            trade_status=field("trade_status"),
            payment_type=field("type") or None,
            name=field("name") or None,
            param=field("param") or None,
        )

    def build_submit_url(
        self,
        out_trade_no: str,
        name: str,
        amount_cents: int,
        notify_url: Optional[str] = None,
        return_url: Optional[str] = None,
        payment_type: Optional[str] = None,
    ) -> str:
        """Signed checkout link the bot hands to the user"""
        params: Dict[str, str] = {
            "pid": self.pid,
            "out_trade_no": out_trade_no,
            "notify_url": notify_url or f"{Config.BASE_URL}/payment/epay/notify",
            "return_url": return_url or f"{Config.BASE_URL}/payment/return",
            "name": name.encode("utf-8")[:127].decode("utf-8", "ignore"),
            "money": cents_to_amount(amount_cents),
        }
        if payment_type:
            params["type"] = payment_type
        params["sign"] = self.generate_sign(params)
        params["sign_type"] = "MD5"
        return f"{self.gateway}/submit.php?{urlencode(params)}"


# Global instance
epay_service = EpayService()
