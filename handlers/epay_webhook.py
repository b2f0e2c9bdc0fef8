"""
EPay Webhook Handler - asynchronous payment notifications

The gateway calls back with GET query parameters or a form-encoded POST and
keeps retrying until it reads the plain-text body ``success``. Anything that
must be retried later (store trouble) or must never be acknowledged (bad
signature, wrong amount, unknown order) answers ``fail``.
"""

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from services.order_service import confirm_payment
from utils.commerce_errors import CommerceError

logger = logging.getLogger(__name__)

# Create FastAPI router
router = APIRouter()

ACK = "success"
NACK = "fail"


async def _parse_epay_params(request: Request) -> Dict[str, Any]:
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        form_data = await request.form()
        params.update({k: v for k, v in form_data.items() if isinstance(v, str)})
    return params


@router.api_route("/payment/epay/notify", methods=["GET", "POST"], response_class=PlainTextResponse)
async def epay_notify(request: Request):
    """Gateway payment callback: verify, confirm, acknowledge"""
    try:
        params = await _parse_epay_params(request)
    except Exception as e:
        logger.error(f"❌ EPAY_PARSE: could not read callback parameters: {e}")
        return PlainTextResponse(NACK)

    out_trade_no = params.get("out_trade_no")
    logger.info(f"📥 EPAY_WEBHOOK: {request.method} out_trade_no={out_trade_no} trade_status={params.get('trade_status')}")

    try:
        result = await asyncio.to_thread(confirm_payment, params)
    except CommerceError as e:
        logger.warning(f"⚠️ EPAY_REJECTED: out_trade_no={out_trade_no} kind={e.kind.value}")
        return PlainTextResponse(NACK)
    except Exception as e:
        logger.error(f"❌ EPAY_WEBHOOK_ERROR: out_trade_no={out_trade_no}: {e}", exc_info=True)
        return PlainTextResponse(NACK)

    logger.info(f"✅ EPAY_ACK: out_trade_no={out_trade_no} outcome={result.outcome.value} order={result.order_id}")
    return PlainTextResponse(ACK)
