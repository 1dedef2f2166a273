"""Inbound payment gateway notifications.

The provider pushes a signed event when a link is paid. The event only
triggers ``confirm_with_gateway``, which re-checks the link status with the
gateway before completing anything, so a replayed or stale event is harmless.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from engine import Engine
from errors import GatewayError, InvalidStateError, PaymentPendingError

from ..dependencies import get_engine

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"]
)

def _ack(desc: str, **extra) -> Dict[str, Any]:
    return {"code": "00", "desc": desc, "success": True, **extra}

@router.post("/payos")
async def payos_webhook(
    payload: Dict[str, Any] = Body(...),
    engine: Engine = Depends(get_engine)
):
    """Handle a PayOS payment notification.

    Unknown links and unpaid events are acknowledged and ignored so the
    provider stops retrying them. Transport failures while re-checking the
    link answer 503 so the provider retries later.
    """
    try:
        event = engine.gateway.verify_webhook(payload)
    except GatewayError as e:
        logger.warning(f"Rejected webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    if not event.success:
        logger.info(f"Ignoring unsuccessful webhook for link {event.link_id}")
        return _ack("ignored")

    link = await engine.store.get_payment_link(event.link_id)
    if not link:
        logger.warning(f"Webhook for unknown payment link {event.link_id}")
        return _ack("unknown link")

    try:
        transaction = await engine.transactions.confirm_with_gateway(
            link['transaction_id'], event.link_id
        )
    except PaymentPendingError:
        logger.warning(f"Webhook for link {event.link_id} but gateway still reports pending")
        return _ack("pending")
    except InvalidStateError as e:
        logger.info(f"Webhook for link {event.link_id} ignored: {e}")
        return _ack("already processed", status=e.current_status)
    except GatewayError as e:
        if e.retryable:
            raise
        logger.info(f"Webhook for link {event.link_id} ignored: {e}")
        return _ack("link closed", status=e.gateway_status)

    logger.info(f"Webhook completed transaction {transaction['id']}")
    return _ack("completed", transaction_id=str(transaction['id']))
