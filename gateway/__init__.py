"""Payment gateway adapters."""
import logging
from typing import Any, Dict

from .base import LinkStatus, PaymentGateway, PaymentLink, WebhookEvent, order_code_for
from .payos import PayOSGateway, PayOSError, clean_description
from .sandbox import SandboxGateway

logger = logging.getLogger(__name__)

def get_gateway(settings: Dict[str, Any]) -> PaymentGateway:
    """Build the gateway selected by the ``gateway`` setting."""
    if settings['gateway'] == 'payos':
        logger.info(f"Using PayOS gateway at {settings['payos_base_url']}")
        return PayOSGateway(
            client_id=settings['payos_client_id'],
            api_key=settings['payos_api_key'],
            checksum_key=settings['payos_checksum_key'],
            base_url=settings['payos_base_url'],
            return_url=settings['payos_return_url'],
            cancel_url=settings['payos_cancel_url'],
            timeout=settings['gateway_timeout'],
            link_ttl_minutes=settings['payment_link_ttl_minutes'],
            min_amount=settings['min_payment_amount']
        )

    logger.warning("Using sandbox payment gateway - no real payments will be taken")
    return SandboxGateway(
        checksum_key=settings.get('payos_checksum_key') or 'sandbox',
        link_ttl_minutes=settings['payment_link_ttl_minutes'],
        min_amount=settings['min_payment_amount']
    )

__all__ = [
    'PaymentGateway',
    'PaymentLink',
    'LinkStatus',
    'WebhookEvent',
    'PayOSGateway',
    'PayOSError',
    'SandboxGateway',
    'clean_description',
    'order_code_for',
    'get_gateway'
]
