"""PayOS payment gateway client.

Talks to the PayOS merchant API:

- ``POST /v2/payment-requests`` creates a link (signed with the checksum key)
- ``GET /v2/payment-requests/{id}`` reads its status
- ``POST /v2/payment-requests/{id}/cancel`` cancels it

Requests go through a ``requests.Session`` on the default executor so the
event loop never blocks on the network.
"""
import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import partial
from typing import Any, Dict, Optional
from uuid import UUID

import requests

from errors import GatewayError, ValidationError
from .base import LinkStatus, PaymentGateway, PaymentLink, WebhookEvent
from . import signing

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 25

SUCCESS_CODE = '00'
ORDER_EXISTS_CODE = '231'

STATUS_MAP = {
    'PAID': LinkStatus.PAID,
    'PENDING': LinkStatus.PENDING,
    'PROCESSING': LinkStatus.PENDING,
    'UNDERPAID': LinkStatus.PENDING,
    'CANCELLED': LinkStatus.CANCELLED,
    'EXPIRED': LinkStatus.EXPIRED
}

def clean_description(description: str) -> str:
    """Strip characters the provider rejects and cap the length."""
    description = re.sub(r'[^\w\s\-.,:;()]', '', description, flags=re.ASCII)
    description = ' '.join(description.split())
    return description[:MAX_DESCRIPTION_LENGTH].strip()

class PayOSError(GatewayError):
    """PayOS answered with a non-success code."""
    def __init__(self, message: str, code: Optional[str] = None, retryable: bool = False):
        self.code = code
        super().__init__(
            f"PayOS error [{code}]: {message}" if code else message,
            retryable=retryable
        )

class PayOSGateway(PaymentGateway):
    """PayOS merchant API client."""

    name = 'payos'

    def __init__(
        self,
        client_id: str,
        api_key: str,
        checksum_key: str,
        base_url: str = 'https://api-merchant.payos.vn',
        return_url: str = 'dealroom://payment-success',
        cancel_url: str = 'dealroom://payment-cancel',
        timeout: int = 10,
        link_ttl_minutes: int = 15,
        min_amount: int = 1000,
        session: Optional[requests.Session] = None
    ) -> None:
        self.checksum_key = checksum_key
        self.base_url = base_url.rstrip('/')
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.timeout = timeout
        self.link_ttl = timedelta(minutes=link_ttl_minutes)
        self.min_amount = min_amount

        self.session = session or requests.Session()
        self.session.headers.update({
            'x-client-id': client_id,
            'x-api-key': api_key,
            'content-type': 'application/json',
            'accept': 'application/json'
        })

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make a single PayOS call.

        Returns:
            The response envelope (``code``, ``desc``, ``data``)

        Raises:
            GatewayError: Retryable on timeout, transport failure or 5xx
            PayOSError: On an error envelope
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=body, timeout=self.timeout)

            if response.status_code >= 500:
                raise GatewayError(
                    f"PayOS returned HTTP {response.status_code}",
                    retryable=True
                )
            if response.status_code in (401, 403):
                raise PayOSError("Authentication failed - check client id/api key")

            result = response.json()

        except requests.exceptions.Timeout as e:
            raise GatewayError(
                f"PayOS request timed out after {self.timeout} seconds",
                retryable=True
            ) from e
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"PayOS request failed: {str(e)}", retryable=True) from e
        except ValueError as e:
            raise GatewayError(f"Invalid PayOS response: {str(e)}", retryable=True) from e

        code = str(result.get('code'))
        if code != SUCCESS_CODE:
            raise PayOSError(result.get('desc') or 'Unknown error', code)
        return result

    async def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self._request, method, path, body))

    def _amount(self, amount: Decimal) -> int:
        value = int(Decimal(amount).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
        if value < self.min_amount:
            raise ValidationError(
                f"Amount {value} is below the gateway minimum of {self.min_amount}"
            )
        return value

    def _link_from_data(self, data: Dict[str, Any], amount: Decimal, order_code: int) -> PaymentLink:
        expires_at = None
        if data.get('expiredAt'):
            expires_at = datetime.fromtimestamp(int(data['expiredAt']), tz=timezone.utc)
        return PaymentLink(
            link_id=data.get('paymentLinkId') or data['id'],
            url=data.get('checkoutUrl') or f"https://pay.payos.vn/web/{data.get('paymentLinkId') or data['id']}",
            qr_payload=data.get('qrCode'),
            status=STATUS_MAP.get(str(data.get('status', 'PENDING')).upper(), LinkStatus.PENDING),
            amount=Decimal(data.get('amount', amount)),
            order_code=int(data.get('orderCode', order_code)),
            expires_at=expires_at
        )

    async def create_link(
        self,
        transaction_id: UUID,
        amount: Decimal,
        metadata: Dict[str, Any]
    ) -> PaymentLink:
        order_code = int(metadata['order_code'])
        value = self._amount(amount)
        description = clean_description(metadata.get('description') or f"Payment {order_code}")
        expires_at = datetime.now(timezone.utc) + self.link_ttl

        body = {
            'orderCode': order_code,
            'amount': value,
            'description': description,
            'items': [{
                'name': metadata.get('item_name') or description,
                'quantity': 1,
                'price': value
            }],
            'cancelUrl': self.cancel_url,
            'returnUrl': self.return_url,
            'expiredAt': int(expires_at.timestamp())
        }
        body['signature'] = signing.sign(body, self.checksum_key, signing.PAYMENT_REQUEST_FIELDS)

        logger.info(
            f"Creating PayOS payment link for transaction {transaction_id} "
            f"(order {order_code}, amount {value})"
        )
        try:
            result = await self._call('POST', '/v2/payment-requests', body)
        except PayOSError as e:
            if e.code != ORDER_EXISTS_CODE:
                raise
            # An earlier attempt reached PayOS; reuse that link
            logger.info(f"Order {order_code} already exists at PayOS, fetching it")
            result = await self._call('GET', f'/v2/payment-requests/{order_code}')

        link = self._link_from_data(result['data'], Decimal(value), order_code)
        if link.expires_at is None:
            link.expires_at = expires_at
        return link

    async def get_link_status(self, link_id: str) -> LinkStatus:
        result = await self._call('GET', f'/v2/payment-requests/{link_id}')
        raw_status = str(result['data'].get('status', '')).upper()
        status = STATUS_MAP.get(raw_status)
        if status is None:
            raise GatewayError(f"Unknown PayOS status {raw_status} for link {link_id}")
        logger.debug(f"PayOS link {link_id} status {raw_status}")
        return status

    async def cancel_link(self, link_id: str, reason: Optional[str] = None) -> None:
        body = {'cancellationReason': reason} if reason else None
        await self._call('POST', f'/v2/payment-requests/{link_id}/cancel', body)
        logger.info(f"Cancelled PayOS link {link_id}")

    def verify_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        data = payload.get('data')
        if not isinstance(data, dict):
            raise GatewayError("Webhook payload has no data", retryable=False)
        if not signing.verify(data, payload.get('signature', ''), self.checksum_key):
            raise GatewayError("Invalid webhook signature", retryable=False)
        if not data.get('paymentLinkId'):
            raise GatewayError("Webhook data has no paymentLinkId", retryable=False)

        return WebhookEvent(
            link_id=data['paymentLinkId'],
            order_code=data.get('orderCode'),
            amount=data.get('amount'),
            success=str(data.get('code', payload.get('code'))) == SUCCESS_CODE,
            data=data
        )

    async def close(self) -> None:
        self.session.close()
