"""In-process payment gateway for local runs and tests.

Links live in memory. ``mark_paid``, ``expire`` and ``cancel`` play the part of
the payer and the provider; ``offline`` simulates an unreachable gateway.
Links are keyed by order code, so re-creating a link for the same order code
returns the existing one the way a real provider deduplicates.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from errors import GatewayError, ValidationError
from .base import LinkStatus, PaymentGateway, PaymentLink, WebhookEvent
from . import signing

logger = logging.getLogger(__name__)

class SandboxGateway(PaymentGateway):
    name = 'sandbox'

    def __init__(
        self,
        checksum_key: str = 'sandbox',
        link_ttl_minutes: int = 15,
        min_amount: int = 1,
        latency: float = 0
    ) -> None:
        self.checksum_key = checksum_key
        self.link_ttl = timedelta(minutes=link_ttl_minutes)
        self.min_amount = min_amount
        self.latency = latency
        self.offline = False
        self.links: Dict[str, PaymentLink] = {}
        self._by_order_code: Dict[int, str] = {}
        self.calls: Dict[str, int] = {'create_link': 0, 'get_link_status': 0, 'cancel_link': 0}

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.offline:
            raise GatewayError(f"Sandbox gateway offline during {operation}", retryable=True)

    def _get(self, link_id: str) -> PaymentLink:
        link = self.links.get(link_id)
        if link is None:
            raise GatewayError(f"Unknown payment link {link_id}", retryable=False)
        if (link.status == LinkStatus.PENDING and link.expires_at
                and link.expires_at <= datetime.now(timezone.utc)):
            link.status = LinkStatus.EXPIRED
        return link

    async def create_link(
        self,
        transaction_id: UUID,
        amount: Decimal,
        metadata: Dict[str, Any]
    ) -> PaymentLink:
        await self._enter('create_link')
        if amount < self.min_amount:
            raise ValidationError(
                f"Amount {amount} is below the gateway minimum of {self.min_amount}"
            )

        order_code = int(metadata['order_code'])
        existing = self._by_order_code.get(order_code)
        if existing:
            return self._get(existing).model_copy()

        link_id = f"sbx_{uuid.uuid4().hex}"
        link = PaymentLink(
            link_id=link_id,
            url=f"https://sandbox.dealroom.local/pay/{link_id}",
            qr_payload=f"SANDBOX|{order_code}|{amount}|{metadata.get('description', '')}",
            amount=Decimal(amount),
            order_code=order_code,
            expires_at=datetime.now(timezone.utc) + self.link_ttl
        )
        self.links[link_id] = link
        self._by_order_code[order_code] = link_id
        logger.info(f"Sandbox link {link_id} created for transaction {transaction_id}")
        return link.model_copy()

    async def get_link_status(self, link_id: str) -> LinkStatus:
        await self._enter('get_link_status')
        return self._get(link_id).status

    async def cancel_link(self, link_id: str, reason: Optional[str] = None) -> None:
        await self._enter('cancel_link')
        link = self._get(link_id)
        if link.status == LinkStatus.PAID:
            raise GatewayError(f"Link {link_id} is already paid", retryable=False)
        link.status = LinkStatus.CANCELLED

    # Payer/provider side

    def mark_paid(self, link_id: str) -> None:
        self._get(link_id).status = LinkStatus.PAID

    def expire(self, link_id: str) -> None:
        self._get(link_id).status = LinkStatus.EXPIRED

    def cancel(self, link_id: str) -> None:
        self._get(link_id).status = LinkStatus.CANCELLED

    def webhook_payload(self, link_id: str) -> Dict[str, Any]:
        """Build the signed push notification the provider would send for a link."""
        link = self._get(link_id)
        data = {
            'orderCode': link.order_code,
            'amount': int(link.amount),
            'description': 'sandbox payment',
            'paymentLinkId': link.link_id,
            'code': '00' if link.status == LinkStatus.PAID else '01',
            'desc': 'success' if link.status == LinkStatus.PAID else 'not paid'
        }
        return {
            'code': '00',
            'desc': 'success',
            'success': True,
            'data': data,
            'signature': signing.sign(data, self.checksum_key)
        }

    def verify_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        data = payload.get('data')
        if not isinstance(data, dict):
            raise GatewayError("Webhook payload has no data", retryable=False)
        if not signing.verify(data, payload.get('signature', ''), self.checksum_key):
            raise GatewayError("Invalid webhook signature", retryable=False)
        return WebhookEvent(
            link_id=data['paymentLinkId'],
            order_code=data.get('orderCode'),
            amount=data.get('amount'),
            success=data.get('code') == '00',
            data=data
        )
