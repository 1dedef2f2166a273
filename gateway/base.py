"""Payment gateway boundary.

A gateway issues payment links for transactions, reports their status and
cancels them. Every call is a single bounded request: transport failures and
timeouts raise a retryable ``GatewayError``, provider-side rejections raise a
terminal one. Gateways never touch local transaction state.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel

from errors import GatewayError

class LinkStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

class PaymentLink(BaseModel):
    """A payable resource issued by the gateway."""
    link_id: str
    url: str
    qr_payload: Optional[str] = None
    status: LinkStatus = LinkStatus.PENDING
    amount: Decimal
    order_code: int
    expires_at: Optional[datetime] = None

class WebhookEvent(BaseModel):
    """A verified push notification from the gateway."""
    link_id: str
    order_code: Optional[int] = None
    amount: Optional[Decimal] = None
    success: bool
    data: Dict[str, Any] = {}

def order_code_for(transaction_id: UUID, attempt: int) -> int:
    """Deterministic positive order code for a transaction's n-th link.

    Retrying the same attempt yields the same code, so a provider that
    deduplicates by order code never mints a second link for it.
    """
    return (transaction_id.int % 10 ** 12) * 100 + attempt % 100 + 1

class PaymentGateway:
    """Interface implemented by concrete payment providers."""

    name = 'base'

    async def create_link(
        self,
        transaction_id: UUID,
        amount: Decimal,
        metadata: Dict[str, Any]
    ) -> PaymentLink:
        """Create a payment link.

        ``metadata`` carries ``order_code`` and ``description`` and may carry
        ``item_name`` and ``code``.
        """
        raise NotImplementedError

    async def get_link_status(self, link_id: str) -> LinkStatus:
        raise NotImplementedError

    async def cancel_link(self, link_id: str, reason: Optional[str] = None) -> None:
        raise NotImplementedError

    def verify_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Validate an inbound webhook body and extract the event.

        Raises:
            GatewayError: If the gateway has no push channel or the signature is bad
        """
        raise GatewayError(
            f"Gateway {self.name} does not accept webhooks",
            retryable=False
        )

    async def close(self) -> None:
        pass
