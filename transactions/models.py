from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (TransactionStatus.COMPLETED.value, TransactionStatus.CANCELLED.value)


class ConfirmedBy(str, Enum):
    GATEWAY = "gateway"
    BUYER = "buyer"


class Transaction(BaseModel):
    id: UUID
    conversation_id: UUID
    item_id: str
    seller_id: str
    buyer_id: str
    code: Optional[str] = None
    amount: Decimal
    status: TransactionStatus
    payment_method: str
    proof_url: Optional[str] = None
    external_link_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    confirmed_by: Optional[ConfirmedBy] = None


class StoredPaymentLink(BaseModel):
    link_id: str
    transaction_id: UUID
    url: str
    qr_payload: Optional[str] = None
    status: str
    amount: Decimal
    order_code: int
    expires_at: Optional[datetime] = None
    created_at: datetime


class TransactionCreate(BaseModel):
    amount: Decimal = Field(ge=0)
    payment_method: str = "bank_transfer"


class ManualConfirmation(BaseModel):
    proof_url: Optional[str] = None


class GatewayConfirmation(BaseModel):
    link_id: str
