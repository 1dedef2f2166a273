"""Transaction endpoints: payment links, confirmation and cancellation."""

from uuid import UUID

from fastapi import APIRouter, Depends

from auth import get_current_user
from engine import Engine
from errors import NotFoundError
from transactions import (
    GatewayConfirmation,
    ManualConfirmation,
    StoredPaymentLink,
    Transaction
)

from ..dependencies import get_engine

router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"]
)

@router.get("/{transaction_id}", response_model=Transaction)
async def get_transaction(
    transaction_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return await engine.transactions.get_transaction(transaction_id, current_user)

@router.get("/{transaction_id}/payment-link", response_model=StoredPaymentLink)
async def get_payment_link(
    transaction_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    link = await engine.transactions.get_payment_link(transaction_id, current_user)
    if not link:
        raise NotFoundError(f"Transaction {transaction_id} has no pending payment link")
    return link

@router.post("/{transaction_id}/payment-link", response_model=StoredPaymentLink)
async def request_payment_link(
    transaction_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    """Get or create the payment link. Safe to call repeatedly."""
    return await engine.transactions.request_payment_link(transaction_id, current_user)

@router.post("/{transaction_id}/confirm-gateway", response_model=Transaction)
async def confirm_with_gateway(
    transaction_id: UUID,
    request: GatewayConfirmation,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    """Ask the gateway whether the link was paid and complete the transaction if so.

    Answers 503 with ``Retry-After`` while the payment is still pending.
    """
    return await engine.transactions.confirm_with_gateway(
        transaction_id, request.link_id, current_user
    )

@router.post("/{transaction_id}/confirm-manual", response_model=Transaction)
async def confirm_manually(
    transaction_id: UUID,
    request: ManualConfirmation,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return await engine.transactions.confirm_manually(
        transaction_id, current_user, request.proof_url
    )

@router.post("/{transaction_id}/cancel", response_model=Transaction)
async def cancel_transaction(
    transaction_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return await engine.transactions.cancel_transaction(transaction_id, current_user)
