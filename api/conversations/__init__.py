"""Conversation, message and per-conversation transaction endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from auth import get_current_user
from engine import Engine
from messages import Message, MessageCreate, MessageList
from transactions import Transaction, TransactionCreate

from ..dependencies import get_engine

router = APIRouter(
    prefix="/conversations",
    tags=["Conversations"]
)

class ConversationOpen(BaseModel):
    """Open (or reopen) the conversation about an item as its buyer."""
    item_id: str = Field(min_length=1)
    seller_id: str = Field(min_length=1)

class InterestExpressed(BaseModel):
    """A buyer liked an item. The seller is looked up when omitted."""
    item_id: str = Field(min_length=1)
    seller_id: Optional[str] = None

@router.get("")
async def list_conversations(
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> List[Dict[str, Any]]:
    """Active conversations of the current user, most recent first."""
    return await engine.conversations.list_conversations(current_user)

@router.get("/unread-count")
async def get_total_unread(
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return {"unread": await engine.messages.total_unread_count(current_user)}

@router.post("", status_code=status.HTTP_201_CREATED)
async def open_conversation(
    request: ConversationOpen,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.conversations.get_or_create_conversation(
        request.item_id, current_user, request.seller_id
    )

@router.post("/interest", status_code=status.HTTP_201_CREATED)
async def express_interest(
    request: InterestExpressed,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.conversations.express_interest(
        request.item_id, current_user, request.seller_id
    )

@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.conversations.get_conversation(conversation_id, current_user)

@router.post("/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, Any]:
    """Hide the conversation for the current user until the next message."""
    return await engine.conversations.archive_conversation(conversation_id, current_user)

# Messages

@router.get("/{conversation_id}/messages", response_model=MessageList)
async def list_messages(
    conversation_id: UUID,
    after: Optional[datetime] = None,
    before: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1, le=200),
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    """Messages in ascending order.

    With ``before`` and ``limit`` this pages backwards through history.
    """
    messages = await engine.messages.list_messages(
        conversation_id, current_user, after=after, before=before, limit=limit
    )
    unread = await engine.messages.unread_count(conversation_id, current_user)
    return {"messages": messages, "unread_count": unread}

@router.post(
    "/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    conversation_id: UUID,
    message: MessageCreate,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return await engine.messages.send_message(
        conversation_id,
        current_user,
        message.content,
        message.kind,
        message.payload,
        client_id=message.client_id
    )

@router.post("/{conversation_id}/read")
async def mark_as_read(
    conversation_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    """Mark messages from the other participant read."""
    updated = await engine.messages.mark_as_read(conversation_id, current_user)
    return {"conversation_id": str(conversation_id), "updated": updated}

# Transactions

@router.get("/{conversation_id}/transactions", response_model=List[Transaction])
async def list_transactions(
    conversation_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    return await engine.transactions.list_transactions_for_conversation(
        conversation_id, current_user
    )

@router.post(
    "/{conversation_id}/transactions",
    response_model=Transaction,
    status_code=status.HTTP_201_CREATED
)
async def create_transaction(
    conversation_id: UUID,
    request: TransactionCreate,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    """Seller proposes a price for the conversation's item."""
    return await engine.transactions.create_transaction(
        conversation_id,
        current_user,
        request.amount,
        request.payment_method
    )
