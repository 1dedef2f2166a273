from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, HttpUrl, TypeAdapter


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"
    ITEM_REFERENCE = "item_reference"


class ImagePayload(BaseModel):
    kind: Literal["image"] = "image"
    url: HttpUrl
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)


class ItemReferencePayload(BaseModel):
    kind: Literal["item_reference"] = "item_reference"
    item_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price: Optional[Decimal] = Field(default=None, ge=0)
    thumbnail_url: Optional[str] = None


class SystemPayload(BaseModel):
    kind: Literal["system"] = "system"
    event: str = Field(min_length=1)
    transaction_id: Optional[UUID] = None
    status: Optional[str] = None


MessagePayload = Annotated[
    Union[ImagePayload, ItemReferencePayload, SystemPayload],
    Field(discriminator="kind")
]

payload_adapter: TypeAdapter = TypeAdapter(MessagePayload)


class Message(BaseModel):
    id: UUID
    conversation_id: UUID
    sender_id: str
    content: str
    kind: MessageKind
    payload: Optional[MessagePayload] = None
    created_at: datetime
    is_read: bool = False
    read_at: Optional[datetime] = None
    client_id: Optional[str] = None


class MessageCreate(BaseModel):
    content: str = ""
    kind: MessageKind = MessageKind.TEXT
    payload: Optional[Dict[str, Any]] = None
    client_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class MessageList(BaseModel):
    messages: List[Message]
    unread_count: int
