"""Message log.

Messages are append-only and ordered within a conversation by
``(created_at, id)``. Sends to one conversation are serialized by a per
conversation lock and the store assigns strictly increasing commit timestamps,
so the order subscribers of ``conversation:{id}`` see is the commit order.
Only ``is_read``/``read_at`` ever change after a message is written.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from catalog import CatalogError, ItemCatalog
from channels import ChannelHub, Handler, Subscription, hub as default_hub
from channels import conversation_topic, conversations_topic
from conversations import ConversationManager, other_participant
from database import KeyedLock, Store, get_store
from errors import InvalidStateError, ValidationError
from notifications import NotificationManager

from .models import (
    ImagePayload,
    ItemReferencePayload,
    Message,
    MessageCreate,
    MessageKind,
    MessageList,
    MessagePayload,
    SystemPayload,
    payload_adapter
)
from .timeline import MessageTimeline

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 4000
MAX_PAGE_SIZE = 200
MAX_CLIENT_ID_LENGTH = 64

class MessageManager:
    """Sends, lists and marks messages read, publishing every change."""

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ChannelHub] = None,
        conversations: Optional[ConversationManager] = None,
        notifications: Optional[NotificationManager] = None,
        catalog: Optional[ItemCatalog] = None
    ) -> None:
        self.store = store
        self.hub = hub or default_hub
        self.notifications = notifications or NotificationManager(store, self.hub)
        self.conversations = conversations or ConversationManager(
            store, self.hub, self.notifications, catalog
        )
        self.catalog = catalog
        self._locks = KeyedLock()

    async def ensure_store(self) -> Store:
        """Ensure we have a storage backend."""
        if not self.store:
            self.store = await get_store()
        return self.store

    async def _build_payload(
        self,
        kind: MessageKind,
        payload: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        """Validate a payload against the message kind.

        Item references may be sent with only an ``item_id``; the rest of the
        preview is filled from the catalog.
        """
        if kind == MessageKind.TEXT:
            if payload:
                raise ValidationError("Text messages do not carry a payload")
            return None

        if payload is None:
            if kind == MessageKind.SYSTEM:
                raise ValidationError("System messages require a payload")
            raise ValidationError(f"{kind.value} messages require a payload")

        payload = dict(payload)
        payload_kind = payload.setdefault('kind', kind.value)
        if payload_kind != kind.value:
            raise ValidationError(
                f"Payload kind {payload_kind} does not match message kind {kind.value}"
            )

        if kind == MessageKind.ITEM_REFERENCE and not payload.get('name'):
            payload = await self._complete_item_reference(payload)

        try:
            parsed: MessagePayload = payload_adapter.validate_python(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid {kind.value} payload: {e}")
        return parsed.model_dump(mode='json', exclude_none=True)

    async def _complete_item_reference(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        item_id = payload.get('item_id')
        if not item_id:
            raise ValidationError("Item reference requires an item_id")
        if self.catalog is None:
            raise ValidationError("Item reference requires a name")
        try:
            item = await self.catalog.get_item(item_id)
        except CatalogError as e:
            logger.warning(f"Catalog lookup for item {item_id} failed: {e}")
            raise ValidationError(f"Could not load item {item_id} for the preview")

        payload['name'] = item.name
        if item.price is not None:
            payload.setdefault('price', str(item.price))
        if item.thumbnail_url:
            payload.setdefault('thumbnail_url', item.thumbnail_url)
        return payload

    async def send_message(
        self,
        conversation_id: UUID,
        sender_id: str,
        content: str = '',
        kind: MessageKind = MessageKind.TEXT,
        payload: Optional[Dict[str, Any]] = None,
        client_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Append a message from a participant.

        ``client_id`` is the id the sender gave its optimistic copy; it comes
        back on the stored message and its channel echo.

        Raises:
            NotFoundError: If the conversation does not exist
            AuthorizationError: If the sender is not a participant
            ValidationError: On empty text, oversized content or a bad payload
            InvalidStateError: If the conversation is closed
        """
        try:
            kind = MessageKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown message kind: {kind}")
        if kind == MessageKind.SYSTEM:
            raise ValidationError("System messages are posted by the server")
        if client_id is not None and not 0 < len(client_id) <= MAX_CLIENT_ID_LENGTH:
            raise ValidationError(f"client_id must be 1 to {MAX_CLIENT_ID_LENGTH} characters")
        return await self._append(conversation_id, sender_id, content, kind, payload, client_id)

    async def post_system_message(
        self,
        conversation_id: UUID,
        sender_id: str,
        content: str,
        event: str,
        transaction_id: Optional[UUID] = None,
        status: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Record a server-generated event in the conversation. Never raises."""
        payload = {'kind': 'system', 'event': event}
        if transaction_id is not None:
            payload['transaction_id'] = str(transaction_id)
        if status is not None:
            payload['status'] = status
        try:
            return await self._append(
                conversation_id, sender_id, content, MessageKind.SYSTEM, payload
            )
        except Exception as e:
            logger.error(f"Failed to post {event} system message to {conversation_id}: {e}")
            return None

    async def _append(
        self,
        conversation_id: UUID,
        sender_id: str,
        content: str,
        kind: MessageKind,
        payload: Optional[Dict[str, Any]],
        client_id: Optional[str] = None
    ) -> Dict[str, Any]:
        conversation = await self.conversations.get_conversation(conversation_id, sender_id)

        content = (content or '').strip()
        if kind == MessageKind.TEXT and not content:
            raise ValidationError("Message content cannot be empty")
        if len(content) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Message content exceeds {MAX_CONTENT_LENGTH} characters")
        payload = await self._build_payload(kind, payload)

        if not conversation['is_active']:
            raise InvalidStateError(f"Conversation {conversation_id} is closed", current_status='closed')

        store = await self.ensure_store()
        async with self._locks.acquire(conversation_id):
            message = await store.insert_message(
                conversation_id, sender_id, content, kind.value, payload, client_id
            )
            if message is None:
                raise InvalidStateError(
                    f"Conversation {conversation_id} is closed",
                    current_status='closed'
                )
            # Publish under the lock so delivery order matches commit order
            self.hub.publish(conversation_topic(conversation_id), 'message_created', {'message': message})

        recipient_id = other_participant(conversation, sender_id)
        for user_id in (conversation['buyer_id'], conversation['seller_id']):
            self.hub.publish(
                conversations_topic(user_id),
                'conversation_updated',
                {
                    'conversation_id': str(conversation_id),
                    'last_message': message,
                    'last_message_at': message['created_at']
                }
            )

        logger.debug(f"Message {message['id']} ({kind.value}) in conversation {conversation_id}")
        if kind != MessageKind.SYSTEM:
            await self.notifications.notify_new_message(recipient_id, message)
        return message

    async def list_messages(
        self,
        conversation_id: UUID,
        viewer_id: str,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Messages in ascending order. ``after``/``before`` bound the range
        exclusively; with ``before`` and ``limit`` the newest ``limit``
        messages before the cursor are returned."""
        if limit is not None and not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if after is not None and before is not None and after >= before:
            raise ValidationError("after must be earlier than before")

        await self.conversations.get_conversation(conversation_id, viewer_id)
        store = await self.ensure_store()
        return await store.list_messages(conversation_id, after, before, limit)

    async def mark_as_read(self, conversation_id: UUID, viewer_id: str) -> int:
        """Mark every unread message from the other participant read. Idempotent.

        Returns:
            Number of messages that changed
        """
        await self.conversations.get_conversation(conversation_id, viewer_id)
        store = await self.ensure_store()

        read_at = datetime.now(timezone.utc)
        updated = await store.mark_messages_read(conversation_id, viewer_id, read_at)
        if updated:
            self.hub.publish(
                conversation_topic(conversation_id),
                'messages_read',
                {'reader_id': viewer_id, 'read_at': read_at, 'count': updated}
            )
            self.hub.publish(
                conversations_topic(viewer_id),
                'conversation_read',
                {'conversation_id': str(conversation_id), 'unread_count': 0}
            )
        return updated

    async def unread_count(self, conversation_id: UUID, viewer_id: str) -> int:
        await self.conversations.get_conversation(conversation_id, viewer_id)
        store = await self.ensure_store()
        return await store.count_unread(conversation_id, viewer_id)

    async def total_unread_count(self, user_id: str) -> int:
        store = await self.ensure_store()
        return await store.count_total_unread(user_id)

    async def subscribe_conversation(
        self,
        conversation_id: UUID,
        user_id: str,
        handler: Handler
    ) -> Subscription:
        await self.conversations.get_conversation(conversation_id, user_id)
        return await self.hub.subscribe(conversation_topic(conversation_id), handler)

__all__ = [
    'MessageManager',
    'MessageTimeline',
    'Message',
    'MessageCreate',
    'MessageKind',
    'MessageList',
    'ImagePayload',
    'ItemReferencePayload',
    'SystemPayload',
    'payload_adapter'
]
