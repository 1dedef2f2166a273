"""Conversation directory.

A conversation is the persistent thread between one buyer and one seller about
one item. ``get_or_create_conversation`` is the only creation path and is safe
under concurrent callers: the storage layer guarantees a single active
conversation per (item, buyer, seller).

Archiving is per participant. It hides the conversation from the archiving
user's list until a new message arrives; once both participants have archived
it the conversation is closed, and the next expression of interest opens a
fresh one.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from catalog import CatalogError, ItemCatalog
from channels import ChannelHub, Handler, Subscription, hub as default_hub, conversations_topic
from database import Store, get_store
from errors import AuthorizationError, NotFoundError, ValidationError
from notifications import NotificationManager

logger = logging.getLogger(__name__)

BUYER = 'buyer'
SELLER = 'seller'

def participant_role(conversation: Dict[str, Any], user_id: str) -> Optional[str]:
    """Return ``'buyer'``, ``'seller'`` or None for a non-participant."""
    if user_id == conversation['buyer_id']:
        return BUYER
    if user_id == conversation['seller_id']:
        return SELLER
    return None

def other_participant(conversation: Dict[str, Any], user_id: str) -> str:
    if user_id == conversation['buyer_id']:
        return conversation['seller_id']
    return conversation['buyer_id']

class ConversationManager:
    """Creates, lists and archives conversations."""

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ChannelHub] = None,
        notifications: Optional[NotificationManager] = None,
        catalog: Optional[ItemCatalog] = None
    ) -> None:
        self.store = store
        self.hub = hub or default_hub
        self.notifications = notifications or NotificationManager(store, self.hub)
        self.catalog = catalog

    async def ensure_store(self) -> Store:
        """Ensure we have a storage backend."""
        if not self.store:
            self.store = await get_store()
        return self.store

    def _publish_list_change(self, conversation: Dict[str, Any], type: str, **data) -> None:
        for user_id in (conversation['buyer_id'], conversation['seller_id']):
            self.hub.publish(
                conversations_topic(user_id),
                type,
                {'conversation': conversation, **data}
            )

    async def get_or_create_conversation(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str
    ) -> Dict[str, Any]:
        conversation, _ = await self._get_or_create(item_id, buyer_id, seller_id)
        return conversation

    async def _get_or_create(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str
    ) -> Tuple[Dict[str, Any], bool]:
        if not item_id or not buyer_id or not seller_id:
            raise ValidationError("item_id, buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise ValidationError("A user cannot open a conversation with themselves")

        store = await self.ensure_store()
        conversation, created = await store.get_or_create_conversation(item_id, buyer_id, seller_id)
        if created:
            logger.info(
                f"Created conversation {conversation['id']} for item {item_id} "
                f"between buyer {buyer_id} and seller {seller_id}"
            )
            self._publish_list_change(conversation, 'conversation_created')
        return conversation, created

    async def express_interest(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Handle a buyer liking an item: open the conversation and tell the seller.

        The seller is looked up in the catalog when not given. Repeated calls
        return the same conversation and notify the seller only once.
        """
        item_name = None
        if self.catalog is not None:
            try:
                item = await self.catalog.get_item(item_id)
                item_name = item.name
                seller_id = seller_id or item.seller_id
            except (CatalogError, NotFoundError) as e:
                logger.warning(f"Catalog lookup for item {item_id} failed: {e}")
                if not seller_id:
                    raise

        if not seller_id:
            raise ValidationError(f"Seller of item {item_id} is unknown")

        conversation, created = await self._get_or_create(item_id, buyer_id, seller_id)
        if created:
            await self.notifications.notify_item_liked(
                seller_id, item_id, buyer_id, conversation['id'], item_name
            )
        return conversation

    async def get_conversation(
        self,
        conversation_id: UUID,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Fetch a conversation, optionally checking that ``user_id`` takes part.

        Raises:
            NotFoundError: If the conversation does not exist
            AuthorizationError: If ``user_id`` is not a participant
        """
        store = await self.ensure_store()
        conversation = await store.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if user_id is not None and participant_role(conversation, user_id) is None:
            raise AuthorizationError(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        return conversation

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        """Active conversations of a user, most recent activity first."""
        store = await self.ensure_store()
        return await store.list_conversations(user_id)

    async def archive_conversation(self, conversation_id: UUID, user_id: str) -> Dict[str, Any]:
        """Hide a conversation for the acting participant. Idempotent."""
        await self.get_conversation(conversation_id, user_id)

        store = await self.ensure_store()
        conversation = await store.hide_conversation(conversation_id, user_id)
        if not conversation:
            raise NotFoundError(f"Conversation {conversation_id} not found")

        self.hub.publish(
            conversations_topic(user_id),
            'conversation_archived',
            {'conversation': conversation}
        )
        if not conversation['is_active']:
            logger.info(f"Conversation {conversation_id} closed, archived by both participants")
            self._publish_list_change(conversation, 'conversation_closed')
        return conversation

    async def subscribe_conversation_list(self, user_id: str, handler: Handler) -> Subscription:
        return await self.hub.subscribe(conversations_topic(user_id), handler)

__all__ = [
    'ConversationManager',
    'participant_role',
    'other_participant',
    'BUYER',
    'SELLER'
]
