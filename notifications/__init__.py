"""Notification fanout.

Notifications are derived, per-user records created by the system when
something happens that the user should hear about even without the
conversation open: a new message, interest in one of their items, or a
transaction lifecycle change. They are owned by the recipient and only ever
mutated to mark them read.

Fanout is best effort: the ``notify_*`` helpers log failures instead of
raising, so a broken notification never fails the write that caused it.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from channels import ChannelHub, Handler, Subscription, hub as default_hub, notifications_topic
from database import Store, get_store
from errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
PREVIEW_LENGTH = 80

class NotificationType(str, Enum):
    NEW_MESSAGE = "new_message"
    ITEM_LIKED = "item_liked"
    TRANSACTION_CREATED = "transaction_created"
    PAYMENT_SUCCESS = "payment_success"
    TRANSACTION_COMPLETED = "transaction_completed"
    TRANSACTION_CANCELLED = "transaction_cancelled"

def _preview(content: str) -> str:
    content = ' '.join(content.split())
    if len(content) <= PREVIEW_LENGTH:
        return content
    return content[:PREVIEW_LENGTH - 3] + '...'

def _format_amount(amount: Decimal) -> str:
    return f"{amount:,.0f}"

class NotificationManager:
    """Creates, lists and marks notifications, publishing each change."""

    def __init__(self, store: Optional[Store] = None, hub: Optional[ChannelHub] = None) -> None:
        self.store = store
        self.hub = hub or default_hub

    async def ensure_store(self) -> Store:
        """Ensure we have a storage backend."""
        if not self.store:
            self.store = await get_store()
        return self.store

    async def create_notification(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str = '',
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Store a notification and publish it on the recipient's topic."""
        store = await self.ensure_store()
        notification = await store.insert_notification(
            user_id, NotificationType(type).value, title, body, data or {}
        )
        self.hub.publish(
            notifications_topic(user_id),
            'notification_created',
            {'notification': notification}
        )
        logger.debug(f"Notification {notification['id']} ({notification['type']}) for {user_id}")
        return notification

    async def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str = '',
        data: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Like ``create_notification`` but never raises."""
        try:
            return await self.create_notification(user_id, type, title, body, data)
        except Exception as e:
            logger.error(f"Failed to send {type} notification to {user_id}: {e}")
            return None

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Notifications of a user, newest first."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        store = await self.ensure_store()
        return await store.list_notifications(user_id, unread_only, limit, offset)

    async def mark_notification_read(self, notification_id: UUID, user_id: str) -> Dict[str, Any]:
        """Mark one notification read. Idempotent.

        Raises:
            NotFoundError: If the notification does not exist or belongs to someone else
        """
        store = await self.ensure_store()
        notification = await store.mark_notification_read(
            notification_id, user_id, datetime.now(timezone.utc)
        )
        if not notification:
            raise NotFoundError(f"Notification {notification_id} not found")

        self.hub.publish(
            notifications_topic(user_id),
            'notification_read',
            {'notification_id': str(notification_id)}
        )
        return notification

    async def mark_all_notifications_read(self, user_id: str) -> int:
        store = await self.ensure_store()
        updated = await store.mark_all_notifications_read(user_id, datetime.now(timezone.utc))
        if updated:
            self.hub.publish(
                notifications_topic(user_id),
                'notifications_read_all',
                {'count': updated}
            )
        return updated

    async def unread_count(self, user_id: str) -> int:
        stats = await self.get_stats(user_id)
        return stats['unread']

    async def get_stats(self, user_id: str) -> Dict[str, int]:
        """Return ``{'total': n, 'unread': m}`` for a user."""
        store = await self.ensure_store()
        return await store.notification_stats(user_id)

    async def subscribe_notifications(self, user_id: str, handler: Handler) -> Subscription:
        return await self.hub.subscribe(notifications_topic(user_id), handler)

    # Domain event fanout

    async def notify_new_message(self, recipient_id: str, message: Dict[str, Any]) -> None:
        await self.notify(
            recipient_id,
            NotificationType.NEW_MESSAGE,
            'New message',
            _preview(message['content']) or f"Sent a {message['kind'].replace('_', ' ')}",
            {
                'conversation_id': str(message['conversation_id']),
                'message_id': str(message['id']),
                'sender_id': message['sender_id']
            }
        )

    async def notify_item_liked(
        self,
        seller_id: str,
        item_id: str,
        buyer_id: str,
        conversation_id: UUID,
        item_name: Optional[str] = None
    ) -> None:
        await self.notify(
            seller_id,
            NotificationType.ITEM_LIKED,
            'Someone is interested in your item',
            f"A buyer liked {item_name or 'your item'}",
            {
                'item_id': item_id,
                'buyer_id': buyer_id,
                'conversation_id': str(conversation_id)
            }
        )

    async def notify_transaction(
        self,
        type: NotificationType,
        transaction: Dict[str, Any]
    ) -> None:
        """Fan a transaction lifecycle change out to the party that did not cause it."""
        amount = transaction['amount']
        data = {
            'transaction_id': str(transaction['id']),
            'conversation_id': str(transaction['conversation_id']),
            'status': transaction['status']
        }

        if type == NotificationType.TRANSACTION_CREATED:
            body = (
                f"The seller proposed {_format_amount(amount)} (code {transaction['code']})"
                if amount else "The seller offered the item for free"
            )
            await self.notify(transaction['buyer_id'], type, 'New transaction', body, data)

        elif type == NotificationType.PAYMENT_SUCCESS:
            await self.notify(
                transaction['seller_id'], type, 'Payment received',
                f"Payment of {_format_amount(amount)} for {transaction['code']} was confirmed",
                data
            )
            await self.notify(
                transaction['buyer_id'], type, 'Payment successful',
                f"Your payment of {_format_amount(amount)} was confirmed",
                data
            )

        elif type == NotificationType.TRANSACTION_COMPLETED:
            await self.notify(
                transaction['seller_id'], type, 'Transaction completed',
                'The buyer confirmed the transaction', data
            )

        elif type == NotificationType.TRANSACTION_CANCELLED:
            for user_id in (transaction['buyer_id'], transaction['seller_id']):
                await self.notify(
                    user_id, type, 'Transaction cancelled',
                    'The transaction was cancelled', data
                )

        else:
            logger.warning(f"No transaction fanout for notification type {type}")

__all__ = ['NotificationManager', 'NotificationType']
