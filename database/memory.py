"""In-process storage backend.

Keeps every table in dictionaries guarded by a single asyncio lock. Used for
``memory://`` deployments (a single API process) and throughout the test suite.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from .exceptions import DuplicateKeyError
from .store import Store

logger = logging.getLogger(__name__)

TICK = timedelta(microseconds=1)

def _now() -> datetime:
    return datetime.now(timezone.utc)

def _message_key(row: Dict[str, Any]):
    return (row['created_at'], str(row['id']))

class MemoryStore(Store):
    """Dictionary-backed implementation of the storage contract."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._conversations: Dict[UUID, Dict[str, Any]] = {}
        self._hidden: Dict[UUID, set] = {}
        self._messages: Dict[UUID, List[Dict[str, Any]]] = {}
        self._notifications: Dict[UUID, Dict[str, Any]] = {}
        self._transactions: Dict[UUID, Dict[str, Any]] = {}
        self._codes: set = set()
        self._links: Dict[str, Dict[str, Any]] = {}
        self._last_notification_at = datetime.min.replace(tzinfo=timezone.utc)
        self._last_transaction_at = datetime.min.replace(tzinfo=timezone.utc)

    async def initialize(self) -> None:
        logger.info("Using in-memory store")

    # Conversations

    def _conversation_row(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(conversation)
        row['hidden_by'] = sorted(self._hidden.get(conversation['id'], ()))
        return row

    async def get_or_create_conversation(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str
    ) -> Tuple[Dict[str, Any], bool]:
        async with self._lock:
            for conversation in self._conversations.values():
                if (conversation['is_active']
                        and conversation['item_id'] == item_id
                        and conversation['buyer_id'] == buyer_id
                        and conversation['seller_id'] == seller_id):
                    return self._conversation_row(conversation), False

            now = _now()
            conversation = {
                'id': uuid.uuid4(),
                'item_id': item_id,
                'buyer_id': buyer_id,
                'seller_id': seller_id,
                'created_at': now,
                'last_message_at': now,
                'is_active': True
            }
            self._conversations[conversation['id']] = conversation
            self._messages[conversation['id']] = []
            return self._conversation_row(conversation), True

    async def get_conversation(self, conversation_id: UUID) -> Optional[Dict[str, Any]]:
        conversation = self._conversations.get(conversation_id)
        return self._conversation_row(conversation) if conversation else None

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = []
            for conversation in self._conversations.values():
                if not conversation['is_active']:
                    continue
                if user_id not in (conversation['buyer_id'], conversation['seller_id']):
                    continue
                if user_id in self._hidden.get(conversation['id'], ()):
                    continue
                row = self._conversation_row(conversation)
                row['unread_count'] = self._unread(conversation['id'], user_id)
                rows.append(row)
            rows.sort(key=lambda r: r['last_message_at'], reverse=True)
            return rows

    async def hide_conversation(
        self,
        conversation_id: UUID,
        user_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if not conversation:
                return None
            hidden = self._hidden.setdefault(conversation_id, set())
            hidden.add(user_id)
            if {conversation['buyer_id'], conversation['seller_id']} <= hidden:
                conversation['is_active'] = False
            return self._conversation_row(conversation)

    # Messages

    async def insert_message(
        self,
        conversation_id: UUID,
        sender_id: str,
        content: str,
        kind: str,
        payload: Optional[Dict[str, Any]],
        client_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if not conversation or not conversation['is_active']:
                return None

            created_at = max(_now(), conversation['last_message_at'] + TICK)
            message = {
                'id': uuid.uuid4(),
                'conversation_id': conversation_id,
                'sender_id': sender_id,
                'content': content,
                'kind': kind,
                'payload': dict(payload) if payload is not None else None,
                'created_at': created_at,
                'is_read': False,
                'read_at': None,
                'client_id': client_id
            }
            self._messages[conversation_id].append(message)
            conversation['last_message_at'] = created_at
            self._hidden.pop(conversation_id, None)
            return dict(message)

    async def list_messages(
        self,
        conversation_id: UUID,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = sorted(self._messages.get(conversation_id, []), key=_message_key)
            if after is not None:
                rows = [r for r in rows if r['created_at'] > after]
            if before is not None:
                rows = [r for r in rows if r['created_at'] < before]
            if limit is not None:
                # Forward pages read from the start, backward pages from the end
                rows = rows[:limit] if before is None else rows[-limit:] if limit else []
            return [dict(r) for r in rows]

    def _unread(self, conversation_id: UUID, viewer_id: str) -> int:
        return sum(
            1 for m in self._messages.get(conversation_id, [])
            if m['sender_id'] != viewer_id and not m['is_read']
        )

    async def mark_messages_read(
        self,
        conversation_id: UUID,
        viewer_id: str,
        read_at: datetime
    ) -> int:
        async with self._lock:
            updated = 0
            for message in self._messages.get(conversation_id, []):
                if message['sender_id'] != viewer_id and not message['is_read']:
                    message['is_read'] = True
                    message['read_at'] = read_at
                    updated += 1
            return updated

    async def count_unread(self, conversation_id: UUID, viewer_id: str) -> int:
        async with self._lock:
            return self._unread(conversation_id, viewer_id)

    async def count_total_unread(self, user_id: str) -> int:
        async with self._lock:
            return sum(
                self._unread(c['id'], user_id)
                for c in self._conversations.values()
                if c['is_active'] and user_id in (c['buyer_id'], c['seller_id'])
                and user_id not in self._hidden.get(c['id'], ())
            )

    # Notifications

    async def insert_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        async with self._lock:
            # Strictly increasing so newest-first listing is stable
            created_at = max(_now(), self._last_notification_at + TICK)
            self._last_notification_at = created_at
            notification = {
                'id': uuid.uuid4(),
                'user_id': user_id,
                'type': type,
                'title': title,
                'body': body,
                'data': dict(data) if data is not None else None,
                'is_read': False,
                'created_at': created_at,
                'read_at': None
            }
            self._notifications[notification['id']] = notification
            return dict(notification)

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                n for n in self._notifications.values()
                if n['user_id'] == user_id and not (unread_only and n['is_read'])
            ]
            rows.sort(key=lambda n: (n['created_at'], str(n['id'])), reverse=True)
            return [dict(n) for n in rows[offset:offset + limit]]

    async def mark_notification_read(
        self,
        notification_id: UUID,
        user_id: str,
        read_at: datetime
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            notification = self._notifications.get(notification_id)
            if not notification or notification['user_id'] != user_id:
                return None
            if not notification['is_read']:
                notification['is_read'] = True
                notification['read_at'] = read_at
            return dict(notification)

    async def mark_all_notifications_read(self, user_id: str, read_at: datetime) -> int:
        async with self._lock:
            updated = 0
            for notification in self._notifications.values():
                if notification['user_id'] == user_id and not notification['is_read']:
                    notification['is_read'] = True
                    notification['read_at'] = read_at
                    updated += 1
            return updated

    async def notification_stats(self, user_id: str) -> Dict[str, int]:
        async with self._lock:
            owned = [n for n in self._notifications.values() if n['user_id'] == user_id]
            return {
                'total': len(owned),
                'unread': sum(1 for n in owned if not n['is_read'])
            }

    # Transactions

    async def insert_transaction(self, row: Dict[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            code = row.get('code')
            if code is not None and code in self._codes:
                raise DuplicateKeyError(
                    f"Transaction code {code} already exists",
                    constraint='idx_transactions_code'
                )
            now = max(_now(), self._last_transaction_at + TICK)
            self._last_transaction_at = now
            transaction = {
                'id': uuid.uuid4(),
                'status': 'pending',
                'proof_url': None,
                'external_link_id': None,
                'completed_at': None,
                'confirmed_by': None,
                'created_at': now,
                'updated_at': now
            }
            transaction.update(row)
            self._transactions[transaction['id']] = transaction
            if code is not None:
                self._codes.add(code)
            return dict(transaction)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        transaction = self._transactions.get(transaction_id)
        return dict(transaction) if transaction else None

    async def list_transactions(self, conversation_id: UUID) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                t for t in self._transactions.values()
                if t['conversation_id'] == conversation_id
            ]
            rows.sort(key=lambda t: (t['created_at'], str(t['id'])), reverse=True)
            return [dict(t) for t in rows]

    async def compare_and_set_status(
        self,
        transaction_id: UUID,
        expected: str,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            transaction = self._transactions.get(transaction_id)
            if not transaction or transaction['status'] != expected:
                return None
            transaction.update(fields or {})
            transaction['status'] = new_status
            transaction['updated_at'] = _now()
            return dict(transaction)

    # Payment links

    async def insert_payment_link(self, row: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        async with self._lock:
            for link in self._links.values():
                if link['transaction_id'] == row['transaction_id'] and link['status'] == 'pending':
                    return dict(link), False
            if row['link_id'] in self._links:
                raise DuplicateKeyError(
                    f"Payment link {row['link_id']} already exists",
                    constraint='payment_links_pkey'
                )
            now = _now()
            link = {'created_at': now, 'updated_at': now}
            link.update(row)
            self._links[link['link_id']] = link
            return dict(link), True

    async def get_payment_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        link = self._links.get(link_id)
        return dict(link) if link else None

    async def get_active_payment_link(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for link in self._links.values():
                if link['transaction_id'] == transaction_id and link['status'] == 'pending':
                    return dict(link)
            return None

    async def count_payment_links(self, transaction_id: UUID) -> int:
        async with self._lock:
            return sum(1 for link in self._links.values() if link['transaction_id'] == transaction_id)

    async def update_payment_link_status(
        self,
        link_id: str,
        status: str,
        expected: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            link = self._links.get(link_id)
            if not link or (expected is not None and link['status'] != expected):
                return None
            link['status'] = status
            link['updated_at'] = _now()
            return dict(link)

    async def list_open_payment_links(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                link for link in self._links.values()
                if link['status'] == 'pending'
                and self._transactions.get(link['transaction_id'], {}).get('status') == 'pending'
            ]
            rows.sort(key=lambda link: link['created_at'])
            return [dict(link) for link in rows[:limit]]
