"""Storage contract shared by the in-memory and PostgreSQL backends.

Rows are plain dicts keyed by column name. Each method that has to be atomic
(get-or-create, compare-and-set, single active link) is atomic in every
backend, so the managers built on top never do read-then-write themselves.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID


class Store(ABC):
    """Abstract persistence backend."""

    async def initialize(self) -> None:
        """Prepare the backend (create schema, open connections)."""

    async def close(self) -> None:
        """Release backend resources."""

    # Conversations

    @abstractmethod
    async def get_or_create_conversation(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str
    ) -> Tuple[Dict[str, Any], bool]:
        """Return the active conversation for the triple, creating it if absent.

        Returns:
            Tuple of (conversation row, created flag)
        """

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        """Active conversations of a user not hidden by them, newest activity first.

        Each row carries an ``unread_count`` for the viewer.
        """

    @abstractmethod
    async def hide_conversation(
        self,
        conversation_id: UUID,
        user_id: str
    ) -> Optional[Dict[str, Any]]:
        """Hide a conversation for one participant.

        Closes the conversation (``is_active = false``) once both participants
        have hidden it.
        """

    # Messages

    @abstractmethod
    async def insert_message(
        self,
        conversation_id: UUID,
        sender_id: str,
        content: str,
        kind: str,
        payload: Optional[Dict[str, Any]],
        client_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Append a message to an active conversation.

        Assigns a ``created_at`` strictly greater than the conversation's
        previous ``last_message_at``, bumps ``last_message_at`` and clears the
        conversation's hidden markers. ``client_id`` is the sender's own id
        for the message and is stored as given. Returns None if the
        conversation is missing or closed.
        """

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: UUID,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Messages ordered by (created_at, id) ascending.

        With ``before`` and a ``limit`` the latest ``limit`` messages before
        that point are returned, still in ascending order.
        """

    @abstractmethod
    async def mark_messages_read(
        self,
        conversation_id: UUID,
        viewer_id: str,
        read_at: datetime
    ) -> int:
        """Mark unread messages not sent by the viewer as read. Returns count."""

    @abstractmethod
    async def count_unread(self, conversation_id: UUID, viewer_id: str) -> int:
        ...

    @abstractmethod
    async def count_total_unread(self, user_id: str) -> int:
        """Unread messages across the active conversations a user has not archived."""

    # Notifications

    @abstractmethod
    async def insert_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """Notifications of a user, newest first."""

    @abstractmethod
    async def mark_notification_read(
        self,
        notification_id: UUID,
        user_id: str,
        read_at: datetime
    ) -> Optional[Dict[str, Any]]:
        """Mark one notification read. Returns None if the user does not own it."""

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str, read_at: datetime) -> int:
        ...

    @abstractmethod
    async def notification_stats(self, user_id: str) -> Dict[str, int]:
        """Return ``{'total': n, 'unread': m}``."""

    # Transactions

    @abstractmethod
    async def insert_transaction(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a transaction.

        Raises:
            DuplicateKeyError: If the transaction code is already taken
        """

    @abstractmethod
    async def get_transaction(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_transactions(self, conversation_id: UUID) -> List[Dict[str, Any]]:
        """Transactions of a conversation, newest first."""

    @abstractmethod
    async def compare_and_set_status(
        self,
        transaction_id: UUID,
        expected: str,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Move a transaction from ``expected`` to ``new_status``.

        Applies ``fields`` in the same write. Returns the updated row, or None
        if the stored status no longer equals ``expected``.
        """

    # Payment links

    @abstractmethod
    async def insert_payment_link(self, row: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Store a link unless the transaction already has a pending one.

        Returns:
            Tuple of (stored or existing pending link, inserted flag)
        """

    @abstractmethod
    async def get_payment_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_active_payment_link(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        """The pending link of a transaction, if any."""

    @abstractmethod
    async def count_payment_links(self, transaction_id: UUID) -> int:
        ...

    @abstractmethod
    async def update_payment_link_status(
        self,
        link_id: str,
        status: str,
        expected: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Set a link's status, optionally only if it currently equals ``expected``."""

    @abstractmethod
    async def list_open_payment_links(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Pending links whose transaction is still pending, oldest first."""
