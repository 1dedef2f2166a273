"""PostgreSQL storage backend built on an asyncpg pool.

Every atomic primitive of the storage contract maps onto a single statement or
a short transaction:

- get-or-create uses ``ON CONFLICT`` against the partial unique index on
  active conversation triples
- message inserts lock the conversation row, so commit timestamps are strictly
  increasing per conversation
- status transitions are ``UPDATE ... WHERE status = expected RETURNING *``
- payment links rely on the partial unique index on pending links
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import asyncpg

from .exceptions import DatabaseError, DuplicateKeyError
from .store import Store

logger = logging.getLogger(__name__)

GET_OR_CREATE_ATTEMPTS = 3

# Columns a status transition may set alongside the status itself
TRANSITION_FIELDS = (
    'completed_at',
    'confirmed_by',
    'proof_url',
    'external_link_id'
)

CONVERSATION_COLUMNS = '''
    c.*,
    ARRAY(
        SELECT h.user_id FROM conversation_hidden h
        WHERE h.conversation_id = c.id
        ORDER BY h.user_id
    ) AS hidden_by
'''

async def init_connection(conn: asyncpg.Connection) -> None:
    """Register JSON codecs so payload/data columns round-trip as dicts."""
    for typename in ('json', 'jsonb'):
        await conn.set_type_codec(
            typename,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog'
        )

def _row(record: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    return dict(record) if record is not None else None

class PostgresStore(Store):
    """asyncpg implementation of the storage contract."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _connection(self):
        """Acquire a connection, translating driver errors into DatabaseError."""
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise DuplicateKeyError(str(e), constraint=e.constraint_name)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.error(f"Database operation failed: {e}")
            raise DatabaseError(str(e))

    # Conversations

    async def get_or_create_conversation(
        self,
        item_id: str,
        buyer_id: str,
        seller_id: str
    ) -> Tuple[Dict[str, Any], bool]:
        """Return the active conversation for the triple, creating it if needed.

        The insert and the read share one transaction. If the active row is
        closed between them (both participants archived it), the loop inserts a
        fresh one.
        """
        async with self._connection() as conn:
            for _ in range(GET_OR_CREATE_ATTEMPTS):
                async with conn.transaction():
                    created = await conn.fetchval(
                        '''
                        INSERT INTO conversations (item_id, buyer_id, seller_id)
                        VALUES ($1, $2, $3)
                        ON CONFLICT (item_id, buyer_id, seller_id) WHERE is_active
                        DO NOTHING
                        RETURNING id
                        ''',
                        item_id, buyer_id, seller_id
                    )
                    row = await conn.fetchrow(
                        f'''
                        SELECT {CONVERSATION_COLUMNS}
                        FROM conversations c
                        WHERE c.item_id = $1 AND c.buyer_id = $2 AND c.seller_id = $3
                        AND c.is_active
                        ''',
                        item_id, buyer_id, seller_id
                    )
                if row is not None:
                    return _row(row), created is not None
                logger.debug(f"Active conversation for {item_id} closed mid-lookup, retrying")
        raise DatabaseError(f"Could not get or create a conversation for item {item_id}")

    async def get_conversation(self, conversation_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f'SELECT {CONVERSATION_COLUMNS} FROM conversations c WHERE c.id = $1',
                conversation_id
            )
            return _row(row)

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f'''
                SELECT {CONVERSATION_COLUMNS},
                    (
                        SELECT COUNT(*) FROM messages m
                        WHERE m.conversation_id = c.id
                        AND m.sender_id != $1
                        AND NOT m.is_read
                    ) AS unread_count
                FROM conversations c
                WHERE c.is_active
                AND (c.buyer_id = $1 OR c.seller_id = $1)
                AND NOT EXISTS (
                    SELECT 1 FROM conversation_hidden h
                    WHERE h.conversation_id = c.id AND h.user_id = $1
                )
                ORDER BY c.last_message_at DESC
                ''',
                user_id
            )
            return [dict(row) for row in rows]

    async def hide_conversation(
        self,
        conversation_id: UUID,
        user_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    'SELECT 1 FROM conversations WHERE id = $1 FOR UPDATE',
                    conversation_id
                )
                if not exists:
                    return None

                await conn.execute(
                    '''
                    INSERT INTO conversation_hidden (conversation_id, user_id)
                    VALUES ($1, $2)
                    ON CONFLICT DO NOTHING
                    ''',
                    conversation_id, user_id
                )
                # Closed once both participants have hidden it
                await conn.execute(
                    '''
                    UPDATE conversations c SET is_active = false
                    WHERE c.id = $1
                    AND EXISTS (
                        SELECT 1 FROM conversation_hidden h
                        WHERE h.conversation_id = c.id AND h.user_id = c.buyer_id
                    )
                    AND EXISTS (
                        SELECT 1 FROM conversation_hidden h
                        WHERE h.conversation_id = c.id AND h.user_id = c.seller_id
                    )
                    ''',
                    conversation_id
                )
                row = await conn.fetchrow(
                    f'SELECT {CONVERSATION_COLUMNS} FROM conversations c WHERE c.id = $1',
                    conversation_id
                )
                return _row(row)

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
        async with self._connection() as conn:
            async with conn.transaction():
                # Row lock serializes sends per conversation
                created_at = await conn.fetchval(
                    '''
                    UPDATE conversations
                    SET last_message_at = GREATEST(
                        clock_timestamp(),
                        last_message_at + interval '1 microsecond'
                    )
                    WHERE id = $1 AND is_active
                    RETURNING last_message_at
                    ''',
                    conversation_id
                )
                if created_at is None:
                    return None

                row = await conn.fetchrow(
                    '''
                    INSERT INTO messages (
                        conversation_id, sender_id, content, kind, payload, created_at, client_id
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING *
                    ''',
                    conversation_id, sender_id, content, kind, payload, created_at, client_id
                )
                await conn.execute(
                    'DELETE FROM conversation_hidden WHERE conversation_id = $1',
                    conversation_id
                )
                return _row(row)

    async def list_messages(
        self,
        conversation_id: UUID,
        after: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        # Backward pages take the newest rows before the cursor
        direction = 'DESC' if before is not None and limit is not None else 'ASC'
        async with self._connection() as conn:
            rows = await conn.fetch(
                f'''
                SELECT * FROM (
                    SELECT * FROM messages
                    WHERE conversation_id = $1
                    AND ($2::timestamptz IS NULL OR created_at > $2)
                    AND ($3::timestamptz IS NULL OR created_at < $3)
                    ORDER BY created_at {direction}, id {direction}
                    LIMIT $4
                ) page
                ORDER BY created_at ASC, id ASC
                ''',
                conversation_id, after, before, limit
            )
            return [dict(row) for row in rows]

    async def mark_messages_read(
        self,
        conversation_id: UUID,
        viewer_id: str,
        read_at: datetime
    ) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                '''
                UPDATE messages SET is_read = true, read_at = $3
                WHERE conversation_id = $1 AND sender_id != $2 AND NOT is_read
                ''',
                conversation_id, viewer_id, read_at
            )
            return int(result.split()[-1])

    async def count_unread(self, conversation_id: UUID, viewer_id: str) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                '''
                SELECT COUNT(*) FROM messages
                WHERE conversation_id = $1 AND sender_id != $2 AND NOT is_read
                ''',
                conversation_id, viewer_id
            )

    async def count_total_unread(self, user_id: str) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                '''
                SELECT COUNT(*) FROM messages m
                JOIN conversations c ON c.id = m.conversation_id
                WHERE c.is_active
                AND (c.buyer_id = $1 OR c.seller_id = $1)
                AND m.sender_id != $1
                AND NOT m.is_read
                AND NOT EXISTS (
                    SELECT 1 FROM conversation_hidden h
                    WHERE h.conversation_id = c.id AND h.user_id = $1
                )
                ''',
                user_id
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
        async with self._connection() as conn:
            row = await conn.fetchrow(
                '''
                INSERT INTO notifications (user_id, type, title, body, data)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                ''',
                user_id, type, title, body, data
            )
            return dict(row)

    async def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM notifications
                WHERE user_id = $1 AND (NOT $2 OR NOT is_read)
                ORDER BY created_at DESC, id DESC
                LIMIT $3 OFFSET $4
                ''',
                user_id, unread_only, limit, offset
            )
            return [dict(row) for row in rows]

    async def mark_notification_read(
        self,
        notification_id: UUID,
        user_id: str,
        read_at: datetime
    ) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE notifications
                SET is_read = true, read_at = COALESCE(read_at, $3)
                WHERE id = $1 AND user_id = $2
                RETURNING *
                ''',
                notification_id, user_id, read_at
            )
            return _row(row)

    async def mark_all_notifications_read(self, user_id: str, read_at: datetime) -> int:
        async with self._connection() as conn:
            result = await conn.execute(
                '''
                UPDATE notifications SET is_read = true, read_at = $2
                WHERE user_id = $1 AND NOT is_read
                ''',
                user_id, read_at
            )
            return int(result.split()[-1])

    async def notification_stats(self, user_id: str) -> Dict[str, int]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                '''
                SELECT
                    COUNT(*) AS total,
                    COUNT(*) FILTER (WHERE NOT is_read) AS unread
                FROM notifications
                WHERE user_id = $1
                ''',
                user_id
            )
            return {'total': row['total'], 'unread': row['unread']}

    # Transactions

    async def insert_transaction(self, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = list(row.keys())
        placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))
        async with self._connection() as conn:
            record = await conn.fetchrow(
                f'''
                INSERT INTO transactions ({', '.join(columns)})
                VALUES ({placeholders})
                RETURNING *
                ''',
                *row.values()
            )
            return dict(record)

    async def get_transaction(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            return _row(await conn.fetchrow(
                'SELECT * FROM transactions WHERE id = $1',
                transaction_id
            ))

    async def list_transactions(self, conversation_id: UUID) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM transactions
                WHERE conversation_id = $1
                ORDER BY created_at DESC, id DESC
                ''',
                conversation_id
            )
            return [dict(row) for row in rows]

    async def compare_and_set_status(
        self,
        transaction_id: UUID,
        expected: str,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        fields = fields or {}
        unknown = set(fields) - set(TRANSITION_FIELDS)
        if unknown:
            raise ValueError(f"Fields not settable on transition: {', '.join(sorted(unknown))}")

        assignments = ['status = $3', 'updated_at = now()']
        values = [transaction_id, expected, new_status]
        for name, value in fields.items():
            values.append(value)
            assignments.append(f'{name} = ${len(values)}')

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f'''
                UPDATE transactions SET {', '.join(assignments)}
                WHERE id = $1 AND status = $2
                RETURNING *
                ''',
                *values
            )
            return _row(row)

    # Payment links

    async def insert_payment_link(self, row: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        async with self._connection() as conn:
            record = await conn.fetchrow(
                '''
                INSERT INTO payment_links (
                    link_id, transaction_id, url, qr_payload, status,
                    amount, order_code, expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (transaction_id) WHERE status = 'pending'
                DO NOTHING
                RETURNING *
                ''',
                row['link_id'], row['transaction_id'], row['url'], row.get('qr_payload'),
                row.get('status', 'pending'), row['amount'], row['order_code'],
                row.get('expires_at')
            )
            if record is not None:
                return dict(record), True

            existing = await conn.fetchrow(
                "SELECT * FROM payment_links WHERE transaction_id = $1 AND status = 'pending'",
                row['transaction_id']
            )
            if existing is None:
                raise DuplicateKeyError(
                    f"Payment link for transaction {row['transaction_id']} conflicted "
                    "but no pending link exists",
                    constraint='idx_payment_links_pending'
                )
            return dict(existing), False

    async def get_payment_link(self, link_id: str) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            return _row(await conn.fetchrow(
                'SELECT * FROM payment_links WHERE link_id = $1',
                link_id
            ))

    async def get_active_payment_link(self, transaction_id: UUID) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            return _row(await conn.fetchrow(
                "SELECT * FROM payment_links WHERE transaction_id = $1 AND status = 'pending'",
                transaction_id
            ))

    async def count_payment_links(self, transaction_id: UUID) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                'SELECT COUNT(*) FROM payment_links WHERE transaction_id = $1',
                transaction_id
            )

    async def update_payment_link_status(
        self,
        link_id: str,
        status: str,
        expected: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        async with self._connection() as conn:
            return _row(await conn.fetchrow(
                '''
                UPDATE payment_links SET status = $2, updated_at = now()
                WHERE link_id = $1 AND ($3::text IS NULL OR status = $3)
                RETURNING *
                ''',
                link_id, status, expected
            ))

    async def list_open_payment_links(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                '''
                SELECT l.* FROM payment_links l
                JOIN transactions t ON t.id = l.transaction_id
                WHERE l.status = 'pending' AND t.status = 'pending'
                ORDER BY l.created_at
                LIMIT $1
                ''',
                limit
            )
            return [dict(row) for row in rows]
