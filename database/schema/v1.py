"""Schema v1 - Initial database schema.

This version includes tables for:
- Conversations and per-participant hidden markers
- Messages with typed payloads
- Notifications
- Transactions and gateway payment links
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'conversations',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'last_message_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'is_active', 'type': 'BOOLEAN', 'nullable': False, 'default': 'true'}
            ],
            'checks': [
                {'name': 'chk_conversations_participants', 'expression': 'buyer_id <> seller_id'}
            ],
            'indexes': [
                # One active conversation per item/buyer/seller triple
                {
                    'name': 'idx_conversations_active_triple',
                    'columns': ['item_id', 'buyer_id', 'seller_id'],
                    'unique': True,
                    'where': 'is_active'
                },
                {'name': 'idx_conversations_buyer', 'columns': ['buyer_id', 'last_message_at']},
                {'name': 'idx_conversations_seller', 'columns': ['seller_id', 'last_message_at']}
            ]
        },
        {
            'name': 'conversation_hidden',
            'columns': [
                {'name': 'conversation_id', 'type': 'UUID', 'nullable': False},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'hidden_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['conversation_id', 'user_id'],
            'foreign_keys': [
                {'columns': ['conversation_id'], 'references': 'conversations(id)'}
            ]
        },
        {
            'name': 'messages',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'conversation_id', 'type': 'UUID', 'nullable': False},
                {'name': 'sender_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'content', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'kind', 'type': 'TEXT', 'nullable': False, 'default': "'text'"},
                {'name': 'payload', 'type': 'JSONB'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False},
                {'name': 'is_read', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'read_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'client_id', 'type': 'TEXT'}
            ],
            'checks': [
                {
                    'name': 'chk_messages_kind',
                    'expression': "kind IN ('text', 'image', 'system', 'item_reference')"
                }
            ],
            'foreign_keys': [
                {'columns': ['conversation_id'], 'references': 'conversations(id)'}
            ],
            'indexes': [
                {'name': 'idx_messages_conversation_order', 'columns': ['conversation_id', 'created_at', 'id']},
                {
                    'name': 'idx_messages_unread',
                    'columns': ['conversation_id', 'sender_id'],
                    'where': 'NOT is_read'
                }
            ]
        },
        {
            'name': 'notifications',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'user_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'type', 'type': 'TEXT', 'nullable': False},
                {'name': 'title', 'type': 'TEXT', 'nullable': False},
                {'name': 'body', 'type': 'TEXT', 'nullable': False, 'default': "''"},
                {'name': 'data', 'type': 'JSONB'},
                {'name': 'is_read', 'type': 'BOOLEAN', 'nullable': False, 'default': 'false'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'read_at', 'type': 'TIMESTAMPTZ'}
            ],
            'indexes': [
                {'name': 'idx_notifications_user', 'columns': ['user_id', 'created_at']}
            ]
        },
        {
            'name': 'transactions',
            'columns': [
                {'name': 'id', 'type': 'UUID', 'primary_key': True, 'default': 'gen_random_uuid()'},
                {'name': 'conversation_id', 'type': 'UUID', 'nullable': False},
                {'name': 'item_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'seller_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'buyer_id', 'type': 'TEXT', 'nullable': False},
                {'name': 'code', 'type': 'TEXT'},
                {'name': 'amount', 'type': 'DECIMAL(18,2)', 'nullable': False, 'default': '0'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'payment_method', 'type': 'TEXT', 'nullable': False, 'default': "'bank_transfer'"},
                {'name': 'proof_url', 'type': 'TEXT'},
                {'name': 'external_link_id', 'type': 'TEXT'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'completed_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'confirmed_by', 'type': 'TEXT'}
            ],
            'checks': [
                {'name': 'chk_transactions_amount', 'expression': 'amount >= 0'},
                {'name': 'chk_transactions_code', 'expression': '(code IS NULL) = (amount = 0)'},
                {
                    'name': 'chk_transactions_status',
                    'expression': "status IN ('pending', 'completed', 'cancelled')"
                }
            ],
            'foreign_keys': [
                {'columns': ['conversation_id'], 'references': 'conversations(id)'}
            ],
            'indexes': [
                {'name': 'idx_transactions_code', 'columns': ['code'], 'unique': True},
                {'name': 'idx_transactions_conversation', 'columns': ['conversation_id', 'created_at']}
            ]
        },
        {
            'name': 'payment_links',
            'columns': [
                {'name': 'link_id', 'type': 'TEXT', 'primary_key': True},
                {'name': 'transaction_id', 'type': 'UUID', 'nullable': False},
                {'name': 'url', 'type': 'TEXT', 'nullable': False},
                {'name': 'qr_payload', 'type': 'TEXT'},
                {'name': 'status', 'type': 'TEXT', 'nullable': False, 'default': "'pending'"},
                {'name': 'amount', 'type': 'DECIMAL(18,2)', 'nullable': False},
                {'name': 'order_code', 'type': 'INT8', 'nullable': False},
                {'name': 'expires_at', 'type': 'TIMESTAMPTZ'},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'foreign_keys': [
                {'columns': ['transaction_id'], 'references': 'transactions(id)'}
            ],
            'indexes': [
                # At most one usable link per transaction
                {
                    'name': 'idx_payment_links_pending',
                    'columns': ['transaction_id'],
                    'unique': True,
                    'where': "status = 'pending'"
                },
                {'name': 'idx_payment_links_status', 'columns': ['status', 'created_at']}
            ]
        }
    ]
}
