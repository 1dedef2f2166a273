"""Topic naming for the channel transport."""
from typing import Tuple
from uuid import UUID

CONVERSATION = 'conversation'
CONVERSATIONS = 'conversations'
NOTIFICATIONS = 'notifications'
TRANSACTIONS = 'transactions'

TOPIC_KINDS = (CONVERSATION, CONVERSATIONS, NOTIFICATIONS, TRANSACTIONS)

class TopicError(ValueError):
    """Raised for a topic string that does not name a known resource."""
    pass

def conversation_topic(conversation_id: UUID) -> str:
    """Messages of one conversation."""
    return f"{CONVERSATION}:{conversation_id}"

def conversations_topic(user_id: str) -> str:
    """List-level conversation changes for one user."""
    return f"{CONVERSATIONS}:{user_id}"

def notifications_topic(user_id: str) -> str:
    return f"{NOTIFICATIONS}:{user_id}"

def transactions_topic(conversation_id: UUID) -> str:
    return f"{TRANSACTIONS}:{conversation_id}"

def parse_topic(topic: str) -> Tuple[str, str]:
    """Split a topic into (kind, resource id).

    Raises:
        TopicError: If the topic is malformed or of an unknown kind
    """
    kind, sep, key = topic.partition(':')
    if not sep or not key:
        raise TopicError(f"Malformed topic: {topic}")
    if kind not in TOPIC_KINDS:
        raise TopicError(f"Unknown topic kind: {kind}")
    return kind, key
