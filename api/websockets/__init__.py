"""WebSocket endpoint for real-time updates.

Clients authenticate with a first ``{"token": "..."}`` frame, then manage
their subscriptions with frames of the form::

    {"type": "subscribe", "topic": "conversation:<id>"}
    {"type": "unsubscribe", "topic": "conversation:<id>"}
    {"type": "ping"}

Channel events are forwarded as ``{"type": "event", "event": {...}}``.
A client may only subscribe to conversations and transactions it takes part
in, and to its own ``conversations:`` and ``notifications:`` topics.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Set
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from auth import AuthError, verifier
from channels import Event, Subscription, TopicError, parse_topic
from channels.topics import CONVERSATION, CONVERSATIONS, NOTIFICATIONS, TRANSACTIONS
from engine import Engine
from errors import DealroomError

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["WebSocket"]
)

AUTH_TIMEOUT = 10  # seconds to send the token frame
POLICY_VIOLATION = 4001

class ClientConnection:
    """One authenticated socket and its channel subscriptions."""

    def __init__(self, websocket: WebSocket, user_id: str, engine: Engine):
        self.websocket = websocket
        self.user_id = user_id
        self.engine = engine
        self.subscriptions: Dict[str, Subscription] = {}
        self._send_lock = asyncio.Lock()

    async def send(self, message: dict):
        async with self._send_lock:
            await self.websocket.send_json(message)

    async def forward(self, event: Event):
        await self.send({"type": "event", "event": event.model_dump(mode='json')})

    async def authorize(self, topic: str):
        """Raise if the user may not listen on ``topic``."""
        kind, key = parse_topic(topic)
        if kind in (CONVERSATION, TRANSACTIONS):
            try:
                conversation_id = UUID(key)
            except ValueError:
                raise TopicError(f"Invalid conversation id in topic: {topic}")
            await self.engine.conversations.get_conversation(conversation_id, self.user_id)
        elif kind in (CONVERSATIONS, NOTIFICATIONS):
            if key != self.user_id:
                raise TopicError(f"Cannot subscribe to another user's {kind}")

    async def subscribe(self, topic: str):
        if topic in self.subscriptions:
            return
        await self.authorize(topic)
        self.subscriptions[topic] = await self.engine.hub.subscribe(topic, self.forward)
        logger.debug(f"User {self.user_id} subscribed to {topic}")

    async def unsubscribe(self, topic: str):
        subscription = self.subscriptions.pop(topic, None)
        if subscription:
            await subscription.unsubscribe()

    async def close(self):
        for topic in list(self.subscriptions):
            await self.unsubscribe(topic)

    async def handle(self, message: dict):
        message_type = message.get("type")

        if message_type == "ping":
            await self.send({
                "type": "pong",
                "timestamp": datetime.now(timezone.utc).isoformat()
            })
            return

        if message_type in ("subscribe", "unsubscribe"):
            topic = message.get("topic")
            if not isinstance(topic, str):
                await self.send({"type": "error", "data": {"message": "topic is required"}})
                return
            try:
                if message_type == "subscribe":
                    await self.subscribe(topic)
                else:
                    await self.unsubscribe(topic)
            except (TopicError, DealroomError) as e:
                await self.send({
                    "type": "error",
                    "topic": topic,
                    "data": {"message": str(e), "error": type(e).__name__}
                })
                return
            await self.send({"type": f"{message_type}d", "topic": topic})
            return

        await self.send({
            "type": "error",
            "data": {"message": f"Unknown message type: {message_type}"}
        })

class ConnectionManager:
    """Tracks open client connections per user."""

    def __init__(self):
        self.active_connections: Dict[str, Set[ClientConnection]] = {}

    def connect(self, connection: ClientConnection):
        self.active_connections.setdefault(connection.user_id, set()).add(connection)
        logger.info(f"WebSocket connected for user {connection.user_id}")

    async def disconnect(self, connection: ClientConnection):
        await connection.close()
        connections = self.active_connections.get(connection.user_id)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                del self.active_connections[connection.user_id]
        logger.info(f"WebSocket closed for user {connection.user_id}")

    def connection_count(self) -> int:
        return sum(len(c) for c in self.active_connections.values())

# Create connection manager instance
manager = ConnectionManager()

async def _authenticate(websocket: WebSocket) -> str:
    """Read the token frame and return the user id, or raise AuthError."""
    try:
        auth_message = await asyncio.wait_for(websocket.receive_json(), timeout=AUTH_TIMEOUT)
    except asyncio.TimeoutError:
        raise AuthError("Authentication timed out")
    except ValueError:
        raise AuthError("Authentication frame must be JSON")

    if not isinstance(auth_message, dict) or not auth_message.get("token"):
        raise AuthError("Authentication required")
    return verifier.verify_token(auth_message["token"])

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for channel subscriptions."""
    await websocket.accept()

    try:
        user_id = await _authenticate(websocket)
    except AuthError as e:
        await websocket.close(code=POLICY_VIOLATION, reason=str(e))
        return
    except WebSocketDisconnect:
        return

    connection = ClientConnection(websocket, user_id, websocket.app.state.engine)
    manager.connect(connection)
    try:
        await connection.send({"type": "connected", "user_id": user_id})
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await connection.send({"type": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(message, dict):
                await connection.send({"type": "error", "data": {"message": "Invalid message format"}})
                continue
            await connection.handle(message)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(connection)

__all__ = ['router', 'manager', 'ConnectionManager', 'ClientConnection']
