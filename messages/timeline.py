"""Client-side message timeline.

A client shows its own message as soon as it is sent (optimistically), then
receives the same message again from the ``conversation:{id}`` topic. The
timeline merges both so nothing is ever shown twice: the server copy carries
the sender's ``client_id``, which retires the optimistic entry whether the echo
or the send response arrives first. Confirmed messages are deduplicated by id
and kept in ``(created_at, id)`` order.
"""
import bisect
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from channels import Event


def _sort_key(message: Dict[str, Any]):
    return (message['created_at'], str(message['id']))


def _coerce(message: Dict[str, Any]) -> Dict[str, Any]:
    message = dict(message)
    if isinstance(message.get('created_at'), str):
        message['created_at'] = datetime.fromisoformat(message['created_at'])
    return message


class MessageTimeline:
    """Ordered, id-deduplicated view of one conversation's messages."""

    def __init__(self, messages: Optional[List[Dict[str, Any]]] = None) -> None:
        self._messages: List[Dict[str, Any]] = []
        self._keys: List[Any] = []
        self._by_id: Dict[str, Dict[str, Any]] = {}
        # temporary client id -> message awaiting its server copy
        self._pending: Dict[str, Dict[str, Any]] = {}
        for message in messages or []:
            self.merge(message)

    def __len__(self) -> int:
        return len(self._messages) + len(self._pending)

    def __iter__(self):
        return iter(self.messages)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        """Confirmed messages in order, followed by unconfirmed local sends."""
        return list(self._messages) + list(self._pending.values())

    def _remove(self, message_id: str) -> None:
        existing = self._by_id.pop(message_id)
        index = bisect.bisect_left(self._keys, _sort_key(existing))
        del self._keys[index]
        del self._messages[index]

    def merge(self, message: Dict[str, Any]) -> bool:
        """Insert a server-confirmed message, or refresh the copy already shown.

        Returns:
            True if the message was new to the timeline
        """
        message = _coerce(message)
        if message.get('client_id') is not None:
            self._pending.pop(message['client_id'], None)
        message_id = str(message['id'])
        is_new = message_id not in self._by_id
        if not is_new:
            self._remove(message_id)

        key = _sort_key(message)
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._by_id[message_id] = message
        return is_new

    def add_optimistic(self, temp_id: str, message: Dict[str, Any]) -> None:
        """Show a message that has been sent but not yet confirmed.

        ``temp_id`` must be the ``client_id`` the message was sent with.
        """
        self._pending[temp_id] = dict(message, id=temp_id)

    def confirm(self, temp_id: str, message: Dict[str, Any]) -> bool:
        """Replace an optimistic message with the server's copy."""
        self._pending.pop(temp_id, None)
        return self.merge(message)

    def discard(self, temp_id: str) -> None:
        """Drop an optimistic message whose send failed."""
        self._pending.pop(temp_id, None)

    def apply_event(self, event: Union[Event, Dict[str, Any]]) -> bool:
        """Apply a ``conversation:{id}`` event.

        Returns:
            True if the visible timeline changed
        """
        if isinstance(event, Event):
            event = event.model_dump()

        if event['type'] == 'message_created':
            return self.merge(event['data']['message'])

        if event['type'] == 'messages_read':
            reader_id = event['data']['reader_id']
            read_at = event['data']['read_at']
            changed = False
            for message in self._messages:
                if message['sender_id'] != reader_id and not message['is_read']:
                    message['is_read'] = True
                    message['read_at'] = read_at
                    changed = True
            return changed

        return False

    def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self._by_id.get(str(message_id))

    def last(self) -> Optional[Dict[str, Any]]:
        return self._messages[-1] if self._messages else None
