"""Tests for the message log and the client timeline."""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from catalog import CatalogError
from channels import conversation_topic
from errors import AuthorizationError, NotFoundError, ValidationError
from messages import MessageKind, MessageTimeline
from messages import MAX_CONTENT_LENGTH
from conftest import BUYER, ITEM_ID, OTHER_ITEM_ID, SELLER, STRANGER, Recorder

@pytest.mark.asyncio
async def test_buyer_and_seller_exchange(engine, conversation):
    """Test a simple exchange and the unread counts on each side."""
    await engine.messages.send_message(conversation["id"], BUYER, "Hi")

    assert await engine.messages.unread_count(conversation["id"], BUYER) == 0
    assert await engine.messages.unread_count(conversation["id"], SELLER) == 1

    await engine.messages.send_message(conversation["id"], SELLER, "Hello")

    log = await engine.messages.list_messages(conversation["id"], BUYER)
    assert [m["content"] for m in log] == ["Hi", "Hello"]
    assert [m["sender_id"] for m in log] == [BUYER, SELLER]
    assert all(m["kind"] == "text" and m["payload"] is None for m in log)
    assert await engine.messages.unread_count(conversation["id"], BUYER) == 1
    assert await engine.messages.unread_count(conversation["id"], SELLER) == 1

@pytest.mark.asyncio
async def test_content_is_trimmed(engine, conversation):
    message = await engine.messages.send_message(conversation["id"], BUYER, "  is it boxed?  ")
    assert message["content"] == "is it boxed?"

@pytest.mark.asyncio
async def test_interleaved_sends_keep_commit_order(engine, conversation):
    """Test that concurrent sends from both sides are all stored and delivered in order."""
    recorder = Recorder()
    await engine.messages.subscribe_conversation(conversation["id"], SELLER, recorder)

    await asyncio.gather(*[
        engine.messages.send_message(
            conversation["id"], BUYER if i % 2 == 0 else SELLER, f"message {i}"
        )
        for i in range(40)
    ])
    await engine.hub.drain()

    log = await engine.messages.list_messages(conversation["id"], BUYER)
    assert len(log) == 40
    assert {m["content"] for m in log} == {f"message {i}" for i in range(40)}

    keys = [(m["created_at"], str(m["id"])) for m in log]
    assert keys == sorted(keys)
    assert len({m["created_at"] for m in log}) == 40

    delivered = [e.data["message"]["id"] for e in recorder.of_type("message_created")]
    assert delivered == [m["id"] for m in log]

@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
async def test_empty_text_is_rejected(engine, conversation, content):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(conversation["id"], BUYER, content)
    assert await engine.messages.list_messages(conversation["id"], BUYER) == []

@pytest.mark.asyncio
async def test_oversized_content_is_rejected(engine, conversation):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(conversation["id"], BUYER, "x" * (MAX_CONTENT_LENGTH + 1))

@pytest.mark.asyncio
async def test_only_participants_can_send(engine, conversation):
    with pytest.raises(AuthorizationError):
        await engine.messages.send_message(conversation["id"], STRANGER, "let me in")

    with pytest.raises(NotFoundError):
        await engine.messages.send_message(uuid.uuid4(), BUYER, "anyone?")

    with pytest.raises(AuthorizationError):
        await engine.messages.list_messages(conversation["id"], STRANGER)

@pytest.mark.asyncio
async def test_clients_cannot_post_system_messages(engine, conversation):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(
            conversation["id"], SELLER, "fake", MessageKind.SYSTEM,
            {"kind": "system", "event": "payment_success"}
        )

@pytest.mark.asyncio
async def test_unknown_kind_is_rejected(engine, conversation):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(conversation["id"], BUYER, "hi", "video")

@pytest.mark.asyncio
async def test_image_message(engine, conversation):
    message = await engine.messages.send_message(
        conversation["id"], BUYER, "", MessageKind.IMAGE,
        {"url": "https://img.example.com/scratch.jpg", "width": 640, "height": 480}
    )

    assert message["kind"] == "image"
    assert message["content"] == ""
    assert message["payload"] == {
        "kind": "image",
        "url": "https://img.example.com/scratch.jpg",
        "width": 640,
        "height": 480
    }

@pytest.mark.asyncio
async def test_bad_payloads_are_rejected(engine, conversation):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(
            conversation["id"], BUYER, "", MessageKind.IMAGE, {"url": "not a url"}
        )
    with pytest.raises(ValidationError):
        await engine.messages.send_message(conversation["id"], BUYER, "", MessageKind.IMAGE)
    with pytest.raises(ValidationError):
        await engine.messages.send_message(
            conversation["id"], BUYER, "hi", MessageKind.TEXT, {"url": "https://x.example.com/a.png"}
        )
    with pytest.raises(ValidationError):
        await engine.messages.send_message(
            conversation["id"], BUYER, "", MessageKind.IMAGE,
            {"kind": "item_reference", "item_id": ITEM_ID, "name": "mismatch"}
        )

@pytest.mark.asyncio
async def test_item_reference_is_completed_from_catalog(engine, conversation):
    """Test that an item reference sent with only an id gets its preview filled in."""
    message = await engine.messages.send_message(
        conversation["id"], SELLER, "this one goes with it", MessageKind.ITEM_REFERENCE,
        {"item_id": OTHER_ITEM_ID}
    )

    assert message["payload"]["name"] == "Leather strap"
    assert message["payload"]["price"] == "20000"
    assert message["payload"]["item_id"] == OTHER_ITEM_ID

@pytest.mark.asyncio
async def test_item_reference_keeps_explicit_preview(engine, conversation):
    message = await engine.messages.send_message(
        conversation["id"], SELLER, "", MessageKind.ITEM_REFERENCE,
        {"item_id": "external-1", "name": "Tripod", "price": "5000"}
    )
    assert message["payload"]["name"] == "Tripod"

@pytest.mark.asyncio
async def test_item_reference_to_unknown_item(engine, conversation):
    with pytest.raises(NotFoundError):
        await engine.messages.send_message(
            conversation["id"], SELLER, "", MessageKind.ITEM_REFERENCE, {"item_id": "missing"}
        )

@pytest.mark.asyncio
async def test_item_reference_when_catalog_is_down(engine, conversation, monkeypatch):
    async def unavailable(item_id):
        raise CatalogError("catalog unavailable")

    monkeypatch.setattr(engine.messages.catalog, "get_item", unavailable)
    with pytest.raises(ValidationError):
        await engine.messages.send_message(
            conversation["id"], SELLER, "", MessageKind.ITEM_REFERENCE, {"item_id": ITEM_ID}
        )

@pytest.mark.asyncio
async def test_mark_as_read_is_idempotent_and_one_sided(engine, conversation):
    """Test that reading only clears the reader's side and can be repeated."""
    await engine.messages.send_message(conversation["id"], BUYER, "Hi")
    await engine.messages.send_message(conversation["id"], SELLER, "Hello")
    await engine.messages.send_message(conversation["id"], SELLER, "Still interested?")

    recorder = Recorder()
    await engine.messages.subscribe_conversation(conversation["id"], SELLER, recorder)

    assert await engine.messages.mark_as_read(conversation["id"], BUYER) == 2
    assert await engine.messages.unread_count(conversation["id"], BUYER) == 0
    assert await engine.messages.mark_as_read(conversation["id"], BUYER) == 0
    assert await engine.messages.unread_count(conversation["id"], BUYER) == 0
    assert await engine.messages.unread_count(conversation["id"], SELLER) == 1
    await engine.hub.drain()

    assert recorder.types() == ["messages_read"]
    assert recorder.events[0].data["reader_id"] == BUYER

    log = await engine.messages.list_messages(conversation["id"], SELLER)
    assert [m["is_read"] for m in log] == [False, True, True]
    assert log[1]["read_at"] is not None

@pytest.mark.asyncio
async def test_total_unread_count(engine):
    first = await engine.conversations.get_or_create_conversation(ITEM_ID, BUYER, SELLER)
    second = await engine.conversations.get_or_create_conversation(OTHER_ITEM_ID, BUYER, SELLER)

    await engine.messages.send_message(first["id"], BUYER, "one")
    await engine.messages.send_message(second["id"], BUYER, "two")
    await engine.messages.send_message(second["id"], BUYER, "three")

    assert await engine.messages.total_unread_count(SELLER) == 3
    assert await engine.messages.total_unread_count(BUYER) == 0

@pytest.mark.asyncio
async def test_total_unread_skips_archived_conversations(engine):
    first = await engine.conversations.get_or_create_conversation(ITEM_ID, BUYER, SELLER)
    second = await engine.conversations.get_or_create_conversation(OTHER_ITEM_ID, BUYER, SELLER)
    await engine.messages.send_message(first["id"], SELLER, "one")
    await engine.messages.send_message(second["id"], SELLER, "two")

    await engine.conversations.archive_conversation(first["id"], BUYER)
    assert await engine.messages.total_unread_count(BUYER) == 1

    await engine.conversations.archive_conversation(second["id"], BUYER)
    assert await engine.messages.total_unread_count(BUYER) == 0

    await engine.messages.send_message(first["id"], SELLER, "still interested?")
    assert await engine.messages.total_unread_count(BUYER) == 2

@pytest.mark.asyncio
async def test_list_messages_pagination(engine, conversation):
    sent = [
        await engine.messages.send_message(conversation["id"], BUYER, f"m{i}")
        for i in range(6)
    ]

    first_page = await engine.messages.list_messages(conversation["id"], BUYER, limit=2)
    assert [m["content"] for m in first_page] == ["m0", "m1"]

    next_page = await engine.messages.list_messages(
        conversation["id"], BUYER, after=first_page[-1]["created_at"], limit=2
    )
    assert [m["content"] for m in next_page] == ["m2", "m3"]

    # Backwards from the newest message
    older = await engine.messages.list_messages(
        conversation["id"], BUYER, before=sent[-1]["created_at"], limit=2
    )
    assert [m["content"] for m in older] == ["m3", "m4"]

    between = await engine.messages.list_messages(
        conversation["id"], BUYER, after=sent[0]["created_at"], before=sent[3]["created_at"]
    )
    assert [m["content"] for m in between] == ["m1", "m2"]

@pytest.mark.asyncio
async def test_list_messages_validates_arguments(engine, conversation):
    now = datetime.now(timezone.utc)
    with pytest.raises(ValidationError):
        await engine.messages.list_messages(conversation["id"], BUYER, limit=0)
    with pytest.raises(ValidationError):
        await engine.messages.list_messages(conversation["id"], BUYER, limit=1000)
    with pytest.raises(ValidationError):
        await engine.messages.list_messages(
            conversation["id"], BUYER, after=now, before=now - timedelta(seconds=1)
        )

@pytest.mark.asyncio
async def test_recipient_is_notified_of_new_messages(engine, conversation):
    await engine.messages.send_message(conversation["id"], BUYER, "Is the lens included?")

    seller_notifications = await engine.notifications.list_notifications(SELLER)
    assert [n["type"] for n in seller_notifications] == ["new_message"]
    assert seller_notifications[0]["body"] == "Is the lens included?"
    assert seller_notifications[0]["data"]["conversation_id"] == str(conversation["id"])
    assert await engine.notifications.list_notifications(BUYER) == []

@pytest.mark.asyncio
async def test_conversation_lists_are_updated_for_both_sides(engine, conversation):
    buyer_list, seller_list = Recorder(), Recorder()
    await engine.conversations.subscribe_conversation_list(BUYER, buyer_list)
    await engine.conversations.subscribe_conversation_list(SELLER, seller_list)

    message = await engine.messages.send_message(conversation["id"], BUYER, "Hi")
    await engine.hub.drain()

    for recorder in (buyer_list, seller_list):
        assert recorder.types() == ["conversation_updated"]
        assert recorder.events[0].data["last_message"]["id"] == message["id"]

@pytest.mark.asyncio
async def test_subscribe_requires_participation(engine, conversation):
    with pytest.raises(AuthorizationError):
        await engine.messages.subscribe_conversation(conversation["id"], STRANGER, Recorder())
    assert engine.hub.subscriber_count(conversation_topic(conversation["id"])) == 0

# Timeline

def _message(content, created_at, sender=BUYER, **extra):
    return {
        "id": str(uuid.uuid4()),
        "conversation_id": "c1",
        "sender_id": sender,
        "content": content,
        "kind": "text",
        "payload": None,
        "created_at": created_at,
        "is_read": False,
        "read_at": None,
        **extra
    }

def test_timeline_orders_and_deduplicates():
    now = datetime.now(timezone.utc)
    second = _message("second", now + timedelta(seconds=1))
    first = _message("first", now)

    timeline = MessageTimeline([second, first])
    assert [m["content"] for m in timeline] == ["first", "second"]

    assert timeline.merge(dict(first)) is False
    assert len(timeline) == 2
    assert timeline.last()["content"] == "second"

def test_timeline_optimistic_send_is_replaced_by_server_copy():
    """Test that an echoed own message replaces the optimistic copy instead of duplicating it."""
    now = datetime.now(timezone.utc)
    timeline = MessageTimeline([_message("Hi", now)])

    timeline.add_optimistic("tmp-1", {"sender_id": BUYER, "content": "Still there?"})
    assert [m["content"] for m in timeline] == ["Hi", "Still there?"]
    assert timeline.messages[-1]["id"] == "tmp-1"

    server_copy = _message("Still there?", now + timedelta(seconds=1), client_id="tmp-1")
    # The channel echo can arrive before the send call returns
    assert timeline.apply_event({"type": "message_created", "data": {"message": server_copy}}) is True
    assert [m["content"] for m in timeline] == ["Hi", "Still there?"]
    assert len(timeline) == 2
    assert "tmp-1" not in [m["id"] for m in timeline]

    assert timeline.confirm("tmp-1", server_copy) is False
    assert [m["content"] for m in timeline] == ["Hi", "Still there?"]
    assert timeline.get(server_copy["id"])["content"] == "Still there?"

def test_timeline_confirm_before_echo():
    now = datetime.now(timezone.utc)
    timeline = MessageTimeline()
    timeline.add_optimistic("tmp-1", {"sender_id": BUYER, "content": "Hi"})

    server_copy = _message("Hi", now, client_id="tmp-1")
    assert timeline.confirm("tmp-1", server_copy) is True
    assert timeline.apply_event({"type": "message_created", "data": {"message": server_copy}}) is False

    assert [m["id"] for m in timeline] == [server_copy["id"]]

def test_timeline_keeps_other_pending_sends():
    now = datetime.now(timezone.utc)
    timeline = MessageTimeline()
    timeline.add_optimistic("tmp-1", {"sender_id": BUYER, "content": "one"})
    timeline.add_optimistic("tmp-2", {"sender_id": BUYER, "content": "two"})

    timeline.merge(_message("one", now, client_id="tmp-1"))

    assert [m["content"] for m in timeline] == ["one", "two"]
    assert timeline.messages[-1]["id"] == "tmp-2"

@pytest.mark.asyncio
async def test_subscribed_timeline_shows_own_send_once(engine, conversation):
    """Test a sender's timeline fed by its own channel subscription."""
    timeline = MessageTimeline(await engine.messages.list_messages(conversation["id"], BUYER))
    await engine.hub.subscribe(conversation_topic(conversation["id"]), timeline.apply_event)

    timeline.add_optimistic("tmp-1", {"sender_id": BUYER, "content": "Hi"})
    sent = await engine.messages.send_message(conversation["id"], BUYER, "Hi", client_id="tmp-1")
    await engine.hub.drain()
    assert [m["content"] for m in timeline] == ["Hi"]

    timeline.confirm("tmp-1", sent)
    assert [m["content"] for m in timeline] == ["Hi"]
    assert [m["id"] for m in timeline] == [sent["id"]]
    assert sent["client_id"] == "tmp-1"

@pytest.mark.asyncio
async def test_client_id_is_stored_with_the_message(engine, conversation):
    await engine.messages.send_message(conversation["id"], BUYER, "Hi", client_id="tmp-1")
    await engine.messages.send_message(conversation["id"], SELLER, "Hello")

    log = await engine.messages.list_messages(conversation["id"], SELLER)
    assert [m["client_id"] for m in log] == ["tmp-1", None]

@pytest.mark.asyncio
@pytest.mark.parametrize("client_id", ["", "x" * 65])
async def test_bad_client_id_is_rejected(engine, conversation, client_id):
    with pytest.raises(ValidationError):
        await engine.messages.send_message(conversation["id"], BUYER, "Hi", client_id=client_id)

def test_timeline_discards_failed_send():
    timeline = MessageTimeline()
    timeline.add_optimistic("tmp-1", {"sender_id": BUYER, "content": "oops"})
    timeline.discard("tmp-1")
    assert len(timeline) == 0

def test_timeline_accepts_serialized_events():
    now = datetime.now(timezone.utc)
    timeline = MessageTimeline()
    message = _message("Hi", now.isoformat())

    timeline.apply_event({"type": "message_created", "data": {"message": message}})
    assert timeline.last()["created_at"] == now

def test_timeline_applies_read_receipts():
    now = datetime.now(timezone.utc)
    timeline = MessageTimeline([
        _message("Hi", now, sender=BUYER),
        _message("Hello", now + timedelta(seconds=1), sender=SELLER)
    ])

    changed = timeline.apply_event({
        "type": "messages_read",
        "data": {"reader_id": SELLER, "read_at": now, "count": 1}
    })

    assert changed is True
    assert [m["is_read"] for m in timeline] == [True, False]
    assert timeline.apply_event({"type": "conversation_updated", "data": {}}) is False
