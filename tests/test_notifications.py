"""Tests for notification fanout."""

import uuid

import pytest

from errors import NotFoundError, ValidationError
from notifications import NotificationType
from conftest import BUYER, SELLER, Recorder

@pytest.mark.asyncio
async def test_create_and_list_notifications(engine):
    recorder = Recorder()
    await engine.notifications.subscribe_notifications(SELLER, recorder)

    created = await engine.notifications.create_notification(
        SELLER, NotificationType.ITEM_LIKED, "Someone likes your camera", "", {"item_id": "item-1"}
    )
    await engine.hub.drain()

    assert created["user_id"] == SELLER
    assert created["type"] == "item_liked"
    assert created["is_read"] is False
    assert recorder.types() == ["notification_created"]
    assert recorder.events[0].data["notification"]["id"] == created["id"]

    listed = await engine.notifications.list_notifications(SELLER)
    assert [n["id"] for n in listed] == [created["id"]]

@pytest.mark.asyncio
async def test_notifications_are_newest_first_and_paginated(engine):
    for i in range(5):
        await engine.notifications.create_notification(
            BUYER, NotificationType.NEW_MESSAGE, f"n{i}"
        )

    page = await engine.notifications.list_notifications(BUYER, limit=2)
    assert [n["title"] for n in page] == ["n4", "n3"]

    page = await engine.notifications.list_notifications(BUYER, limit=2, offset=4)
    assert [n["title"] for n in page] == ["n0"]

@pytest.mark.asyncio
async def test_list_notifications_validates_paging(engine):
    with pytest.raises(ValidationError):
        await engine.notifications.list_notifications(BUYER, limit=0)
    with pytest.raises(ValidationError):
        await engine.notifications.list_notifications(BUYER, limit=101)
    with pytest.raises(ValidationError):
        await engine.notifications.list_notifications(BUYER, offset=-1)

@pytest.mark.asyncio
async def test_mark_notification_read(engine):
    notification = await engine.notifications.create_notification(
        BUYER, NotificationType.NEW_MESSAGE, "New message"
    )

    read = await engine.notifications.mark_notification_read(notification["id"], BUYER)
    assert read["is_read"] is True
    assert read["read_at"] is not None

    # Idempotent
    again = await engine.notifications.mark_notification_read(notification["id"], BUYER)
    assert again["read_at"] == read["read_at"]

    assert await engine.notifications.list_notifications(BUYER, unread_only=True) == []

@pytest.mark.asyncio
async def test_cannot_read_someone_elses_notification(engine):
    notification = await engine.notifications.create_notification(
        BUYER, NotificationType.NEW_MESSAGE, "New message"
    )

    with pytest.raises(NotFoundError):
        await engine.notifications.mark_notification_read(notification["id"], SELLER)
    with pytest.raises(NotFoundError):
        await engine.notifications.mark_notification_read(uuid.uuid4(), BUYER)

    listed = await engine.notifications.list_notifications(BUYER)
    assert listed[0]["is_read"] is False

@pytest.mark.asyncio
async def test_mark_all_read_and_stats(engine):
    for i in range(3):
        await engine.notifications.create_notification(BUYER, NotificationType.NEW_MESSAGE, f"n{i}")
    await engine.notifications.create_notification(SELLER, NotificationType.NEW_MESSAGE, "other")

    assert await engine.notifications.get_stats(BUYER) == {"total": 3, "unread": 3}

    recorder = Recorder()
    await engine.notifications.subscribe_notifications(BUYER, recorder)
    assert await engine.notifications.mark_all_notifications_read(BUYER) == 3
    assert await engine.notifications.mark_all_notifications_read(BUYER) == 0
    await engine.hub.drain()

    assert recorder.types() == ["notifications_read_all"]
    assert await engine.notifications.get_stats(BUYER) == {"total": 3, "unread": 0}
    assert await engine.notifications.unread_count(SELLER) == 1

@pytest.mark.asyncio
async def test_notify_never_raises(engine, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(engine.store, "insert_notification", broken)

    assert await engine.notifications.notify(
        BUYER, NotificationType.NEW_MESSAGE, "New message"
    ) is None

@pytest.mark.asyncio
async def test_failed_fanout_does_not_fail_the_send(engine, conversation, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(engine.store, "insert_notification", broken)

    message = await engine.messages.send_message(conversation["id"], BUYER, "Hi")
    assert message["content"] == "Hi"
