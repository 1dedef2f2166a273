"""Tests for the transaction ledger and payment links."""

import asyncio
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio

import transactions
from database import DuplicateKeyError, MemoryStore
from engine import create_engine
from errors import (
    AuthorizationError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentPendingError,
    ValidationError
)
from gateway import LinkStatus, SandboxGateway
from transactions import CODE_ALPHABET, parse_amount
from conftest import BUYER, ITEM_ID, SELLER, STRANGER, Recorder, make_catalog, make_settings

PRICE = Decimal("150000")

@pytest_asyncio.fixture
async def priced(engine, conversation):
    return await engine.transactions.create_transaction(conversation["id"], SELLER, PRICE)

@pytest_asyncio.fixture
async def free(engine, conversation):
    return await engine.transactions.create_transaction(conversation["id"], SELLER, 0)

async def _system_events(engine, conversation_id):
    log = await engine.messages.list_messages(conversation_id, BUYER)
    return [m["payload"]["event"] for m in log if m["kind"] == "system"]

# Creation

@pytest.mark.asyncio
async def test_priced_transaction_gets_a_code(engine, conversation, priced):
    assert priced["status"] == "pending"
    assert priced["amount"] == PRICE
    assert len(priced["code"]) == 8
    assert all(c in CODE_ALPHABET for c in priced["code"])
    assert (priced["item_id"], priced["buyer_id"], priced["seller_id"]) == (ITEM_ID, BUYER, SELLER)
    assert priced["conversation_id"] == conversation["id"]
    assert priced["confirmed_by"] is None

    assert await _system_events(engine, conversation["id"]) == ["transaction_created"]
    notifications = await engine.notifications.list_notifications(BUYER)
    assert [n["type"] for n in notifications] == ["transaction_created"]
    assert priced["code"] in notifications[0]["body"]

@pytest.mark.asyncio
async def test_free_transaction_has_no_code(free):
    assert free["amount"] == 0
    assert free["code"] is None
    assert free["status"] == "pending"

@pytest.mark.asyncio
async def test_codes_are_unique(engine, conversation):
    created = [
        await engine.transactions.create_transaction(conversation["id"], SELLER, 1000 + i)
        for i in range(25)
    ]
    assert len({t["code"] for t in created}) == 25

@pytest.mark.asyncio
async def test_code_collision_is_retried(engine, conversation, monkeypatch):
    codes = iter(["AAAAAAAA", "AAAAAAAA", "BBBBBBBB"])
    monkeypatch.setattr(transactions, "generate_code", lambda length: next(codes))

    first = await engine.transactions.create_transaction(conversation["id"], SELLER, 5000)
    second = await engine.transactions.create_transaction(conversation["id"], SELLER, 5000)

    assert first["code"] == "AAAAAAAA"
    assert second["code"] == "BBBBBBBB"

@pytest.mark.asyncio
async def test_code_collision_gives_up(engine, conversation, monkeypatch):
    monkeypatch.setattr(transactions, "generate_code", lambda length: "AAAAAAAA")

    await engine.transactions.create_transaction(conversation["id"], SELLER, 5000)
    with pytest.raises(DuplicateKeyError):
        await engine.transactions.create_transaction(conversation["id"], SELLER, 5000)

@pytest.mark.asyncio
async def test_only_the_seller_creates_transactions(engine, conversation):
    with pytest.raises(AuthorizationError):
        await engine.transactions.create_transaction(conversation["id"], BUYER, PRICE)
    with pytest.raises(AuthorizationError):
        await engine.transactions.create_transaction(conversation["id"], STRANGER, PRICE)
    with pytest.raises(NotFoundError):
        await engine.transactions.create_transaction(uuid.uuid4(), SELLER, PRICE)

    assert await engine.transactions.list_transactions_for_conversation(conversation["id"], SELLER) == []

@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [-1, "-0.01", "12.345", "abc", "NaN", "Infinity", True])
async def test_invalid_amounts_are_rejected(engine, conversation, amount):
    with pytest.raises(ValidationError):
        await engine.transactions.create_transaction(conversation["id"], SELLER, amount)

@pytest.mark.asyncio
async def test_unknown_payment_method(engine, conversation):
    with pytest.raises(ValidationError):
        await engine.transactions.create_transaction(conversation["id"], SELLER, PRICE, "barter")

@pytest.mark.asyncio
async def test_no_transactions_in_closed_conversation(engine, conversation):
    await engine.conversations.archive_conversation(conversation["id"], BUYER)
    await engine.conversations.archive_conversation(conversation["id"], SELLER)

    with pytest.raises(InvalidStateError):
        await engine.transactions.create_transaction(conversation["id"], SELLER, PRICE)

def test_parse_amount():
    assert parse_amount("150000") == Decimal("150000.00")
    assert parse_amount(12.5) == Decimal("12.50")
    assert parse_amount(0) == Decimal("0")

@pytest.mark.asyncio
async def test_transactions_are_visible_to_participants_only(engine, conversation, priced):
    assert (await engine.transactions.get_transaction(priced["id"], BUYER))["id"] == priced["id"]
    with pytest.raises(AuthorizationError):
        await engine.transactions.get_transaction(priced["id"], STRANGER)
    with pytest.raises(AuthorizationError):
        await engine.transactions.list_transactions_for_conversation(conversation["id"], STRANGER)
    with pytest.raises(NotFoundError):
        await engine.transactions.get_transaction(uuid.uuid4(), BUYER)

@pytest.mark.asyncio
async def test_list_transactions_newest_first(engine, conversation):
    first = await engine.transactions.create_transaction(conversation["id"], SELLER, 1000)
    second = await engine.transactions.create_transaction(conversation["id"], SELLER, 0)

    listed = await engine.transactions.list_transactions_for_conversation(conversation["id"], BUYER)
    assert [t["id"] for t in listed] == [second["id"], first["id"]]

# Gateway payment

@pytest.mark.asyncio
async def test_gateway_payment_flow(engine, conversation, priced):
    """Test paying through a link and confirming with the gateway."""
    recorder = Recorder()
    await engine.transactions.subscribe_transactions(conversation["id"], BUYER, recorder)

    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    assert link["link_id"]
    assert link["url"]
    assert link["status"] == "pending"
    assert link["amount"] == PRICE
    assert link["transaction_id"] == priced["id"]

    # Buyer polls before paying
    with pytest.raises(PaymentPendingError) as exc_info:
        await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"], BUYER)
    assert exc_info.value.retryable
    assert (await engine.transactions.get_transaction(priced["id"]))["status"] == "pending"

    engine.gateway.mark_paid(link["link_id"])
    completed = await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"], BUYER)
    await engine.hub.drain()

    assert completed["status"] == "completed"
    assert completed["confirmed_by"] == "gateway"
    assert completed["external_link_id"] == link["link_id"]
    assert completed["completed_at"] is not None

    stored_link = await engine.store.get_payment_link(link["link_id"])
    assert stored_link["status"] == "paid"

    assert recorder.types() == ["payment_link_created", "transaction_completed"]
    assert await _system_events(engine, conversation["id"]) == ["transaction_created", "payment_success"]
    assert "payment_success" in [n["type"] for n in await engine.notifications.list_notifications(SELLER)]
    assert "payment_success" in [n["type"] for n in await engine.notifications.list_notifications(BUYER)]

@pytest.mark.asyncio
async def test_payment_link_is_reused(engine, priced):
    """Test that asking for a link twice returns the first link."""
    first = await engine.transactions.request_payment_link(priced["id"], BUYER)
    second = await engine.transactions.request_payment_link(priced["id"], BUYER)

    assert first["link_id"] == second["link_id"]
    assert engine.gateway.calls["create_link"] == 1

    active = await engine.transactions.get_payment_link(priced["id"], SELLER)
    assert active["link_id"] == first["link_id"]

@pytest.mark.asyncio
async def test_concurrent_link_requests_share_one_link(engine, priced):
    engine.gateway.latency = 0.01

    links = await asyncio.gather(*[
        engine.transactions.request_payment_link(priced["id"], BUYER) for _ in range(10)
    ])

    assert len({link["link_id"] for link in links}) == 1
    assert engine.gateway.calls["create_link"] == 1
    assert await engine.store.count_payment_links(priced["id"]) == 1

@pytest.mark.asyncio
async def test_only_the_buyer_requests_links(engine, priced):
    with pytest.raises(AuthorizationError):
        await engine.transactions.request_payment_link(priced["id"], SELLER)
    with pytest.raises(AuthorizationError):
        await engine.transactions.request_payment_link(priced["id"], STRANGER)
    assert engine.gateway.calls["create_link"] == 0

@pytest.mark.asyncio
async def test_no_links_for_free_or_small_amounts(engine, conversation, free):
    with pytest.raises(ValidationError):
        await engine.transactions.request_payment_link(free["id"], BUYER)

    small = await engine.transactions.create_transaction(conversation["id"], SELLER, 500)
    with pytest.raises(ValidationError):
        await engine.transactions.request_payment_link(small["id"], BUYER)

    assert engine.gateway.calls["create_link"] == 0

@pytest.mark.asyncio
async def test_gateway_outage_stores_nothing(engine, priced):
    engine.gateway.offline = True
    with pytest.raises(GatewayError) as exc_info:
        await engine.transactions.request_payment_link(priced["id"], BUYER)
    assert exc_info.value.retryable
    assert await engine.transactions.get_payment_link(priced["id"], BUYER) is None

    engine.gateway.offline = False
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    assert link["status"] == "pending"

@pytest.mark.asyncio
async def test_gateway_outage_during_confirmation_keeps_pending(engine, priced):
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    engine.gateway.mark_paid(link["link_id"])
    engine.gateway.offline = True

    with pytest.raises(GatewayError) as exc_info:
        await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"])
    assert exc_info.value.retryable
    assert (await engine.transactions.get_transaction(priced["id"]))["status"] == "pending"

    engine.gateway.offline = False
    completed = await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"])
    assert completed["status"] == "completed"

@pytest.mark.asyncio
async def test_expired_link_is_replaced(engine, priced):
    """Test that an expired link fails confirmation and the next request mints a new one."""
    first = await engine.transactions.request_payment_link(priced["id"], BUYER)
    engine.gateway.expire(first["link_id"])

    with pytest.raises(GatewayError) as exc_info:
        await engine.transactions.confirm_with_gateway(priced["id"], first["link_id"], BUYER)
    assert not exc_info.value.retryable
    assert exc_info.value.gateway_status == "expired"
    assert (await engine.store.get_payment_link(first["link_id"]))["status"] == "expired"
    assert (await engine.transactions.get_transaction(priced["id"]))["status"] == "pending"

    second = await engine.transactions.request_payment_link(priced["id"], BUYER)
    assert second["link_id"] != first["link_id"]
    assert second["order_code"] != first["order_code"]

@pytest.mark.asyncio
async def test_locally_expired_link_is_replaced():
    engine = await create_engine(
        make_settings(),
        store=MemoryStore(),
        gateway=SandboxGateway(link_ttl_minutes=0, min_amount=1000),
        catalog=make_catalog()
    )
    try:
        conversation = await engine.conversations.get_or_create_conversation(ITEM_ID, BUYER, SELLER)
        transaction = await engine.transactions.create_transaction(conversation["id"], SELLER, PRICE)

        first = await engine.transactions.request_payment_link(transaction["id"], BUYER)
        second = await engine.transactions.request_payment_link(transaction["id"], BUYER)

        assert second["link_id"] != first["link_id"]
        assert (await engine.store.get_payment_link(first["link_id"]))["status"] == "expired"
    finally:
        await engine.close()

@pytest.mark.asyncio
async def test_link_must_belong_to_transaction(engine, conversation, priced):
    other = await engine.transactions.create_transaction(conversation["id"], SELLER, 2000)
    other_link = await engine.transactions.request_payment_link(other["id"], BUYER)

    with pytest.raises(NotFoundError):
        await engine.transactions.confirm_with_gateway(priced["id"], other_link["link_id"])
    with pytest.raises(NotFoundError):
        await engine.transactions.confirm_with_gateway(priced["id"], "no-such-link")

@pytest.mark.asyncio
async def test_concurrent_confirmations_complete_once(engine, conversation, priced):
    """Test that racing confirmations complete the transaction exactly once."""
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    engine.gateway.mark_paid(link["link_id"])

    results = await asyncio.gather(*[
        engine.transactions.confirm_with_gateway(priced["id"], link["link_id"])
        for _ in range(5)
    ], return_exceptions=True)

    successes = [r for r in results if isinstance(r, dict)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert all(isinstance(f, InvalidStateError) for f in failures)
    assert all(f.current_status == "completed" and f.informational for f in failures)
    assert (await _system_events(engine, conversation["id"])).count("payment_success") == 1

@pytest.mark.asyncio
async def test_cancel_racing_confirmation(engine, priced):
    """Test that a cancel and a confirmation never both win."""
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    engine.gateway.mark_paid(link["link_id"])

    confirmed, cancelled = await asyncio.gather(
        engine.transactions.confirm_with_gateway(priced["id"], link["link_id"]),
        engine.transactions.cancel_transaction(priced["id"], SELLER),
        return_exceptions=True
    )

    outcomes = [r for r in (confirmed, cancelled) if isinstance(r, dict)]
    assert len(outcomes) == 1
    final = await engine.transactions.get_transaction(priced["id"])
    assert final["status"] == outcomes[0]["status"]

@pytest.mark.asyncio
async def test_cancel_during_link_creation_retires_the_link(engine, priced):
    engine.gateway.latency = 0.05

    request = asyncio.create_task(engine.transactions.request_payment_link(priced["id"], BUYER))
    await asyncio.sleep(0.01)
    engine.gateway.latency = 0
    cancelled = await engine.transactions.cancel_transaction(priced["id"], SELLER)
    assert cancelled["status"] == "cancelled"

    with pytest.raises(InvalidStateError):
        await request

    assert await engine.store.get_active_payment_link(priced["id"]) is None
    link_id = next(iter(engine.gateway.links))
    assert engine.gateway.links[link_id].status == LinkStatus.CANCELLED

# Manual confirmation

@pytest.mark.asyncio
async def test_free_transaction_confirmed_manually(engine, conversation, free):
    completed = await engine.transactions.confirm_manually(free["id"], BUYER)

    assert completed["status"] == "completed"
    assert completed["confirmed_by"] == "buyer"
    assert completed["proof_url"] is None
    assert engine.gateway.calls["create_link"] == 0
    assert (await _system_events(engine, conversation["id"]))[-1] == "transaction_completed"
    assert "transaction_completed" in [
        n["type"] for n in await engine.notifications.list_notifications(SELLER)
    ]

@pytest.mark.asyncio
async def test_priced_transaction_confirmed_manually_with_proof(engine, priced):
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)

    completed = await engine.transactions.confirm_manually(
        priced["id"], BUYER, "https://blobs.example.com/receipt.jpg"
    )

    assert completed["confirmed_by"] == "buyer"
    assert completed["proof_url"] == "https://blobs.example.com/receipt.jpg"
    assert (await engine.store.get_payment_link(link["link_id"]))["status"] == "cancelled"
    assert engine.gateway.calls["cancel_link"] == 1

@pytest.mark.asyncio
async def test_manual_confirmation_checks(engine, free):
    with pytest.raises(AuthorizationError):
        await engine.transactions.confirm_manually(free["id"], SELLER)
    with pytest.raises(ValidationError):
        await engine.transactions.confirm_manually(free["id"], BUYER, "ftp://example.com/proof.jpg")
    assert (await engine.transactions.get_transaction(free["id"]))["status"] == "pending"

@pytest.mark.asyncio
async def test_strict_mode_requires_gateway_for_priced(strict_engine):
    engine = strict_engine
    conversation = await engine.conversations.get_or_create_conversation(ITEM_ID, BUYER, SELLER)
    priced = await engine.transactions.create_transaction(conversation["id"], SELLER, PRICE)
    free = await engine.transactions.create_transaction(conversation["id"], SELLER, 0)

    with pytest.raises(AuthorizationError):
        await engine.transactions.confirm_manually(priced["id"], BUYER)
    assert (await engine.transactions.get_transaction(priced["id"]))["status"] == "pending"

    completed = await engine.transactions.confirm_manually(free["id"], BUYER)
    assert completed["status"] == "completed"

# Cancellation and terminal states

@pytest.mark.asyncio
async def test_cancel_then_confirm_fails(engine, conversation, priced):
    """Test that a cancelled transaction cannot be confirmed."""
    cancelled = await engine.transactions.cancel_transaction(priced["id"], BUYER)
    assert cancelled["status"] == "cancelled"

    with pytest.raises(InvalidStateError) as exc_info:
        await engine.transactions.confirm_manually(priced["id"], BUYER)
    assert exc_info.value.current_status == "cancelled"
    assert exc_info.value.informational

    after = await engine.transactions.get_transaction(priced["id"])
    assert after == cancelled
    assert (await _system_events(engine, conversation["id"]))[-1] == "transaction_cancelled"
    for user_id in (BUYER, SELLER):
        types = [n["type"] for n in await engine.notifications.list_notifications(user_id)]
        assert "transaction_cancelled" in types

@pytest.mark.asyncio
async def test_cancel_only_from_pending(engine, free):
    await engine.transactions.confirm_manually(free["id"], BUYER)

    with pytest.raises(InvalidStateError) as exc_info:
        await engine.transactions.cancel_transaction(free["id"], SELLER)
    assert exc_info.value.current_status == "completed"

@pytest.mark.asyncio
@pytest.mark.parametrize("final_status", transactions.TERMINAL_STATUSES)
async def test_terminal_statuses_are_final(engine, free, final_status):
    if final_status == "completed":
        final = await engine.transactions.confirm_manually(free["id"], BUYER)
    else:
        final = await engine.transactions.cancel_transaction(free["id"], SELLER)
    assert final["status"] == final_status

    for attempt in (
        engine.transactions.confirm_manually(free["id"], BUYER),
        engine.transactions.cancel_transaction(free["id"], SELLER)
    ):
        with pytest.raises(InvalidStateError) as exc_info:
            await attempt
        assert exc_info.value.current_status == final_status

    assert await engine.transactions.get_transaction(free["id"]) == final

@pytest.mark.asyncio
async def test_confirming_completed_transaction_changes_nothing(engine, priced):
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)
    engine.gateway.mark_paid(link["link_id"])
    completed = await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"])
    calls = dict(engine.gateway.calls)

    with pytest.raises(InvalidStateError):
        await engine.transactions.confirm_with_gateway(priced["id"], link["link_id"])
    with pytest.raises(InvalidStateError):
        await engine.transactions.confirm_manually(priced["id"], BUYER)
    with pytest.raises(InvalidStateError):
        await engine.transactions.request_payment_link(priced["id"], BUYER)

    assert await engine.transactions.get_transaction(priced["id"]) == completed
    assert engine.gateway.calls == calls

@pytest.mark.asyncio
async def test_cancel_retires_open_link(engine, priced):
    link = await engine.transactions.request_payment_link(priced["id"], BUYER)

    await engine.transactions.cancel_transaction(priced["id"], SELLER)

    assert (await engine.store.get_payment_link(link["link_id"]))["status"] == "cancelled"
    assert engine.gateway.links[link["link_id"]].status == LinkStatus.CANCELLED

@pytest.mark.asyncio
async def test_stranger_cannot_cancel(engine, priced):
    with pytest.raises(AuthorizationError):
        await engine.transactions.cancel_transaction(priced["id"], STRANGER)
