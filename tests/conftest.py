"""Shared fixtures: an engine over the in-memory store and sandbox gateway."""

from decimal import Decimal
from typing import Any, Dict, List

import pytest_asyncio

from catalog import StaticItemCatalog
from channels import Event
from config import DEFAULTS, validate_settings
from database import MemoryStore
from engine import create_engine
from gateway import SandboxGateway

SELLER = "seller-1"
BUYER = "buyer-1"
STRANGER = "stranger-1"
ITEM_ID = "item-1"
OTHER_ITEM_ID = "item-2"

CATALOG_ITEMS = {
    ITEM_ID: {
        "name": "Vintage film camera",
        "price": Decimal("150000"),
        "thumbnail_url": "https://img.example.com/camera.jpg",
        "seller_id": SELLER
    },
    OTHER_ITEM_ID: {
        "name": "Leather strap",
        "price": Decimal("20000"),
        "seller_id": SELLER
    }
}

def make_settings(**overrides) -> Dict[str, Any]:
    settings = validate_settings(dict(DEFAULTS))
    settings.update(overrides)
    return settings

def make_catalog() -> StaticItemCatalog:
    return StaticItemCatalog(CATALOG_ITEMS)

class Recorder:
    """Subscription handler that keeps every event it receives."""

    def __init__(self):
        self.events: List[Event] = []

    def __call__(self, event: Event):
        self.events.append(event)

    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def of_type(self, type: str) -> List[Event]:
        return [e for e in self.events if e.type == type]

async def build_engine(**settings_overrides):
    settings = make_settings(**settings_overrides)
    return await create_engine(
        settings,
        store=MemoryStore(),
        gateway=SandboxGateway(min_amount=settings['min_payment_amount']),
        catalog=make_catalog()
    )

@pytest_asyncio.fixture
async def engine():
    """Engine with default settings (manual confirmation of paid allowed)."""
    engine = await build_engine()
    yield engine
    await engine.close()

@pytest_asyncio.fixture
async def strict_engine():
    """Engine that only accepts gateway confirmation for priced transactions."""
    engine = await build_engine(allow_manual_confirmation_for_paid=False)
    yield engine
    await engine.close()

@pytest_asyncio.fixture
async def conversation(engine) -> Dict[str, Any]:
    return await engine.conversations.get_or_create_conversation(ITEM_ID, BUYER, SELLER)
