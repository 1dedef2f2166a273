"""Read-only item catalog client.

The catalog is owned by another service; this module only looks items up to
fill message previews and payment descriptions. ``HttpItemCatalog`` talks to
the catalog service over HTTP, ``StaticItemCatalog`` serves a fixed mapping
for local runs and tests.
"""
import asyncio
import logging
from decimal import Decimal
from functools import partial
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from errors import DealroomError, NotFoundError

logger = logging.getLogger(__name__)

class CatalogError(DealroomError):
    """Raised when the catalog service cannot be reached or answers garbage."""
    pass

class ItemNotFoundError(NotFoundError):
    """Raised when the catalog has no item with the requested id."""
    pass

class Item(BaseModel):
    id: str
    name: str
    price: Optional[Decimal] = None
    thumbnail_url: Optional[str] = None
    seller_id: Optional[str] = None

class ItemCatalog:
    """Catalog lookup interface."""

    async def get_item(self, item_id: str) -> Item:
        raise NotImplementedError

    async def close(self) -> None:
        pass

class StaticItemCatalog(ItemCatalog):
    """Catalog backed by an in-memory mapping of item id to item fields."""

    def __init__(self, items: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.items: Dict[str, Item] = {}
        for item_id, fields in (items or {}).items():
            self.add(Item(id=item_id, **fields))

    def add(self, item: Item) -> None:
        self.items[item.id] = item

    async def get_item(self, item_id: str) -> Item:
        try:
            return self.items[item_id]
        except KeyError:
            raise ItemNotFoundError(f"Item {item_id} not found")

class HttpItemCatalog(ItemCatalog):
    """Catalog client for ``GET {base_url}/items/{item_id}``."""

    def __init__(self, base_url: str, timeout: int = 5) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers['accept'] = 'application/json'

    def _fetch(self, item_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/items/{item_id}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                raise ItemNotFoundError(f"Item {item_id} not found")
            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout as e:
            raise CatalogError(
                f"Catalog request timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.RequestException as e:
            raise CatalogError(f"Catalog request failed: {str(e)}") from e
        except ValueError as e:
            raise CatalogError(f"Invalid catalog response: {str(e)}") from e

    async def get_item(self, item_id: str) -> Item:
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, partial(self._fetch, item_id))
        data.setdefault('id', item_id)
        try:
            return Item.model_validate(data)
        except ValueError as e:
            raise CatalogError(f"Invalid item {item_id} from catalog: {e}") from e

    async def close(self) -> None:
        self.session.close()

def get_catalog(settings: Dict[str, Any]) -> ItemCatalog:
    """Build the catalog client configured by ``catalog_url``."""
    if settings.get('catalog_url'):
        logger.info(f"Using item catalog at {settings['catalog_url']}")
        return HttpItemCatalog(settings['catalog_url'], settings['catalog_timeout'])
    logger.info("No catalog_url configured, using static item catalog")
    return StaticItemCatalog()

__all__ = [
    'Item',
    'ItemCatalog',
    'StaticItemCatalog',
    'HttpItemCatalog',
    'CatalogError',
    'ItemNotFoundError',
    'get_catalog'
]
