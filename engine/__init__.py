"""Wires storage, channels, gateway and catalog into the domain managers.

The API process, the reconciliation worker and the tests all build their
managers through ``Engine`` so they share one store, one channel hub and one
set of per-resource locks.
"""
import logging
from typing import Any, Dict, Optional

from catalog import ItemCatalog, get_catalog
from channels import ChannelHub
from conversations import ConversationManager
from database import Store, init_db, close as db_close
from gateway import PaymentGateway, get_gateway
from messages import MessageManager
from notifications import NotificationManager
from transactions import TransactionManager

logger = logging.getLogger(__name__)

class Engine:
    """Owns the managers of one process."""

    def __init__(
        self,
        store: Store,
        settings: Dict[str, Any],
        hub: Optional[ChannelHub] = None,
        gateway: Optional[PaymentGateway] = None,
        catalog: Optional[ItemCatalog] = None
    ) -> None:
        self.settings = settings
        self.store = store
        self.owns_store = False
        self.hub = hub or ChannelHub()
        self.gateway = gateway or get_gateway(settings)
        self.catalog = catalog or get_catalog(settings)

        self.notifications = NotificationManager(store, self.hub)
        self.conversations = ConversationManager(store, self.hub, self.notifications, self.catalog)
        self.messages = MessageManager(
            store, self.hub, self.conversations, self.notifications, self.catalog
        )
        self.transactions = TransactionManager(
            store,
            self.hub,
            self.gateway,
            self.conversations,
            self.messages,
            self.notifications,
            self.catalog,
            code_length=settings['transaction_code_length'],
            min_payment_amount=settings['min_payment_amount'],
            allow_manual_confirmation_for_paid=settings['allow_manual_confirmation_for_paid']
        )

    async def close(self) -> None:
        await self.hub.close()
        await self.gateway.close()
        await self.catalog.close()
        if self.owns_store:
            await db_close()
        else:
            await self.store.close()
        logger.info("Engine stopped")

async def create_engine(
    settings: Optional[Dict[str, Any]] = None,
    store: Optional[Store] = None,
    **kwargs
) -> Engine:
    """Initialize storage from settings (unless a store is given) and build an Engine."""
    if settings is None:
        from config import settings_conf
        settings = settings_conf
    if store is None:
        engine = Engine(await init_db(settings['db_url']), settings, **kwargs)
        engine.owns_store = True
    else:
        engine = Engine(store, settings, **kwargs)
    logger.info(
        f"Engine started (store={type(engine.store).__name__}, gateway={engine.gateway.name})"
    )
    return engine

__all__ = ['Engine', 'create_engine']
