"""Transaction ledger.

A transaction records the settlement of one item inside a conversation. It
starts ``pending`` and ends ``completed`` or ``cancelled``; both end states are
final. Every status change goes through the store's compare-and-set, so a
cancel racing a gateway confirmation can never both succeed, and a transition
attempted from a final state raises ``InvalidStateError`` carrying the current
status without touching anything.

Priced transactions are paid through a gateway payment link. A transaction
has at most one pending link: creation is serialized per transaction here and
backed by a unique index in the store. Gateway failures never move local state.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from uuid import UUID

from catalog import ItemCatalog
from channels import ChannelHub, Handler, Subscription, hub as default_hub, transactions_topic
from conversations import ConversationManager, participant_role, BUYER, SELLER
from database import DuplicateKeyError, KeyedLock, Store, get_store
from errors import (
    AuthorizationError,
    DealroomError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    PaymentPendingError,
    ValidationError
)
from gateway import LinkStatus, PaymentGateway, order_code_for
from messages import MessageManager
from notifications import NotificationManager, NotificationType

from .codes import CODE_ALPHABET, DEFAULT_CODE_LENGTH, generate_code
from .models import (
    ConfirmedBy,
    GatewayConfirmation,
    ManualConfirmation,
    StoredPaymentLink,
    TERMINAL_STATUSES,
    Transaction,
    TransactionCreate,
    TransactionStatus
)

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5
AMOUNT_QUANTUM = Decimal('0.01')
PAYMENT_METHODS = ('bank_transfer', 'cash', 'payos')

def _now() -> datetime:
    return datetime.now(timezone.utc)

def parse_amount(amount: Any) -> Decimal:
    """Coerce an amount to a non-negative Decimal with two decimal places.

    Raises:
        ValidationError: If the amount is not a finite non-negative number
    """
    if isinstance(amount, bool):
        raise ValidationError(f"Invalid amount: {amount}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}")
    if value < 0:
        raise ValidationError("Amount cannot be negative")
    if value != value.quantize(AMOUNT_QUANTUM):
        raise ValidationError("Amount cannot have more than two decimal places")
    return value.quantize(AMOUNT_QUANTUM)

def _validate_proof_url(proof_url: Optional[str]) -> Optional[str]:
    if proof_url is None:
        return None
    parsed = urlparse(proof_url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError("proof_url must be an http(s) URL")
    return proof_url

class TransactionManager:
    """Runs the transaction state machine."""

    def __init__(
        self,
        store: Optional[Store] = None,
        hub: Optional[ChannelHub] = None,
        gateway: Optional[PaymentGateway] = None,
        conversations: Optional[ConversationManager] = None,
        messages: Optional[MessageManager] = None,
        notifications: Optional[NotificationManager] = None,
        catalog: Optional[ItemCatalog] = None,
        code_length: int = DEFAULT_CODE_LENGTH,
        min_payment_amount: int = 1,
        allow_manual_confirmation_for_paid: bool = True
    ) -> None:
        self.store = store
        self.hub = hub or default_hub
        self.gateway = gateway
        self.notifications = notifications or NotificationManager(store, self.hub)
        self.conversations = conversations or ConversationManager(
            store, self.hub, self.notifications, catalog
        )
        self.messages = messages or MessageManager(
            store, self.hub, self.conversations, self.notifications, catalog
        )
        self.catalog = catalog
        self.code_length = code_length
        self.min_payment_amount = Decimal(min_payment_amount)
        self.allow_manual_confirmation_for_paid = allow_manual_confirmation_for_paid
        self._link_locks = KeyedLock()

    async def ensure_store(self) -> Store:
        """Ensure we have a storage backend."""
        if not self.store:
            self.store = await get_store()
        return self.store

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise GatewayError("No payment gateway configured", retryable=False)
        return self.gateway

    async def _load(self, transaction_id: UUID) -> Dict[str, Any]:
        store = await self.ensure_store()
        transaction = await store.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def _require_role(self, transaction: Dict[str, Any], user_id: str, *roles: str) -> str:
        role = participant_role(transaction, user_id)
        if role is None:
            raise AuthorizationError(
                f"User {user_id} is not a party to transaction {transaction['id']}"
            )
        if role not in roles:
            raise AuthorizationError(
                f"Only the {' or '.join(roles)} may do this on transaction {transaction['id']}"
            )
        return role

    def _require_pending(self, transaction: Dict[str, Any]) -> None:
        if transaction['status'] in TERMINAL_STATUSES:
            raise InvalidStateError(
                f"Transaction {transaction['id']} is already {transaction['status']}",
                current_status=transaction['status']
            )

    async def _transition(
        self,
        transaction_id: UUID,
        new_status: TransactionStatus,
        fields: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Compare-and-set from pending. Raises InvalidStateError if we lost a race."""
        store = await self.ensure_store()
        updated = await store.compare_and_set_status(
            transaction_id, TransactionStatus.PENDING.value, new_status.value, fields
        )
        if updated is None:
            current = await self._load(transaction_id)
            raise InvalidStateError(
                f"Transaction {transaction_id} is already {current['status']}",
                current_status=current['status']
            )
        logger.info(f"Transaction {transaction_id} moved to {new_status.value}")
        return updated

    def _publish(self, transaction: Dict[str, Any], type: str, **data) -> None:
        self.hub.publish(
            transactions_topic(transaction['conversation_id']),
            type,
            {'transaction': transaction, **data}
        )

    # Creation and lookup

    async def create_transaction(
        self,
        conversation_id: UUID,
        seller_id: str,
        amount: Any,
        payment_method: str = 'bank_transfer'
    ) -> Dict[str, Any]:
        """Seller proposes a price. A code is issued only for priced transactions.

        Raises:
            ValidationError: On a bad amount or payment method
            AuthorizationError: If the caller is not the conversation's seller
            InvalidStateError: If the conversation is closed
        """
        value = parse_amount(amount)
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method: {payment_method}")

        conversation = await self.conversations.get_conversation(conversation_id, seller_id)
        if participant_role(conversation, seller_id) != SELLER:
            raise AuthorizationError("Only the seller can create a transaction")
        if not conversation['is_active']:
            raise InvalidStateError(
                f"Conversation {conversation_id} is closed",
                current_status='closed'
            )

        store = await self.ensure_store()
        row = {
            'conversation_id': conversation_id,
            'item_id': conversation['item_id'],
            'seller_id': conversation['seller_id'],
            'buyer_id': conversation['buyer_id'],
            'amount': value,
            'payment_method': payment_method,
            'code': None
        }

        transaction = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            if value > 0:
                row['code'] = generate_code(self.code_length)
            try:
                transaction = await store.insert_transaction(row)
                break
            except DuplicateKeyError:
                if value == 0 or attempt == MAX_CODE_ATTEMPTS:
                    raise
                logger.warning(f"Transaction code collision, retrying ({attempt}/{MAX_CODE_ATTEMPTS})")

        logger.info(
            f"Created transaction {transaction['id']} in conversation {conversation_id} "
            f"for {value} (code {transaction['code']})"
        )
        self._publish(transaction, 'transaction_created')
        await self.messages.post_system_message(
            conversation_id,
            seller_id,
            f"Transaction {transaction['code']} created for {value:,.0f}" if value else
            "The seller offered the item for free",
            'transaction_created',
            transaction['id'],
            transaction['status']
        )
        await self.notifications.notify_transaction(NotificationType.TRANSACTION_CREATED, transaction)
        return transaction

    async def get_transaction(self, transaction_id: UUID, user_id: Optional[str] = None) -> Dict[str, Any]:
        transaction = await self._load(transaction_id)
        if user_id is not None:
            self._require_role(transaction, user_id, BUYER, SELLER)
        return transaction

    async def list_transactions_for_conversation(
        self,
        conversation_id: UUID,
        user_id: str
    ) -> List[Dict[str, Any]]:
        """Transactions of a conversation, newest first."""
        await self.conversations.get_conversation(conversation_id, user_id)
        store = await self.ensure_store()
        return await store.list_transactions(conversation_id)

    async def get_payment_link(self, transaction_id: UUID, user_id: str) -> Optional[Dict[str, Any]]:
        """The pending link of a transaction, if one exists."""
        await self.get_transaction(transaction_id, user_id)
        store = await self.ensure_store()
        return await store.get_active_payment_link(transaction_id)

    # Payment links

    async def request_payment_link(self, transaction_id: UUID, buyer_id: str) -> Dict[str, Any]:
        """Get or create the payment link for a priced pending transaction.

        Idempotent: while a link is pending and unexpired, every call returns
        it. An expired link is retired and replaced.

        Raises:
            AuthorizationError: If the caller is not the buyer
            InvalidStateError: If the transaction is not pending
            ValidationError: For free transactions or amounts below the gateway minimum
            GatewayError: If the gateway fails; nothing is stored
        """
        transaction = await self._load(transaction_id)
        self._require_role(transaction, buyer_id, BUYER)
        self._require_pending(transaction)
        if transaction['amount'] <= 0:
            raise ValidationError("Free transactions do not use payment links")
        if transaction['amount'] < self.min_payment_amount:
            raise ValidationError(
                f"Amount {transaction['amount']} is below the gateway minimum of "
                f"{self.min_payment_amount}"
            )
        gateway = self._require_gateway()
        store = await self.ensure_store()

        async with self._link_locks.acquire(transaction_id):
            active = await store.get_active_payment_link(transaction_id)
            if active:
                if active['expires_at'] is None or active['expires_at'] > _now():
                    return active
                logger.info(f"Payment link {active['link_id']} expired, issuing a new one")
                await store.update_payment_link_status(
                    active['link_id'], LinkStatus.EXPIRED.value, expected=LinkStatus.PENDING.value
                )

            attempt = await store.count_payment_links(transaction_id)
            link = await gateway.create_link(
                transaction_id,
                transaction['amount'],
                {
                    'order_code': order_code_for(transaction_id, attempt),
                    'description': f"DR {transaction['code']}",
                    'item_name': await self._item_name(transaction['item_id']),
                    'code': transaction['code']
                }
            )

            row, inserted = await store.insert_payment_link({
                'link_id': link.link_id,
                'transaction_id': transaction_id,
                'url': link.url,
                'qr_payload': link.qr_payload,
                'status': LinkStatus.PENDING.value,
                'amount': link.amount,
                'order_code': link.order_code,
                'expires_at': link.expires_at
            })
            if not inserted:
                # Another process stored a link first
                if row['link_id'] != link.link_id:
                    await self._cancel_link_quietly(link.link_id, 'superseded')
                return row

        # A cancel may have landed while the gateway call was in flight
        current = await self._load(transaction_id)
        if current['status'] != TransactionStatus.PENDING.value:
            await self._retire_link(row)
            raise InvalidStateError(
                f"Transaction {transaction_id} is already {current['status']}",
                current_status=current['status']
            )

        logger.info(f"Payment link {row['link_id']} issued for transaction {transaction_id}")
        self._publish(current, 'payment_link_created', payment_link=row)
        return row

    async def _item_name(self, item_id: str) -> Optional[str]:
        if self.catalog is None:
            return None
        try:
            item = await self.catalog.get_item(item_id)
            return item.name
        except DealroomError as e:
            logger.warning(f"Catalog lookup for item {item_id} failed: {e}")
            return None

    async def _cancel_link_quietly(self, link_id: str, reason: str) -> None:
        try:
            await self._require_gateway().cancel_link(link_id, reason)
        except GatewayError as e:
            logger.warning(f"Could not cancel payment link {link_id}: {e}")

    async def _retire_link(self, link: Optional[Dict[str, Any]]) -> None:
        """Cancel a pending link locally and, best effort, at the gateway."""
        if not link:
            return
        store = await self.ensure_store()
        retired = await store.update_payment_link_status(
            link['link_id'], LinkStatus.CANCELLED.value, expected=LinkStatus.PENDING.value
        )
        if retired and self.gateway is not None:
            await self._cancel_link_quietly(link['link_id'], 'transaction closed')

    # Transitions

    async def confirm_with_gateway(
        self,
        transaction_id: UUID,
        link_id: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Complete a transaction after the gateway confirms its link was paid.

        The link status is always fetched live from the gateway. Called by
        buyer-triggered polls (``user_id`` set), webhooks and the reconciler.

        Raises:
            InvalidStateError: If the transaction is already completed or cancelled
            NotFoundError: If the link does not belong to the transaction
            PaymentPendingError: If the payment has not arrived yet (retryable)
            GatewayError: Retryable on transport failure, terminal for expired or
                cancelled links
        """
        transaction = await self._load(transaction_id)
        if user_id is not None:
            self._require_role(transaction, user_id, BUYER, SELLER)
        self._require_pending(transaction)

        store = await self.ensure_store()
        link = await store.get_payment_link(link_id)
        if not link or link['transaction_id'] != transaction['id']:
            raise NotFoundError(f"Payment link {link_id} not found for transaction {transaction_id}")

        status = await self._require_gateway().get_link_status(link_id)

        if status == LinkStatus.PENDING:
            raise PaymentPendingError(link_id)

        if status in (LinkStatus.EXPIRED, LinkStatus.CANCELLED):
            await store.update_payment_link_status(
                link_id, status.value, expected=LinkStatus.PENDING.value
            )
            raise GatewayError(
                f"Payment link {link_id} is {status.value}",
                retryable=False,
                gateway_status=status.value
            )

        try:
            completed = await self._transition(
                transaction_id,
                TransactionStatus.COMPLETED,
                {
                    'completed_at': _now(),
                    'confirmed_by': ConfirmedBy.GATEWAY.value,
                    'external_link_id': link_id
                }
            )
        except InvalidStateError as e:
            if e.current_status == TransactionStatus.CANCELLED.value:
                logger.error(
                    f"Link {link_id} was paid but transaction {transaction_id} is cancelled; "
                    "payment needs a manual refund"
                )
            raise

        await store.update_payment_link_status(link_id, LinkStatus.PAID.value)
        self._publish(completed, 'transaction_completed')
        await self.messages.post_system_message(
            completed['conversation_id'],
            completed['buyer_id'],
            f"Payment for {completed['code']} received",
            'payment_success',
            completed['id'],
            completed['status']
        )
        await self.notifications.notify_transaction(NotificationType.PAYMENT_SUCCESS, completed)
        return completed

    async def confirm_manually(
        self,
        transaction_id: UUID,
        buyer_id: str,
        proof_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """Buyer marks the transaction complete, optionally with a proof image.

        Priced transactions are only accepted when manual confirmation of paid
        transactions is enabled; they are recorded as ``confirmed_by='buyer'``.
        """
        proof_url = _validate_proof_url(proof_url)
        transaction = await self._load(transaction_id)
        self._require_role(transaction, buyer_id, BUYER)
        self._require_pending(transaction)
        if transaction['amount'] > 0 and not self.allow_manual_confirmation_for_paid:
            raise AuthorizationError("Priced transactions must be confirmed through the payment gateway")

        fields = {'completed_at': _now(), 'confirmed_by': ConfirmedBy.BUYER.value}
        if proof_url is not None:
            fields['proof_url'] = proof_url
        completed = await self._transition(transaction_id, TransactionStatus.COMPLETED, fields)

        if completed['amount'] > 0:
            store = await self.ensure_store()
            await self._retire_link(await store.get_active_payment_link(transaction_id))

        self._publish(completed, 'transaction_completed')
        await self.messages.post_system_message(
            completed['conversation_id'],
            buyer_id,
            'The buyer confirmed the transaction',
            'transaction_completed',
            completed['id'],
            completed['status']
        )
        await self.notifications.notify_transaction(NotificationType.TRANSACTION_COMPLETED, completed)
        return completed

    async def cancel_transaction(self, transaction_id: UUID, user_id: str) -> Dict[str, Any]:
        """Cancel a pending transaction. Either party may cancel."""
        transaction = await self._load(transaction_id)
        self._require_role(transaction, user_id, BUYER, SELLER)
        self._require_pending(transaction)

        cancelled = await self._transition(transaction_id, TransactionStatus.CANCELLED, {})

        if cancelled['amount'] > 0:
            store = await self.ensure_store()
            await self._retire_link(await store.get_active_payment_link(transaction_id))

        self._publish(cancelled, 'transaction_cancelled', cancelled_by=user_id)
        await self.messages.post_system_message(
            cancelled['conversation_id'],
            user_id,
            'The transaction was cancelled',
            'transaction_cancelled',
            cancelled['id'],
            cancelled['status']
        )
        await self.notifications.notify_transaction(NotificationType.TRANSACTION_CANCELLED, cancelled)
        return cancelled

    async def subscribe_transactions(
        self,
        conversation_id: UUID,
        user_id: str,
        handler: Handler
    ) -> Subscription:
        await self.conversations.get_conversation(conversation_id, user_id)
        return await self.hub.subscribe(transactions_topic(conversation_id), handler)

__all__ = [
    'TransactionManager',
    'Transaction',
    'TransactionCreate',
    'TransactionStatus',
    'ConfirmedBy',
    'ManualConfirmation',
    'GatewayConfirmation',
    'StoredPaymentLink',
    'TERMINAL_STATUSES',
    'CODE_ALPHABET',
    'generate_code',
    'parse_amount'
]
