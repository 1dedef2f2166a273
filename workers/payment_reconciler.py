"""Worker that reconciles open payment links with the gateway.

Buyers normally trigger confirmation by polling after they pay, and the
gateway may push a webhook. Either can be missed, so this worker periodically
asks the gateway about every pending link of a pending transaction and runs
the same ``confirm_with_gateway`` transition for the ones that were paid.
Expired and cancelled links are marked locally by that call.
"""

import asyncio
import logging
import traceback
from typing import Dict

from engine import Engine
from errors import GatewayError, InvalidStateError, NotFoundError, PaymentPendingError

# Configure logging
logger = logging.getLogger(__name__)

BATCH_SIZE = 100

async def reconcile_open_links(engine: Engine, limit: int = BATCH_SIZE) -> Dict[str, int]:
    """Check every open payment link once.

    Returns:
        Counts of links by outcome: completed, pending, closed, skipped, failed
    """
    counts = {'completed': 0, 'pending': 0, 'closed': 0, 'skipped': 0, 'failed': 0}
    links = await engine.store.list_open_payment_links(limit)
    if links:
        logger.info(f"Found {len(links)} open payment links to reconcile")

    for link in links:
        link_id = link['link_id']
        try:
            await engine.transactions.confirm_with_gateway(link['transaction_id'], link_id)
            counts['completed'] += 1
            logger.info(f"Reconciled paid link {link_id} for transaction {link['transaction_id']}")

        except PaymentPendingError:
            counts['pending'] += 1

        except (InvalidStateError, NotFoundError) as e:
            # Transaction moved on while we were looking
            counts['skipped'] += 1
            logger.debug(f"Skipping link {link_id}: {e}")

        except GatewayError as e:
            if e.retryable:
                counts['failed'] += 1
                logger.warning(f"Gateway unavailable while checking link {link_id}: {e}")
            else:
                counts['closed'] += 1
                logger.info(f"Payment link {link_id} closed at the gateway: {e}")

        except Exception as e:
            counts['failed'] += 1
            logger.error(f"Error reconciling payment link {link_id}: {str(e)}")
            logger.error(traceback.format_exc())

    return counts

async def run_reconciler(engine: Engine, interval: int = 60):
    """Main worker loop."""
    logger.info("Payment reconciler starting up")
    while True:
        try:
            counts = await reconcile_open_links(engine)
            if counts['completed'] or counts['closed']:
                logger.info(
                    f"Reconciliation pass: {counts['completed']} completed, "
                    f"{counts['closed']} closed, {counts['pending']} still pending"
                )

        except Exception as e:
            logger.error(f"Error in reconciler loop: {str(e)}")
            logger.error(traceback.format_exc())

        await asyncio.sleep(interval)
