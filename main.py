"""Standalone payment reconciliation daemon.

Runs the reconciler against the configured store and gateway without the API,
for deployments that serve the API from several processes and reconcile from
one.
"""
import asyncio
import signal
import logging

from config import settings_conf
from engine import create_engine
from workers.payment_reconciler import run_reconciler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def handle_shutdown(stop: asyncio.Event):
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received. Cleaning up...")
    stop.set()

async def main():
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_shutdown, stop)

    engine = await create_engine(settings_conf)
    task = asyncio.create_task(run_reconciler(engine, settings_conf['reconcile_interval']))
    logger.info("Payment reconciler running")

    try:
        await stop.wait()
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Closing engine...")
        await engine.close()
        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())
