"""
Callback retry worker.

Re-sends merchant callbacks for successful transactions that were never
acknowledged, within a 24 hour window. Hub events are not replayed.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.core.notifications import NotificationFanout
from qris_reconciler.database.connection import close_db
from qris_reconciler.database.repository import TransactionRepository
from qris_reconciler.monitoring.logging import setup_logging
from qris_reconciler.timeutils import utcnow

logger = structlog.get_logger(__name__)


async def retry_failed_callbacks(
    repository: Optional[TransactionRepository] = None,
    fanout: Optional[NotificationFanout] = None,
    settings: Optional[Settings] = None,
) -> int:
    """
    Retry one batch of unacknowledged callbacks.

    Args:
        repository: Transaction store
        fanout: Fanout whose callback channel is reused
        settings: Optional settings

    Returns:
        int: Number of callbacks delivered
    """
    settings = settings or get_settings()
    repository = repository or TransactionRepository()
    fanout = fanout or NotificationFanout(repository=repository)

    since = utcnow() - timedelta(hours=settings.callback_retry_window_hours)
    transactions = await repository.list_callback_retry(since, settings.callback_retry_batch_size)
    if not transactions:
        return 0

    delivered = 0
    for transaction in transactions:
        try:
            if await fanout.retry_callback(transaction):
                delivered += 1
        except Exception as e:
            logger.error(
                "callback_retry_error",
                order_id=transaction.order_id,
                error=str(e),
            )

    logger.info(
        "callback_retry_batch_processed",
        total=len(transactions),
        delivered=delivered,
        failed=len(transactions) - delivered,
    )
    return delivered


async def start_callback_retry_worker(interval_seconds: Optional[float] = None) -> None:
    """
    Start the callback retry worker.

    Args:
        interval_seconds: Seconds between batches (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.callback_retry_interval_seconds

    logger.info("callback_retry_worker_starting", interval=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("callback_retry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    repository = TransactionRepository()
    fanout = NotificationFanout(repository=repository)

    try:
        while running:
            try:
                await retry_failed_callbacks(repository, fanout, settings)
            except Exception as e:
                logger.error("callback_retry_execution_error", error=str(e))

            # Sleep in short steps so a shutdown signal is noticed quickly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await close_db()
        logger.info("callback_retry_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Callback retry worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between retry batches"
    )
    args = parser.parse_args()

    asyncio.run(start_callback_retry_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
