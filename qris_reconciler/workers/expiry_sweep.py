"""
Expiry sweep.

Moves overdue pending transactions to ``expired`` with the same
``status = 'pending'`` guard used for settlement, so a payment confirmed a
moment earlier is never expired.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Optional

import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.database.connection import close_db
from qris_reconciler.database.repository import TransactionRepository
from qris_reconciler.monitoring.logging import setup_logging
from qris_reconciler.monitoring.metrics import metrics
from qris_reconciler.timeutils import utcnow

logger = structlog.get_logger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


async def expire_pending_transactions(
    repository: Optional[TransactionRepository] = None,
    settings: Optional[Settings] = None,
) -> int:
    """
    Expire pending transactions past their horizon.

    Rows without ``expired_at`` use ``created_at + payment_expiry_minutes``.

    Returns:
        int: Number of transactions expired
    """
    settings = settings or get_settings()
    repository = repository or TransactionRepository()

    now = utcnow()
    horizon_start = now - timedelta(minutes=settings.payment_expiry_minutes)
    expired = await repository.expire_overdue(now, horizon_start)

    metrics.record_expired(expired)
    if expired:
        logger.info("transactions_expired", count=expired)
    return expired


async def start_expiry_sweep(interval_seconds: float = DEFAULT_SWEEP_INTERVAL) -> None:
    """Run the sweep every ``interval_seconds`` until stopped."""
    setup_logging()

    logger.info("expiry_sweep_starting", interval=interval_seconds)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("expiry_sweep_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    repository = TransactionRepository()

    try:
        while running:
            try:
                await expire_pending_transactions(repository)
            except Exception as e:
                logger.error("expiry_sweep_error", error=str(e))

            remaining = interval_seconds
            while remaining > 0 and running:
                step = min(remaining, 1.0)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await close_db()
        logger.info("expiry_sweep_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Pending transaction expiry sweep")
    parser.add_argument(
        "--interval", type=float, default=DEFAULT_SWEEP_INTERVAL, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_expiry_sweep(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
